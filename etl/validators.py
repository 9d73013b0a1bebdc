# WORKFLOW: Field validation for ORCID record ingestion.
# Used by: Record parser, PersonRecord schema, tests
# Functions:
# 1. orcid_check_digit() - ISO 7064 MOD 11-2 check character for 15 base digits
# 2. validate_orcid() - Validate ORCID iD format and checksum
# 3. orcid_from_path() - Extract a bare ORCID iD from a URI or path value
# 4. parse_partial_date() - Permissive year / year-month / full date parsing
# 5. partial_date_from_parts() - Build a partial date from separate components
#
# Validation flow: Raw XML text -> Format checks -> Checksum -> Normalized value
# Invalid identifiers reject the record; invalid dates degrade to unknown (None).

"""
Field validation for ORCID record ingestion.
"""

import logging
import re
from datetime import date
from typing import Optional

logger = logging.getLogger(__name__)

ORCID_PATTERN = re.compile(r'^(\d{4})-(\d{4})-(\d{4})-(\d{3}[\dX])$')

PARTIAL_DATE_PATTERN = re.compile(r'^(\d{4})(?:-(\d{1,2})(?:-(\d{1,2}))?)?$')


def orcid_check_digit(base_digits: str) -> str:
    """
    Compute the ISO 7064 MOD 11-2 check character.

    Args:
        base_digits: The first 15 digits of the identifier, no hyphens

    Returns:
        Check character, a digit or 'X'
    """
    total = 0
    for digit in base_digits:
        total = (total + int(digit)) * 2
    remainder = total % 11
    result = (12 - remainder) % 11
    return 'X' if result == 10 else str(result)


def validate_orcid(orcid: str) -> bool:
    """
    Validate ORCID iD format and checksum.

    Args:
        orcid: ORCID iD in hyphenated form (0000-0002-5082-6404)

    Returns:
        True if valid, False otherwise
    """
    if not orcid or not isinstance(orcid, str):
        return False

    match = ORCID_PATTERN.match(orcid)
    if not match:
        return False

    digits = ''.join(match.groups())
    return orcid_check_digit(digits[:15]) == digits[15]


def orcid_from_path(value: Optional[str]) -> Optional[str]:
    """
    Extract a bare ORCID iD from a path or URI such as
    ``/0000-0002-5082-6404`` or ``https://orcid.org/0000-0002-5082-6404``.
    """
    if not value:
        return None
    candidate = value.strip().rstrip('/').rsplit('/', 1)[-1]
    return candidate or None


def parse_partial_date(text: Optional[str]) -> Optional[str]:
    """
    Parse a permissive date string.

    Accepts a four digit year, a year and month, or a full date.

    Args:
        text: Raw date text, e.g. "2019", "2019-3", "2019-03-21"

    Returns:
        Normalized ISO partial date ("2019", "2019-03", "2019-03-21"),
        or None when the value cannot be understood
    """
    if not text:
        return None

    match = PARTIAL_DATE_PATTERN.match(text.strip())
    if not match:
        logger.debug(f"Unparseable date {text!r}, treating as unknown")
        return None

    year, month, day = match.groups()
    try:
        if day is not None:
            return date(int(year), int(month), int(day)).isoformat()
        if month is not None:
            # Reuse date() to range-check the month
            date(int(year), int(month), 1)
            return f"{year}-{int(month):02d}"
        return year
    except ValueError:
        logger.debug(f"Out of range date {text!r}, treating as unknown")
        return None


def partial_date_from_parts(
    year: Optional[str], month: Optional[str] = None, day: Optional[str] = None
) -> Optional[str]:
    """
    Build a partial date from separate year / month / day components.

    A day without a month is dropped. A missing year or an out of range
    component makes the whole date unknown.
    """
    if not year:
        return None

    parts = [year.strip()]
    if month:
        parts.append(month.strip())
        if day:
            parts.append(day.strip())

    return parse_partial_date('-'.join(parts))
