# WORKFLOW: Structural mapping of one ORCID record XML entry into a PersonRecord.
# Used by: Conversion pipeline, extract command, tests
# Functions:
# 1. parse_record() - Parse one entry's byte stream into a PersonRecord
# 2. parse_name() - Given / family / credit names and other names
# 3. parse_emails() - Public email addresses
# 4. parse_external_identifiers() - Alternate person identifiers
# 5. parse_employments() - Employment summaries with organization and dates
#
# Parse flow: Bytes -> Hardened lxml parse -> Namespace-agnostic element walk -> PersonRecord
# Only the ORCID iD is required. Everything else is optional and missing parts become
# empty lists or None. Any failure is raised as RecordMalformed for that entry only.

"""
Structural mapping of one ORCID record XML entry into a PersonRecord.

Elements are looked up by local name so both the 2.x and 3.x ORCID message
schemas (which differ in namespace URIs and in the affiliation-group wrapper)
map to the same record.
"""

import logging
from typing import BinaryIO, List, Optional

from lxml import etree
from pydantic import ValidationError

from core.exceptions import RecordMalformed
from etl.validators import orcid_from_path, parse_partial_date, partial_date_from_parts, validate_orcid
from schemas.records import DisambiguatedOrganization, Employment, ExternalIdentifier, PersonRecord

logger = logging.getLogger(__name__)


def _make_parser() -> etree.XMLParser:
    # No DTDs, no entity expansion and no network access for untrusted input
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        remove_comments=True,
        remove_pis=True,
        huge_tree=False,
    )


def _local(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return tag.split('}', 1)[-1] if '}' in tag else tag


def _children(element, name: str) -> List[etree._Element]:
    if element is None:
        return []
    return [child for child in element.iterchildren(tag=etree.Element) if _local(child) == name]


def _child(element, name: str) -> Optional[etree._Element]:
    matches = _children(element, name)
    return matches[0] if matches else None


def _path(element, *names: str) -> Optional[etree._Element]:
    for name in names:
        element = _child(element, name)
        if element is None:
            return None
    return element


def _text(element) -> Optional[str]:
    if element is None:
        return None
    text = "".join(element.itertext()).strip()
    return text or None


def parse_date(element) -> Optional[str]:
    """Parse a start/end date element; unknown dates become None."""
    if element is None:
        return None

    year = _text(_child(element, 'year'))
    if year is not None:
        return partial_date_from_parts(year, _text(_child(element, 'month')), _text(_child(element, 'day')))

    # Some exports carry the date as plain text
    return parse_partial_date(_text(element))


def parse_name(person) -> dict:
    """
    Extract name fields from the person element.

    Returns:
        Dictionary with given_names, family_name, credit_name, other_names
    """
    name = _child(person, 'name')
    other_names = []
    for other_name in _children(_child(person, 'other-names'), 'other-name'):
        content = _text(_child(other_name, 'content'))
        if content:
            other_names.append(content)

    return {
        "given_names": _text(_child(name, 'given-names')),
        "family_name": _text(_child(name, 'family-name')),
        "credit_name": _text(_child(name, 'credit-name')),
        "other_names": other_names,
    }


def parse_emails(person) -> List[str]:
    emails = []
    for email in _children(_child(person, 'emails'), 'email'):
        # <email:email><email:email>addr</email:email></email:email>
        address = _text(_child(email, 'email')) or _text(email)
        if address:
            emails.append(address)
    return emails


def parse_external_identifiers(person) -> List[ExternalIdentifier]:
    identifiers = []
    for external in _children(_child(person, 'external-identifiers'), 'external-identifier'):
        scheme = _text(_child(external, 'external-id-type'))
        value = _text(_child(external, 'external-id-value'))
        if not scheme or not value:
            logger.debug(f"Skipping incomplete external identifier ({scheme!r}, {value!r})")
            continue
        identifiers.append(ExternalIdentifier(
            scheme=scheme,
            value=value,
            url=_text(_child(external, 'external-id-url')),
        ))
    return identifiers


def _employment_summaries(employments) -> List[etree._Element]:
    summaries = []
    if employments is None:
        return summaries

    for child in employments.iterchildren(tag=etree.Element):
        local = _local(child)
        if local == 'affiliation-group':
            summaries.extend(_children(child, 'employment-summary'))
        elif local == 'employment-summary':
            summaries.append(child)
    return summaries


def parse_employment(summary) -> Employment:
    """Map one employment-summary element."""
    organization = _child(summary, 'organization')
    address = _child(organization, 'address')

    disambiguated = None
    disambiguated_element = _child(organization, 'disambiguated-organization')
    if disambiguated_element is not None:
        identifier = _text(_child(disambiguated_element, 'disambiguated-organization-identifier'))
        source = _text(_child(disambiguated_element, 'disambiguation-source'))
        if identifier and source:
            disambiguated = DisambiguatedOrganization(identifier=identifier, source=source)

    return Employment(
        organization_name=_text(_child(organization, 'name')) or "",
        organization_country=_text(_child(address, 'country')),
        organization_city=_text(_child(address, 'city')),
        role_title=_text(_child(summary, 'role-title')),
        department=_text(_child(summary, 'department-name')),
        start_date=parse_date(_child(summary, 'start-date')),
        end_date=parse_date(_child(summary, 'end-date')),
        disambiguated_organization=disambiguated,
    )


def parse_employments(root) -> List[Employment]:
    employments = _path(root, 'activities-summary', 'employments')
    return [parse_employment(summary) for summary in _employment_summaries(employments)]


def _entity_id(root) -> Optional[str]:
    identifier = _path(root, 'orcid-identifier', 'path')
    if identifier is not None:
        return _text(identifier)
    return orcid_from_path(_text(_path(root, 'orcid-identifier', 'uri')) or root.get('path'))


def parse_record(entry_name: str, stream: BinaryIO) -> PersonRecord:
    """
    Parse one archive entry into a PersonRecord.

    Args:
        entry_name: Name of the archive entry, for error reporting
        stream: Binary stream holding the entry's XML document

    Returns:
        PersonRecord with a checksum-valid entity_id

    Raises:
        RecordMalformed: if the XML is malformed, the identifier is missing or
            invalid, or the structure cannot be mapped
    """
    try:
        tree = etree.parse(stream, _make_parser())
    except etree.XMLSyntaxError as e:
        raise RecordMalformed(entry_name, f"malformed XML: {e}") from e

    root = tree.getroot()
    if _local(root) != 'record':
        raise RecordMalformed(entry_name, f"unexpected root element <{_local(root)}>")

    entity_id = _entity_id(root)
    if not entity_id:
        raise RecordMalformed(entry_name, "missing ORCID identifier")
    if not validate_orcid(entity_id):
        raise RecordMalformed(entry_name, f"invalid ORCID identifier {entity_id!r}")

    try:
        person = _child(root, 'person')
        return PersonRecord(
            entity_id=entity_id,
            emails=parse_emails(person),
            external_identifiers=parse_external_identifiers(person),
            employments=parse_employments(root),
            **parse_name(person),
        )
    except ValidationError as e:
        raise RecordMalformed(entry_name, f"invalid record structure: {e}") from e
