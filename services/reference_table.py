# WORKFLOW: Immutable organization reference table for affiliation resolution.
# Used by: Affiliation resolver, CLI (loaded once per run), sharded workers
# Functions:
# 1. normalize_organization_name() - Case-fold, drop diacritics and punctuation, collapse spaces
# 2. name_tokens() - Tokens of a normalized name used for fuzzy candidate lookup
# 3. normalize_external_identifier() - Canonical (scheme, identifier) key form
# 4. build_reference_table() - Build the read-only indexes from reference entries
# 5. load_reference_table() - Load organizations and identifier crosswalk CSV files
#
# Load flow: CSV files -> OrganizationReferenceEntry -> Indexes -> ReferenceTable (read-only)
# The table is built once before processing starts and never mutated afterwards, so it can be
# shared by any number of readers (threads or forked workers) without locking.

"""
Immutable organization reference table for affiliation resolution.
"""

import logging
import unicodedata
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple, Union

import pandas as pd

from core.exceptions import ReferenceTableError
from schemas.organizations import OrganizationReferenceEntry

logger = logging.getLogger(__name__)

# Letters that do not decompose under NFKD
TRANSLITERATIONS = {
    'ø': 'o',
    'đ': 'd',
    'ð': 'd',
    'ł': 'l',
    'ı': 'i',
    'æ': 'ae',
    'œ': 'oe',
    'þ': 'th',
}

# Generic words that would pull in too many fuzzy candidates on their own
STOP_TOKENS = frozenset({
    'a', 'an', 'and', 'at', 'de', 'del', 'der', 'des', 'di', 'du', 'for', 'in', 'la', 'le',
    'of', 'the', 'und', 'y',
    'center', 'centre', 'college', 'department', 'foundation', 'gmbh', 'hospital', 'inc',
    'institut', 'institute', 'instituto', 'ltd', 'national', 'research', 'school',
    'universidad', 'universidade', 'universita', 'universitat', 'universite', 'university',
})

ALIAS_SEPARATOR = '|'

# Sources whose identifiers are URLs; only the last path segment is kept
URL_IDENTIFIER_SOURCES = frozenset({'ROR', 'FUNDREF'})

ExternalKey = Tuple[str, str]


def normalize_organization_name(text: Optional[str]) -> str:
    """
    Normalize a free-text organization name for matching.

    Case-folds, decomposes and drops diacritics, turns punctuation and symbols
    into spaces and collapses whitespace.

    Args:
        text: Organization name as written in the record

    Returns:
        Normalized name, "" for empty input

    Example:
        >>> normalize_organization_name("  Université de Genève (UNIGE) ")
        'universite de geneve unige'
    """
    if not text:
        return ""

    folded = unicodedata.normalize('NFKD', text.casefold())
    chars = []
    for ch in folded:
        if unicodedata.combining(ch):
            continue
        category = unicodedata.category(ch)
        if category[0] in ('P', 'S') or category in ('Cc', 'Cf'):
            chars.append(' ')
        else:
            chars.append(TRANSLITERATIONS.get(ch, ch))

    return ' '.join(''.join(chars).split())


def name_tokens(normalized_name: str) -> FrozenSet[str]:
    """Distinctive tokens of a normalized name, all tokens if none is distinctive."""
    tokens = frozenset(normalized_name.split())
    distinctive = tokens - STOP_TOKENS
    return distinctive or tokens


def normalize_external_identifier(scheme: str, identifier: str) -> ExternalKey:
    """
    Key form of a disambiguated organization identifier.

    ``("ror", "https://ror.org/01ggx4157")`` -> ``("ROR", "01ggx4157")``
    """
    scheme_key = (scheme or '').strip().upper()
    value = (identifier or '').strip()
    if scheme_key in URL_IDENTIFIER_SOURCES and '/' in value:
        value = value.rstrip('/').rsplit('/', 1)[-1]
    return scheme_key, value


class ReferenceTable:
    """
    Read-only organization indexes.

    All mappings are exposed through MappingProxyType and hold frozensets or
    tuples, so nothing reachable from the table can be mutated after
    build_reference_table() returns.
    """

    def __init__(
        self,
        entries: Mapping[str, OrganizationReferenceEntry],
        exact_index: Mapping[str, FrozenSet[str]],
        token_index: Mapping[str, FrozenSet[str]],
        normalized_names: Mapping[str, Tuple[str, ...]],
        external_ids: Mapping[ExternalKey, str],
    ):
        self._entries = MappingProxyType(dict(entries))
        self._exact_index = MappingProxyType(dict(exact_index))
        self._token_index = MappingProxyType(dict(token_index))
        self._normalized_names = MappingProxyType(dict(normalized_names))
        self._external_ids = MappingProxyType(dict(external_ids))

    def __reduce__(self):
        # mappingproxy cannot be pickled; rebuild from plain dict copies in worker processes
        return (self.__class__, (
            dict(self._entries),
            dict(self._exact_index),
            dict(self._token_index),
            dict(self._normalized_names),
            dict(self._external_ids),
        ))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, canonical_id: str) -> bool:
        return canonical_id in self._entries

    @property
    def entries(self) -> Mapping[str, OrganizationReferenceEntry]:
        return self._entries

    def get(self, canonical_id: str) -> Optional[OrganizationReferenceEntry]:
        return self._entries.get(canonical_id)

    def exact_matches(self, normalized_name: str) -> FrozenSet[str]:
        """Canonical ids whose primary name or an alias normalizes to ``normalized_name``."""
        return self._exact_index.get(normalized_name, frozenset())

    def candidates(self, tokens: Iterable[str]) -> Set[str]:
        """Canonical ids sharing at least one token with the query."""
        found: Set[str] = set()
        for token in tokens:
            found.update(self._token_index.get(token, ()))
        return found

    def normalized_names(self, canonical_id: str) -> Tuple[str, ...]:
        return self._normalized_names.get(canonical_id, ())

    def lookup_external(self, scheme: str, identifier: str) -> Optional[str]:
        """Canonical id for a disambiguated organization identifier, if mapped."""
        return self._external_ids.get(normalize_external_identifier(scheme, identifier))

    @property
    def external_id_count(self) -> int:
        return len(self._external_ids)


def _merge_entries(entries: Iterable[OrganizationReferenceEntry]) -> Dict[str, OrganizationReferenceEntry]:
    merged: Dict[str, OrganizationReferenceEntry] = {}
    for entry in entries:
        existing = merged.get(entry.canonical_id)
        if existing is None:
            merged[entry.canonical_id] = entry
            continue

        logger.warning(f"Duplicate reference entry {entry.canonical_id}, merging names")
        merged[entry.canonical_id] = OrganizationReferenceEntry(
            canonical_id=existing.canonical_id,
            primary_name=existing.primary_name,
            alias_names=existing.alias_names | entry.alias_names | {entry.primary_name},
            country=existing.country or entry.country,
        )
    return merged


def build_reference_table(
    entries: Iterable[OrganizationReferenceEntry],
    external_ids: Iterable[Tuple[str, str, str]] = (),
) -> ReferenceTable:
    """
    Build the immutable reference table.

    Args:
        entries: Canonical organizations
        external_ids: (scheme, identifier, canonical_id) crosswalk rows

    Returns:
        ReferenceTable
    """
    merged = _merge_entries(entries)

    exact: Dict[str, Set[str]] = defaultdict(set)
    tokens: Dict[str, Set[str]] = defaultdict(set)
    names: Dict[str, Tuple[str, ...]] = {}

    for canonical_id, entry in merged.items():
        normalized = []
        for raw_name in entry.all_names:
            norm = normalize_organization_name(raw_name)
            if not norm or norm in normalized:
                continue
            normalized.append(norm)
            exact[norm].add(canonical_id)
            for token in name_tokens(norm):
                tokens[token].add(canonical_id)
        names[canonical_id] = tuple(normalized)

    crosswalk: Dict[ExternalKey, str] = {}
    for scheme, identifier, canonical_id in external_ids:
        key = normalize_external_identifier(scheme, identifier)
        if not key[0] or not key[1] or not canonical_id:
            continue
        if key in crosswalk and crosswalk[key] != canonical_id:
            logger.warning(f"Conflicting crosswalk rows for {key}, keeping {crosswalk[key]}")
            continue
        crosswalk[key] = canonical_id

    table = ReferenceTable(
        entries=merged,
        exact_index={k: frozenset(v) for k, v in exact.items()},
        token_index={k: frozenset(v) for k, v in tokens.items()},
        normalized_names=names,
        external_ids=crosswalk,
    )
    logger.info(f"Built reference table: {len(table)} organizations, {len(crosswalk)} crosswalk ids")
    return table


def _canonical_id(value: str) -> str:
    value = value.strip()
    if value.startswith(('http://', 'https://')):
        return value.rstrip('/').rsplit('/', 1)[-1]
    return value


def read_organizations(orgs_file: Union[str, Path]) -> List[OrganizationReferenceEntry]:
    """
    Read canonical organizations from a CSV file.

    Expected header: ``id,name[,aliases][,country]``; aliases are separated by ``|``.
    """
    try:
        df = pd.read_csv(orgs_file, dtype=str, keep_default_na=False)
    except Exception as e:
        logger.error(f"Failed to read organizations file {orgs_file}: {e}")
        raise ReferenceTableError(f"Cannot read organizations file {orgs_file}: {e}") from e

    missing_columns = [col for col in ('id', 'name') if col not in df.columns]
    if missing_columns:
        raise ReferenceTableError(f"Organizations file {orgs_file} is missing columns: {missing_columns}")

    entries = []
    for idx, row in df.iterrows():
        canonical_id = _canonical_id(row['id'])
        primary_name = row['name'].strip()
        if not canonical_id or not primary_name:
            logger.warning(f"Skipping organizations row {idx}: empty id or name")
            continue

        aliases = frozenset(
            alias.strip() for alias in row.get('aliases', '').split(ALIAS_SEPARATOR) if alias.strip()
        )
        entries.append(OrganizationReferenceEntry(
            canonical_id=canonical_id,
            primary_name=primary_name,
            alias_names=aliases - {primary_name},
            country=row.get('country', '').strip().upper() or None,
        ))

    logger.info(f"Read {len(entries)} organizations from {orgs_file}")
    return entries


def read_identifier_crosswalk(mappings_file: Union[str, Path]) -> List[Tuple[str, str, str]]:
    """
    Read a headerless ``scheme,identifier,canonical_id`` crosswalk CSV file.
    """
    try:
        df = pd.read_csv(
            mappings_file,
            header=None,
            names=['scheme', 'identifier', 'canonical_id'],
            usecols=[0, 1, 2],
            dtype=str,
            keep_default_na=False,
        )
    except Exception as e:
        logger.error(f"Failed to read organization mappings file {mappings_file}: {e}")
        raise ReferenceTableError(f"Cannot read organization mappings file {mappings_file}: {e}") from e

    rows = [
        (row.scheme, row.identifier, _canonical_id(row.canonical_id))
        for row in df.itertuples(index=False)
    ]
    logger.info(f"Read {len(rows)} crosswalk rows from {mappings_file}")
    return rows


def load_reference_table(
    orgs_file: Optional[Union[str, Path]] = None,
    mappings_file: Optional[Union[str, Path]] = None,
) -> ReferenceTable:
    """
    Load the reference table once, before any archive entry is processed.

    Either file may be omitted; with neither, an empty table is returned and
    only ROR identifiers asserted in the records themselves resolve.
    """
    entries = read_organizations(orgs_file) if orgs_file else []
    external_ids = read_identifier_crosswalk(mappings_file) if mappings_file else []
    return build_reference_table(entries, external_ids)
