# WORKFLOW: Resolve free-text employer names to canonical organization ids.
# Used by: Conversion pipeline (enrichment stage), tests
# Functions:
# 1. resolve_disambiguated() - Use an organization id asserted by the record (ROR, crosswalk)
# 2. resolve_name() - Exact then fuzzy matching of a normalized organization name
# 3. select_unambiguous() - Threshold and reject-on-tie decision over scored candidates
# 4. resolve_employment() - Full resolution chain for one employment
# 5. resolve_record() - Fill Employment.organization_id for a whole record
#
# Resolution flow: Disambiguated id -> Exact normalized name -> Fuzzy (Levenshtein) -> Tie check
# Thresholds: score >= fuzzy_threshold and a lead of more than tie_margin over the runner-up.
# Ambiguous matches are left unresolved instead of guessed. No match is a normal outcome,
# never an error, and the reference table is only ever read.

import logging
from typing import Dict, Optional, Tuple

import Levenshtein

from core.config import settings
from schemas.organizations import MatchMethod, MatchResult
from schemas.records import DisambiguatedOrganization, Employment, PersonRecord
from services.reference_table import (
    ReferenceTable,
    name_tokens,
    normalize_external_identifier,
    normalize_organization_name,
)

logger = logging.getLogger(__name__)


def select_unambiguous(
    scores: Dict[str, float], threshold: float, tie_margin: float
) -> Optional[Tuple[str, float]]:
    """
    Pick the single best candidate, or nothing.

    Args:
        scores: Best score per canonical id
        threshold: Minimum score for the winner
        tie_margin: The winner must lead the runner-up by more than this

    Returns:
        (canonical_id, score), or None when nothing reaches the threshold or
        the two best candidates are tied within the margin
    """
    if not scores:
        return None

    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    best_id, best_score = ranked[0]
    if best_score < threshold:
        return None

    # Reject on tie: an ambiguous match is never guessed
    if len(ranked) > 1 and best_score - ranked[1][1] <= tie_margin:
        logger.debug(f"Rejected tie between {best_id} and {ranked[1][0]} at {best_score:.3f}")
        return None

    return best_id, best_score


class AffiliationResolver:
    """Resolves organization names against an immutable reference table."""

    def __init__(
        self,
        table: ReferenceTable,
        fuzzy_threshold: Optional[float] = None,
        tie_margin: Optional[float] = None,
        min_fuzzy_length: Optional[int] = None,
        trust_disambiguated_ids: Optional[bool] = None,
    ):
        self.table = table
        self.fuzzy_threshold = settings.fuzzy_threshold if fuzzy_threshold is None else fuzzy_threshold
        self.tie_margin = settings.tie_margin if tie_margin is None else tie_margin
        self.min_fuzzy_length = settings.min_fuzzy_length if min_fuzzy_length is None else min_fuzzy_length
        self.trust_disambiguated_ids = (
            settings.trust_disambiguated_ids if trust_disambiguated_ids is None else trust_disambiguated_ids
        )

    def _country_allows(self, canonical_id: str, country: Optional[str]) -> bool:
        if not country:
            return True
        entry = self.table.get(canonical_id)
        return entry is None or entry.country is None or entry.country == country.upper()

    def resolve_disambiguated(self, organization: Optional[DisambiguatedOrganization]) -> Optional[MatchResult]:
        """
        Resolve an organization id asserted by the source record.

        ROR ids are used as is (last path segment); other sources are looked
        up in the reference table's identifier crosswalk.
        """
        if organization is None:
            return None

        scheme, identifier = normalize_external_identifier(organization.source, organization.identifier)
        if not identifier:
            return None
        if scheme == 'ROR':
            return MatchResult(canonical_id=identifier, method=MatchMethod.DISAMBIGUATED)

        canonical_id = self.table.lookup_external(scheme, identifier)
        if canonical_id:
            return MatchResult(canonical_id=canonical_id, method=MatchMethod.DISAMBIGUATED)
        return None

    def resolve_name(self, name: Optional[str], country: Optional[str] = None) -> Optional[MatchResult]:
        """
        Resolve a free-text organization name.

        Args:
            name: Organization name as written in the record
            country: Optional country code of the employment; reference entries
                with a different country are not considered

        Returns:
            MatchResult, or None when there is no unambiguous match
        """
        normalized = normalize_organization_name(name)
        if not normalized:
            return None

        exact = [cid for cid in sorted(self.table.exact_matches(normalized)) if self._country_allows(cid, country)]
        if len(exact) == 1:
            return MatchResult(canonical_id=exact[0], method=MatchMethod.EXACT)
        if len(exact) > 1:
            logger.debug(f"Exact name {normalized!r} is shared by {exact}, leaving unresolved")
            return None

        if len(normalized) < self.min_fuzzy_length:
            return None

        scores: Dict[str, float] = {}
        for canonical_id in self.table.candidates(name_tokens(normalized)):
            if not self._country_allows(canonical_id, country):
                continue
            names = self.table.normalized_names(canonical_id)
            if names:
                scores[canonical_id] = max(Levenshtein.ratio(normalized, candidate) for candidate in names)

        selected = select_unambiguous(scores, self.fuzzy_threshold, self.tie_margin)
        if selected is None:
            return None

        canonical_id, score = selected
        return MatchResult(canonical_id=canonical_id, method=MatchMethod.FUZZY, score=round(score, 6))

    def resolve_employment(self, employment: Employment) -> Optional[MatchResult]:
        """Resolution chain for one employment."""
        if self.trust_disambiguated_ids:
            result = self.resolve_disambiguated(employment.disambiguated_organization)
            if result is not None:
                return result

        return self.resolve_name(employment.organization_name, employment.organization_country)

    def resolve_record(self, record: PersonRecord) -> int:
        """
        Fill organization_id of each employment in place.

        Only Employment.organization_id is ever written. Resolution problems are
        logged and leave the id empty; this method does not raise.

        Returns:
            Number of employments that received an organization id
        """
        resolved = 0
        for employment in record.employments:
            if not employment.organization_name and employment.disambiguated_organization is None:
                continue
            try:
                result = self.resolve_employment(employment)
            except Exception as e:
                logger.error(f"Affiliation resolution failed for {employment.organization_name!r}: {e}")
                continue

            if result is not None:
                employment.organization_id = result.canonical_id
                resolved += 1

        return resolved
