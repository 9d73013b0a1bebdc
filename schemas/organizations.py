# WORKFLOW: Pydantic schemas for the organization reference table.
# Used by: Reference table loader, affiliation resolver, extract command
# Schemas include:
# 1. OrganizationReferenceEntry - Canonical organization with names and country
# 2. ExtractedIdentifier - (scheme, identifier) pair of a disambiguated organization
# 3. MatchResult - Outcome of resolving one organization name
#
# Reference entries are frozen: the table is built once and shared read-only.

from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrganizationReferenceEntry(BaseModel):
    """Canonical organization of the reference table."""
    model_config = ConfigDict(frozen=True)

    canonical_id: str = Field(..., min_length=1, description="Canonical identifier, e.g. ROR id")
    primary_name: str = Field(..., min_length=1)
    alias_names: FrozenSet[str] = Field(default_factory=frozenset)
    country: Optional[str] = Field(None, description="ISO 3166-1 alpha-2 code")

    @property
    def all_names(self):
        return (self.primary_name, *sorted(self.alias_names))


class ExtractedIdentifier(BaseModel):
    """Disambiguated organization identifier found in a record."""
    model_config = ConfigDict(frozen=True)

    scheme: str
    identifier: str


class MatchMethod(str, Enum):
    DISAMBIGUATED = "disambiguated"
    EXACT = "exact"
    FUZZY = "fuzzy"


class MatchResult(BaseModel):
    """Resolved canonical id with the method and score that produced it."""
    model_config = ConfigDict(frozen=True)

    canonical_id: str
    method: MatchMethod
    score: float = Field(1.0, ge=0.0, le=1.0)
