# WORKFLOW: Pydantic schemas for person records extracted from ORCID summaries.
# Used by: Record parser, affiliation resolver, output formatters, tests
# Schemas include:
# 1. ExternalIdentifier - Alternate identifiers of a person (Scopus, ResearcherID, ...)
# 2. DisambiguatedOrganization - Organization id asserted in the source record
# 3. Employment - One employment affiliation with optional resolved organization id
# 4. PersonRecord - Normalized record for one archive entry
#
# Record flow: XML entry -> PersonRecord -> Resolver (organization_id only) -> Formatter
# Field order here is the serialized field order of the ndjson output.

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from etl.validators import validate_orcid


class ExternalIdentifier(BaseModel):
    """Alternate identifier of a person."""
    scheme: str = Field(..., description="Identifier type, e.g. 'Scopus Author ID'")
    value: str = Field(..., description="Identifier value")
    url: Optional[str] = Field(None, description="Resolvable URL when provided")


class DisambiguatedOrganization(BaseModel):
    """Organization identifier asserted by the source record."""
    identifier: str
    source: str


class Employment(BaseModel):
    """One employment affiliation."""
    organization_name: str = ""
    organization_country: Optional[str] = None
    organization_city: Optional[str] = None
    role_title: Optional[str] = None
    department: Optional[str] = None
    start_date: Optional[str] = Field(None, description="YYYY, YYYY-MM or YYYY-MM-DD")
    end_date: Optional[str] = Field(None, description="YYYY, YYYY-MM or YYYY-MM-DD")
    disambiguated_organization: Optional[DisambiguatedOrganization] = None
    organization_id: Optional[str] = Field(None, description="Canonical id, set by the resolver")

    @property
    def is_active(self) -> bool:
        return self.end_date is None


class PersonRecord(BaseModel):
    """Normalized person record built from exactly one archive entry."""
    entity_id: str = Field(..., description="Checksum-valid ORCID iD")
    given_names: Optional[str] = None
    family_name: Optional[str] = None
    credit_name: Optional[str] = None
    other_names: List[str] = Field(default_factory=list)
    emails: List[str] = Field(default_factory=list)
    external_identifiers: List[ExternalIdentifier] = Field(default_factory=list)
    employments: List[Employment] = Field(default_factory=list)

    @field_validator('entity_id')
    @classmethod
    def validate_entity_id(cls, v):
        if not validate_orcid(v):
            raise ValueError(f'Invalid ORCID iD: {v!r}')
        return v

    @property
    def display_name(self) -> str:
        given = (self.given_names or '').strip()
        family = (self.family_name or '').strip()
        if given and family:
            return f"{family}, {given}"
        return family or given
