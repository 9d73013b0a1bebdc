"""
Pydantic schema of the InvenioRDM name document stored in the ``json``
column of the bulk-loaded names table.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NameIdentifier(BaseModel):
    scheme: str
    identifier: str


class NameAffiliation(BaseModel):
    id: Optional[str] = None
    name: str


class NameJson(BaseModel):
    """Name document, serialized with ``$schema`` first and unset parts omitted."""
    model_config = ConfigDict(populate_by_name=True)

    schema_: str = Field(..., alias="$schema")
    given_name: str = ""
    family_name: str = ""
    name: str = ""
    identifiers: List[NameIdentifier] = Field(default_factory=list)
    affiliations: Optional[List[NameAffiliation]] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
