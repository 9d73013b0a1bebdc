# WORKFLOW: Database model of the bulk-load target table.
# Used by: Bulk-row formatter (column contract), db.session (COPY, init_db), tests
# Models represent:
# 1. name_metadata - InvenioRDM names vocabulary rows, one per ORCID record
#
# Data flow: ORCID archive -> PersonRecord -> bulk-rows CSV -> COPY -> name_metadata
# The column order of this table is the column order of every bulk row.

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class NameMetadata(Base):
    __tablename__ = "name_metadata"

    created = Column(DateTime(timezone=True), nullable=False)
    updated = Column(DateTime(timezone=True), nullable=False)
    id = Column(String(36), primary_key=True)  # UUID4 surrogate key
    json = Column(JSON, nullable=True)  # name document
    version_id = Column(Integer, nullable=False, default=1)
    pid = Column(String(255), nullable=False)  # ORCID iD

    __table_args__ = (
        Index('idx_name_metadata_pid', 'pid', unique=True),
    )


NAME_METADATA_COLUMNS = tuple(column.name for column in NameMetadata.__table__.columns)
