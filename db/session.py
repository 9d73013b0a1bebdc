# WORKFLOW: Database engine management and bulk loading of converted rows.
# Used by: CLI load command, tests
# Functions:
# 1. get_engine() - Lazy engine for settings.database_url
# 2. init_db() - Create the name_metadata table
# 3. check_db_connection() - Health check for database connectivity
# 4. build_copy_statement() - COPY statement matching the bulk-row column contract
# 5. copy_bulk_rows() - Stream a bulk-rows file into the table with COPY
#
# Load flow: bulk-rows CSV -> COPY name_metadata (...) FROM STDIN WITH (FORMAT csv) -> commit

from pathlib import Path
from typing import Optional, Sequence, Union

from sqlalchemy import create_engine, text
import logging

from core.config import settings
from db.models import NAME_METADATA_COLUMNS

logger = logging.getLogger(__name__)

# Lazy-loaded database engine
_engine = None


def get_engine():
    """Get database engine (lazy-loaded)."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            echo=settings.debug,
        )
    return _engine


def init_db(engine=None) -> None:
    """
    Initialize database tables.
    """
    from db.models import Base

    try:
        Base.metadata.create_all(bind=engine or get_engine())
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def check_db_connection(engine=None) -> bool:
    """
    Check if database connection is working.
    """
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def build_copy_statement(table: Optional[str] = None, columns: Sequence[str] = NAME_METADATA_COLUMNS,
                         header: bool = False) -> str:
    """
    COPY statement for a bulk-rows file.

    Args:
        table: Target table, defaults to settings.name_table
        columns: Column order of the file
        header: Whether the file starts with a header line
    """
    options = "FORMAT csv, HEADER true" if header else "FORMAT csv"
    column_list = ", ".join(columns)
    return f"COPY {table or settings.name_table} ({column_list}) FROM STDIN WITH ({options})"


def copy_bulk_rows(rows_file: Union[str, Path], table: Optional[str] = None, header: bool = False,
                   engine=None) -> int:
    """
    Load a bulk-rows file with PostgreSQL COPY.

    Args:
        rows_file: File written by the bulk-rows output format
        table: Target table, defaults to settings.name_table
        header: Whether the file starts with a header line
        engine: SQLAlchemy engine, defaults to get_engine()

    Returns:
        Number of rows loaded as reported by the driver
    """
    statement = build_copy_statement(table, header=header)
    connection = (engine or get_engine()).raw_connection()
    try:
        cursor = connection.cursor()
        with open(rows_file, "r", encoding="utf-8", newline="") as f:
            # psycopg2 DBAPI cursor
            cursor.copy_expert(statement, f)
        loaded = cursor.rowcount
        connection.commit()
        logger.info(f"Loaded {loaded} rows from {rows_file} into {table or settings.name_table}")
        return loaded
    except Exception as e:
        logger.error(f"Bulk load of {rows_file} failed: {e}")
        connection.rollback()
        raise
    finally:
        connection.close()
