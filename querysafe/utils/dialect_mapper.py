"""Utility for mapping database types to SQL dialects.

Converts connection ``db_type`` values to dialect names understood by
sqlglot. Unknown types fall back to the PostgreSQL grammar and are
reported to the caller, never accepted silently.
"""

from querysafe.logging import get_logger

logger = get_logger(__name__)

# Mapping from database types to sqlglot dialect names
DB_TYPE_TO_DIALECT = {
    "postgresql": "postgres",
    "mysql": "mysql",
    "sqlite": "sqlite",
    "sqlserver": "tsql",
}

DEFAULT_DIALECT = "postgres"


def db_type_to_dialect(db_type: str | None) -> tuple[str, bool]:
    """Convert a database type to a sqlglot dialect.

    Args:
        db_type: Connection database type (e.g. "postgresql", "sqlserver")

    Returns:
        Tuple of (dialect, known). ``known`` is False when the default
        dialect was substituted.

    Examples:
        >>> db_type_to_dialect("sqlserver")
        ('tsql', True)
        >>> db_type_to_dialect("oracle")
        ('postgres', False)

    """
    normalized = (db_type or "").lower().strip()
    dialect = DB_TYPE_TO_DIALECT.get(normalized)

    if dialect:
        return dialect, True

    logger.warning(
        "Unknown database type, using default dialect",
        extra={
            "db_type": db_type,
            "default_dialect": DEFAULT_DIALECT,
            "supported_types": list(DB_TYPE_TO_DIALECT.keys()),
        },
    )
    return DEFAULT_DIALECT, False
