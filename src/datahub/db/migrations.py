"""
Schema migrations for the Data Hub store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent and
indexes are created with IF NOT EXISTS.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Non-SQLite backends are skipped: their
    schema is managed outside this process.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # dataopslog: columns added after the first in-memory-only release
        _add_column_if_missing(conn, "dataopslog", "kind", "VARCHAR DEFAULT 'sync'")
        _add_column_if_missing(conn, "dataopslog", "triggered_by", "VARCHAR")
        _add_column_if_missing(conn, "dataopslog", "dry_run", "BOOLEAN DEFAULT 0")

        # collectedtime: payer-side name for spot-check display
        _add_column_if_missing(conn, "collectedtime", "user_name", "VARCHAR")

        # "last run for this exact operation" lookups
        conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_dataopslog_operation_ts "
            "ON dataopslog (operation, ts)"
        ))
        # month audit reads by dataset over a date window
        conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_dataopslog_dataset_range "
            "ON dataopslog (dataset, start_date, end_date)"
        ))

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR DEFAULT 'x'".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
