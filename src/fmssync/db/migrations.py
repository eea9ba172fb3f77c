"""
Database migrations for the sync engine.

create_all() never alters a table that already exists, so nullable columns
listed here are backfilled with SQLite ALTER TABLE ADD COLUMN when an
existing table lacks them. Every step is idempotent: a column is only added
if absent. Extend the list when a nullable column joins a model.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Non-SQLite engines are skipped; they are
    expected to be provisioned from the current metadata.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # SyncLog
        _add_column_if_missing(conn, "synclog", "summary_json", "TEXT")
        _add_column_if_missing(conn, "synclog", "triggered_by_user_id", "VARCHAR")

        # SyncChange
        _add_column_if_missing(conn, "syncchange", "reviewed_at", "DATETIME")
        _add_column_if_missing(conn, "syncchange", "outcome", "VARCHAR")
        _add_column_if_missing(conn, "syncchange", "error_message", "VARCHAR")

        # FacilitySyncConfig
        _add_column_if_missing(conn, "facilitysyncconfig", "sync_interval_minutes", "INTEGER")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if existing_columns and column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
