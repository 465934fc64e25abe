"""Database-backed row-change source."""

from threadsync.db.postgres import PostgresChangeListener, parse_notification

__all__ = ["PostgresChangeListener", "parse_notification"]
