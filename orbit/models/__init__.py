"""
Approval Orbit
Database instance shared by all models.

Import ``db`` from here; model modules register themselves on it when
imported by the application factory.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """ISO-8601 text for a datetime column, None stays None."""
    return value.isoformat() if value else None
