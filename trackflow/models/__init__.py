"""
Workflow Engine — persistence layer.

Single Flask-SQLAlchemy handle shared by every model module. Models are
imported by the app factory so that ``db.create_all()`` and Alembic see
them.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_id() -> str:
    """Process-wide unique identifier for workflows, works, events, ..."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current UTC time rounded to milliseconds (what every store keeps)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
