"""
Duty Verification & Settlement Engine
Database models package.

The shared ``db`` handle is created here and bound to the app in
``create_app``; model modules import it as ``from dutyflow.models import db``.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    """Serialise a Numeric column as a JSON-safe string ("800.00")."""
    return None if value is None else f"{value:.2f}"
