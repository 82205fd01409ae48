"""User model definition."""

from __future__ import annotations

from ..engine import roles
from ..extensions import db
from ..utils.clock import utcnow


class User(db.Model):
    """A person who starts workflows and works on tasks."""

    __tablename__ = "users"

    id = db.Column(db.String(64), primary_key=True)
    user_name = db.Column(db.String(120), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(120), nullable=False, default="")
    last_name = db.Column(db.String(120), nullable=False, default="")
    phone_number = db.Column(db.String(40), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=roles.USER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    groups = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<User {self.user_name!r} ({self.role})>"
