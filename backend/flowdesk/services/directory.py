"""Database-backed user lookups for assignment resolution."""

from __future__ import annotations

from ..engine import Actor
from ..extensions import db
from ..models.user import User


class DatabaseDirectory:
    """Resolves roles and groups to active user ids."""

    def is_active_user(self, user_id: str) -> bool:
        query = User.query.filter_by(id=user_id, is_active=True)
        return bool(db.session.query(query.exists()).scalar())

    def users_with_role(self, role: str) -> list[str]:
        users = (
            User.query.filter_by(role=role, is_active=True)
            .order_by(User.created_at.asc(), User.id.asc())
            .all()
        )
        return [user.id for user in users]

    def users_in_group(self, group_id: str) -> list[str]:
        # Group membership lives in a JSON list, which is filtered here to stay portable.
        users = User.query.filter_by(is_active=True).order_by(User.created_at.asc(), User.id.asc()).all()
        return [user.id for user in users if group_id in (user.groups or [])]


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)
