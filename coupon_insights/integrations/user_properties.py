from __future__ import annotations

from typing import Any, Mapping, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coupon_insights.core.database import session_scope
from coupon_insights.models import UserProfile


class UserPropertyStore(Protocol):
    async def get_user_properties(self, user_id: str) -> dict[str, Any] | None: ...


class InMemoryUserPropertyStore:
    def __init__(self, profiles: Mapping[str, Mapping[str, Any]] | None = None):
        self._profiles = {user_id: dict(props) for user_id, props in (profiles or {}).items()}

    def set(self, user_id: str, properties: Mapping[str, Any]) -> None:
        self._profiles[user_id] = dict(properties)

    async def get_user_properties(self, user_id: str) -> dict[str, Any] | None:
        properties = self._profiles.get(user_id)
        return dict(properties) if properties is not None else None


class SqlUserPropertyStore:
    """Reads user attributes from ``user_profiles``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_user_properties(self, user_id: str) -> dict[str, Any] | None:
        async with session_scope(self._session_factory) as db:
            profile = await db.get(UserProfile, user_id)
            if profile is None:
                return None
            return dict(profile.properties or {})
