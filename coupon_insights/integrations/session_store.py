from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coupon_insights.core.database import session_scope
from coupon_insights.models import UserSessionRecord
from coupon_insights.services.domain import UserSession
from coupon_insights.utils.periods import ensure_utc


class SessionStore(Protocol):
    """Shared view of user sessions, keyed by session id."""

    async def get(self, session_id: str) -> UserSession | None: ...

    async def put(self, session: UserSession) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def find_open_for_user(self, user_id: str) -> UserSession | None: ...

    async def list_open(self) -> list[UserSession]: ...


class InMemorySessionStore:
    """Single-process session cache.

    Closed sessions are evicted on ``put`` so the cache only ever holds
    open sessions.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, UserSession] = {}
        self._open_by_user: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> UserSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return replace(session, event_names=set(session.event_names)) if session else None

    async def put(self, session: UserSession) -> None:
        if not session.is_open:
            await self.delete(session.id)
            return
        async with self._lock:
            self._sessions[session.id] = replace(session, event_names=set(session.event_names))
            self._open_by_user[session.user_id] = session.id

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session and self._open_by_user.get(session.user_id) == session_id:
                del self._open_by_user[session.user_id]

    async def find_open_for_user(self, user_id: str) -> UserSession | None:
        async with self._lock:
            session_id = self._open_by_user.get(user_id)
        if session_id is None:
            return None
        return await self.get(session_id)

    async def list_open(self) -> list[UserSession]:
        async with self._lock:
            return [
                replace(session, event_names=set(session.event_names))
                for session in self._sessions.values()
            ]


class SqlSessionStore:
    """Session store backed by ``user_sessions`` so collectors on several nodes agree."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, session_id: str) -> UserSession | None:
        async with session_scope(self._session_factory) as db:
            record = await db.get(UserSessionRecord, session_id)
            return self._from_record(record) if record else None

    async def put(self, session: UserSession) -> None:
        async with session_scope(self._session_factory) as db:
            record = await db.get(UserSessionRecord, session.id)
            if record is None:
                record = UserSessionRecord(id=session.id, user_id=session.user_id)
                db.add(record)
            record.platform = session.platform
            record.source = session.source
            record.started_at = ensure_utc(session.started_at)
            record.last_activity_at = ensure_utc(session.last_activity_at)
            record.ended_at = ensure_utc(session.ended_at) if session.ended_at else None
            record.duration_ms = session.duration_ms
            record.event_count = session.event_count
            record.event_names = sorted(session.event_names)
            record.conversion_event_count = session.conversion_event_count
            record.context = dict(session.context)

    async def delete(self, session_id: str) -> None:
        async with session_scope(self._session_factory) as db:
            record = await db.get(UserSessionRecord, session_id)
            if record is not None:
                await db.delete(record)

    async def find_open_for_user(self, user_id: str) -> UserSession | None:
        stmt = (
            select(UserSessionRecord)
            .where(
                UserSessionRecord.user_id == user_id,
                UserSessionRecord.ended_at.is_(None),
            )
            .order_by(UserSessionRecord.started_at.desc())
            .limit(1)
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
            record = result.scalars().first()
            return self._from_record(record) if record else None

    async def list_open(self) -> list[UserSession]:
        stmt = select(UserSessionRecord).where(UserSessionRecord.ended_at.is_(None))
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
            return [self._from_record(record) for record in result.scalars().all()]

    @staticmethod
    def _from_record(record: UserSessionRecord) -> UserSession:
        return UserSession(
            id=record.id,
            user_id=record.user_id,
            started_at=ensure_utc(record.started_at),
            last_activity_at=ensure_utc(record.last_activity_at),
            platform=record.platform,
            source=record.source,
            ended_at=ensure_utc(record.ended_at) if record.ended_at else None,
            duration_ms=record.duration_ms,
            event_count=record.event_count or 0,
            event_names=set(record.event_names or []),
            conversion_event_count=record.conversion_event_count or 0,
            context=dict(record.context or {}),
        )
