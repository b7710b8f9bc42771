from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coupon_insights.core.database import session_scope
from coupon_insights.models import FunnelDefinition
from coupon_insights.services.domain import Funnel, FunnelStep
from coupon_insights.utils.periods import ensure_utc


class FunnelStore(Protocol):
    async def save(self, funnel: Funnel) -> None: ...

    async def get(self, funnel_id: str) -> Funnel | None: ...

    async def list(self) -> list[Funnel]: ...


class InMemoryFunnelStore:
    def __init__(self) -> None:
        self._funnels: dict[str, Funnel] = {}
        self._lock = asyncio.Lock()

    async def save(self, funnel: Funnel) -> None:
        async with self._lock:
            self._funnels[funnel.id] = funnel

    async def get(self, funnel_id: str) -> Funnel | None:
        async with self._lock:
            return self._funnels.get(funnel_id)

    async def list(self) -> list[Funnel]:
        async with self._lock:
            return sorted(self._funnels.values(), key=lambda funnel: funnel.name)


class SqlFunnelStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, funnel: Funnel) -> None:
        async with session_scope(self._session_factory) as db:
            record = await db.get(FunnelDefinition, funnel.id)
            if record is not None:
                # Definitions are immutable once stored.
                return
            db.add(
                FunnelDefinition(
                    id=funnel.id,
                    name=funnel.name,
                    description=funnel.description,
                    steps=[step.to_dict() for step in funnel.steps],
                    time_window_seconds=funnel.time_window.total_seconds(),
                    created_at=ensure_utc(funnel.created_at),
                )
            )

    async def get(self, funnel_id: str) -> Funnel | None:
        async with session_scope(self._session_factory) as db:
            record = await db.get(FunnelDefinition, funnel_id)
            return self._from_record(record) if record else None

    async def list(self) -> list[Funnel]:
        async with session_scope(self._session_factory) as db:
            result = await db.execute(select(FunnelDefinition).order_by(FunnelDefinition.name))
            return [self._from_record(record) for record in result.scalars().all()]

    @staticmethod
    def _from_record(record: FunnelDefinition) -> Funnel:
        return Funnel(
            id=record.id,
            name=record.name,
            description=record.description,
            steps=tuple(FunnelStep.from_dict(step) for step in record.steps or []),
            time_window=timedelta(seconds=record.time_window_seconds),
            created_at=ensure_utc(record.created_at) if record.created_at else None,
        )
