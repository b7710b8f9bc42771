"""SQLAlchemy models and declarative base."""

from coupon_insights.models.base import Base  # noqa: F401
from coupon_insights.models.entities import (  # noqa: F401
    AnalyticsEvent,
    FunnelDefinition,
    UserProfile,
    UserSessionRecord,
)

__all__ = [
    "Base",
    "AnalyticsEvent",
    "UserSessionRecord",
    "UserProfile",
    "FunnelDefinition",
]
