from coupon_insights.core.config import get_settings
from coupon_insights.core.database import get_session_factory
from coupon_insights.integrations.event_store import (
    EventStore,
    InMemoryEventStore,
    SqlEventStore,
)
from coupon_insights.integrations.funnel_store import (
    FunnelStore,
    InMemoryFunnelStore,
    SqlFunnelStore,
)
from coupon_insights.integrations.session_store import (
    InMemorySessionStore,
    SessionStore,
    SqlSessionStore,
)
from coupon_insights.integrations.user_properties import (
    InMemoryUserPropertyStore,
    SqlUserPropertyStore,
    UserPropertyStore,
)
from coupon_insights.services.cohorts import CohortAnalysisService
from coupon_insights.services.collector import EventCollectorService
from coupon_insights.services.forecasting import ForecastingService
from coupon_insights.services.funnels import FunnelAnalysisService
from coupon_insights.services.rules import RuleEngine

_event_store: EventStore | None = None
_session_store: SessionStore | None = None
_funnel_store: FunnelStore | None = None
_user_properties: UserPropertyStore | None = None
_collector: EventCollectorService | None = None


def get_event_store() -> EventStore:
    """Provide the shared event store (SQL when DATABASE_URL is set)."""
    settings = get_settings()
    global _event_store
    if _event_store is None:
        timeout = settings.event_store_timeout_seconds
        if settings.database_url:
            _event_store = SqlEventStore(get_session_factory(), timeout=timeout)
        else:
            _event_store = InMemoryEventStore(timeout=timeout)
    return _event_store


def get_session_store() -> SessionStore:
    settings = get_settings()
    global _session_store
    if _session_store is None:
        if settings.database_url:
            _session_store = SqlSessionStore(get_session_factory())
        else:
            _session_store = InMemorySessionStore()
    return _session_store


def get_funnel_store() -> FunnelStore:
    settings = get_settings()
    global _funnel_store
    if _funnel_store is None:
        if settings.database_url:
            _funnel_store = SqlFunnelStore(get_session_factory())
        else:
            _funnel_store = InMemoryFunnelStore()
    return _funnel_store


def get_user_property_store() -> UserPropertyStore:
    settings = get_settings()
    global _user_properties
    if _user_properties is None:
        if settings.database_url:
            _user_properties = SqlUserPropertyStore(get_session_factory())
        else:
            _user_properties = InMemoryUserPropertyStore()
    return _user_properties


def get_collector_service() -> EventCollectorService:
    """Provide the process-wide collector; its buffer must outlive single requests."""
    settings = get_settings()
    global _collector
    if _collector is None:
        rules = (
            RuleEngine.from_file(settings.event_rules_path)
            if settings.event_rules_path
            else RuleEngine()
        )
        _collector = EventCollectorService(
            get_event_store(),
            get_session_store(),
            user_properties=get_user_property_store(),
            rule_engine=rules,
            settings=settings,
        )
    return _collector


def get_funnel_service() -> FunnelAnalysisService:
    return FunnelAnalysisService(get_event_store(), get_funnel_store())


def get_cohort_service() -> CohortAnalysisService:
    return CohortAnalysisService(get_event_store(), settings=get_settings())


def get_forecasting_service() -> ForecastingService:
    return ForecastingService(get_event_store(), settings=get_settings())
