from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date, datetime, time, timedelta, timezone
from typing import Sequence

from pydantic import BaseModel, TypeAdapter

from coupon_insights.api.deps import (
    get_cohort_service,
    get_forecasting_service,
    get_funnel_service,
)
from coupon_insights.core.config import get_settings
from coupon_insights.core.database import dispose_engine
from coupon_insights.core.errors import AnalyticsError
from coupon_insights.schemas.analytics import (
    CohortAnalysisItem,
    ForecastPointItem,
    FunnelAnalysisItem,
    GrowthProjectionItem,
    TrendAnalysisItem,
)
from coupon_insights.services.cohorts import CohortConfig
from coupon_insights.services.domain import DateRange


logger = logging.getLogger("coupon_insights.report")


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Expected YYYY-MM-DD.") from exc


def _date_range(start: date | None, end: date | None, default_days: int) -> DateRange:
    end_day = end or datetime.now(timezone.utc).date()
    start_day = start or end_day - timedelta(days=default_days)
    # End date is inclusive on the command line.
    return DateRange(
        datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=timezone.utc),
    )


async def _build_report(args: argparse.Namespace) -> str:
    if args.command == "funnel":
        window = _date_range(args.start, args.end, 30)
        analysis = await get_funnel_service().analyze_funnel(args.funnel_id, window)
        report: BaseModel = FunnelAnalysisItem.model_validate(analysis)
    elif args.command == "cohorts":
        window = _date_range(args.start, args.end, 90)
        service = get_cohort_service()
        config = CohortConfig(
            name=args.name,
            acquisition_event=args.acquisition_event,
            retention_event=args.retention_event,
            time_unit=args.time_unit,
            periods=args.periods,
        )
        analysis = await service.analyze_cohorts(config, window)
        report = CohortAnalysisItem.from_domain(analysis, service.get_cohort_insights(analysis))
    elif args.command == "forecast":
        window = _date_range(args.start, args.end, 365)
        points = await get_forecasting_service().forecast(args.metric, window, args.periods)
        adapter = TypeAdapter(list[ForecastPointItem])
        return adapter.dump_json(
            [ForecastPointItem.model_validate(point) for point in points], indent=2
        ).decode()
    elif args.command == "trend":
        window = _date_range(args.start, args.end, 365)
        trend = await get_forecasting_service().analyze_trend(args.metric, window)
        report = TrendAnalysisItem.model_validate(trend)
    else:
        window = _date_range(args.start, args.end, 365)
        projection = await get_forecasting_service().project_growth(args.metric, window, args.periods)
        report = GrowthProjectionItem.model_validate(projection)
    return report.model_dump_json(indent=2)


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if not settings.database_url:
        logger.error("DATABASE_URL must be configured to build reports.")
        return 2
    try:
        output = await _build_report(args)
    except (AnalyticsError, ValueError) as exc:
        logger.error("Report failed: %s", exc)
        return 1
    finally:
        await dispose_engine()
    print(output)
    return 0


def _add_window(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=_parse_date, default=None, help="First day (YYYY-MM-DD).")
    parser.add_argument("--end", type=_parse_date, default=None, help="Last day, inclusive (YYYY-MM-DD).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coupon-insights-report",
        description="Print funnel, cohort or forecast analyses as JSON.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    funnel = commands.add_parser("funnel", help="Step-wise funnel analysis.")
    funnel.add_argument("funnel_id")
    _add_window(funnel)

    cohorts = commands.add_parser("cohorts", help="Acquisition cohort retention matrix.")
    cohorts.add_argument("--name", default="Cohort Analysis")
    cohorts.add_argument("--acquisition-event", default="bot_start")
    cohorts.add_argument("--retention-event", default="any_activity")
    cohorts.add_argument("--time-unit", choices=("day", "week", "month"), default="week")
    cohorts.add_argument("--periods", type=int, default=12)
    _add_window(cohorts)

    for name, help_text, default_periods in (
        ("forecast", "Point forecasts for a metric.", 3),
        ("trend", "Trend, seasonality and anomalies for a metric.", 0),
        ("projection", "Growth scenarios for a metric.", 6),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("metric")
        if default_periods:
            sub.add_argument("--periods", type=int, default=default_periods)
        _add_window(sub)
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
