from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from coupon_insights.agents.report import build_parser, main
from coupon_insights.core.config import AppSettings
from coupon_insights.core.errors import FunnelNotFoundError
from coupon_insights.services.domain import DateRange
from coupon_insights.services.forecasting import ForecastPoint
from coupon_insights.services.funnels import FunnelAnalysis, FunnelStepAnalysis


MARCH = DateRange(
    datetime(2024, 3, 1, tzinfo=timezone.utc),
    datetime(2024, 3, 10, tzinfo=timezone.utc),
)


class FakeFunnelService:
    async def analyze_funnel(self, funnel_id: str, date_range: DateRange) -> FunnelAnalysis:
        if funnel_id != "funnel_checkout":
            raise FunnelNotFoundError(funnel_id)
        assert date_range == MARCH
        return FunnelAnalysis(
            funnel_id=funnel_id,
            date_range=date_range,
            total_users=10,
            converted_users=4,
            conversion_rate=0.4,
            steps=[
                FunnelStepAnalysis(
                    step_id="step_1",
                    step_name="View",
                    users_entered=10,
                    users_completed=4,
                    conversion_rate=0.4,
                    dropoff_rate=0.6,
                    average_time_to_complete_ms=1500.0,
                )
            ],
            dropoff_points=[],
            average_conversion_time_ms=1500.0,
        )


class FakeForecastingService:
    async def forecast(self, metric: str, date_range: DateRange, periods: int) -> list[ForecastPoint]:
        assert periods == 2
        return [
            ForecastPoint(
                metric=metric,
                current_value=130.0,
                forecasted_value=140.0 + 10 * horizon,
                confidence=1 - 0.1 * (horizon + 1),
                trend="up",
                period=f"2024-0{5 + horizon}",
            )
            for horizon in range(periods)
        ]


async def _noop_dispose() -> None:
    return None


@pytest.fixture()
def configured(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = AppSettings(app_env="test", database_url="sqlite+aiosqlite:///:memory:")
    monkeypatch.setattr("coupon_insights.agents.report.get_settings", lambda: settings)
    monkeypatch.setattr("coupon_insights.agents.report.dispose_engine", _noop_dispose)
    monkeypatch.setattr("coupon_insights.agents.report.get_funnel_service", FakeFunnelService)
    monkeypatch.setattr("coupon_insights.agents.report.get_forecasting_service", FakeForecastingService)


def test_parser_defaults_and_options() -> None:
    parser = build_parser()

    cohorts = parser.parse_args(["cohorts", "--time-unit", "month", "--start", "2024-01-01"])
    trend = parser.parse_args(["trend", "revenue"])
    projection = parser.parse_args(["projection", "users", "--periods", "4"])

    assert cohorts.time_unit == "month"
    assert cohorts.periods == 12
    assert cohorts.acquisition_event == "bot_start"
    assert cohorts.start == date(2024, 1, 1)
    assert cohorts.end is None
    assert trend.metric == "revenue"
    assert not hasattr(trend, "periods")
    assert projection.periods == 4


def test_parser_rejects_bad_dates() -> None:
    with pytest.raises(SystemExit) as exc:
        build_parser().parse_args(["funnel", "funnel_checkout", "--start", "03/01/2024"])

    assert exc.value.code == 2


def test_main_prints_funnel_json(configured, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["funnel", "funnel_checkout", "--start", "2024-03-01", "--end", "2024-03-09"])

    assert exc.value.code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["funnel_id"] == "funnel_checkout"
    assert payload["conversion_rate"] == 0.4
    assert payload["steps"][0]["step_name"] == "View"
    assert datetime.fromisoformat(payload["date_range"]["end"]) == MARCH.end


def test_main_prints_forecast_json(configured, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["forecast", "revenue", "--periods", "2"])

    assert exc.value.code == 0
    payload = json.loads(capsys.readouterr().out)
    assert [point["forecasted_value"] for point in payload] == [140.0, 150.0]
    assert [point["period"] for point in payload] == ["2024-05", "2024-06"]
    assert {point["trend"] for point in payload} == {"up"}


def test_main_reports_analysis_errors(configured, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["funnel", "funnel_missing", "--start", "2024-03-01", "--end", "2024-03-09"])

    assert exc.value.code == 1
    assert capsys.readouterr().out == ""


def test_main_requires_database_url(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    settings = AppSettings(app_env="test", database_url=None)
    monkeypatch.setattr("coupon_insights.agents.report.get_settings", lambda: settings)

    with pytest.raises(SystemExit) as exc:
        main(["forecast", "revenue"])

    assert exc.value.code == 2
    assert capsys.readouterr().out == ""
