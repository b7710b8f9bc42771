"""Rule-based narration of funnel, cohort and forecast results.

Every function here is pure: it reads analysis objects and returns text built
from fixed thresholds. Nothing is fetched or computed from raw events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from coupon_insights.services.cohorts import CohortAnalysis
    from coupon_insights.services.forecasting import ForecastPoint, TrendAnalysis
    from coupon_insights.services.funnels import FunnelAnalysis


LOW_STEP_CONVERSION = 0.5
LOW_OVERALL_CONVERSION = 0.1
LOW_EARLY_RETENTION = 0.3
LOW_LONG_TERM_RETENTION = 0.1
HIGH_RETENTION_DROPOFF = 0.5
HIGH_COHORT_DISPERSION = 0.1
LOW_FORECAST_CONFIDENCE = 0.7


@dataclass(slots=True)
class ForecastInsights:
    insights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)


def _percent(value: float) -> str:
    return f"{value * 100:.1f}%"


def funnel_recommendations(analysis: "FunnelAnalysis") -> list[str]:
    recommendations: list[str] = []
    weak_steps = [step.step_name for step in analysis.steps if step.conversion_rate < LOW_STEP_CONVERSION]
    if weak_steps:
        recommendations.append(
            f"Focus on improving steps with low conversion rates: {', '.join(weak_steps)}"
        )
    if analysis.dropoff_points:
        worst = analysis.dropoff_points[0]
        recommendations.append(
            f'Address the biggest dropoff point between "{worst.from_step}" and "{worst.to_step}" '
            f"({_percent(worst.dropoff_rate)} dropoff)"
        )
    if analysis.total_users and analysis.conversion_rate < LOW_OVERALL_CONVERSION:
        recommendations.append(
            "Overall conversion rate is low - consider simplifying the funnel or improving user experience"
        )
    return recommendations


def cohort_key_insights(analysis: "CohortAnalysis") -> list[str]:
    if not analysis.cohorts:
        return ["No users were acquired in the selected date range"]
    averages = analysis.average_retention
    first = averages[0] if averages else 0.0
    last = averages[-1] if averages else 0.0
    sizes = [cohort.user_count for cohort in analysis.cohorts]
    insights = [
        f"First period retention: {_percent(first)}",
        f"Long-term retention: {_percent(last)}",
        f"Average cohort size: {round(sum(sizes) / len(sizes))} users",
        f"Retention trend across cohorts is {analysis.retention_trend}",
    ]
    if first - last > HIGH_RETENTION_DROPOFF:
        insights.append("High retention dropoff indicates need for better long-term engagement")
    return insights


def cohort_recommendations(analysis: "CohortAnalysis") -> list[str]:
    averages = analysis.average_retention
    if not averages:
        return []
    recommendations: list[str] = []
    first = averages[0]
    if first < LOW_EARLY_RETENTION:
        recommendations.append("Improve onboarding experience to increase early retention")
    if len(averages) > 1 and first > 0 and averages[1] / first < 0.5:
        recommendations.append("Focus on second-period engagement to reduce early churn")
    if averages[-1] < LOW_LONG_TERM_RETENTION:
        recommendations.append("Develop long-term engagement strategies and loyalty programs")
    if analysis.dispersion > HIGH_COHORT_DISPERSION:
        recommendations.append("Investigate factors causing high variance between cohorts")
    return recommendations


def generate_forecast_insights(
    forecasts: Sequence["ForecastPoint"],
    trends: Sequence["TrendAnalysis"],
) -> ForecastInsights:
    result = ForecastInsights()
    by_metric = {point.metric: point for point in forecasts}

    revenue = by_metric.get("revenue")
    if revenue is not None and revenue.current_value > 0:
        change = revenue.forecasted_value / revenue.current_value - 1
        if revenue.trend == "up":
            result.insights.append(
                f"Revenue is projected to grow by {_percent(change)} in the next period"
            )
            result.opportunities.append(
                "Strong revenue growth trajectory provides opportunity for increased investment "
                "in marketing and expansion"
            )
        elif revenue.trend == "down":
            result.insights.append(
                f"Revenue is projected to decline by {_percent(-change)} in the next period"
            )
            result.risks.append("Declining revenue trend requires immediate attention to prevent further losses")
            result.recommendations.append(
                "Implement retention campaigns and optimize conversion funnels to reverse revenue decline"
            )

    users = by_metric.get("users")
    if users is not None:
        if users.trend == "up":
            result.insights.append(f"User base is expected to grow to {users.forecasted_value:,.0f} users")
            result.recommendations.append("Prepare infrastructure scaling to handle increased user load")
        else:
            result.risks.append("User growth is slowing down, which may impact long-term revenue potential")
            result.recommendations.append(
                "Invest in user acquisition campaigns and improve onboarding experience"
            )

    for trend in trends:
        if trend.seasonality.detected:
            result.insights.append(
                f"{trend.metric} shows {trend.seasonality.pattern} seasonal patterns with "
                f"{_percent(trend.seasonality.strength)} strength"
            )
            result.recommendations.append(
                f"Plan marketing campaigns around {trend.seasonality.pattern} seasonal patterns"
            )
        if trend.anomalies:
            result.insights.append(f"Detected {len(trend.anomalies)} anomalies in {trend.metric} data")
            result.recommendations.append(
                f"Investigate anomalies in {trend.metric} to understand underlying causes"
            )

    if any(point.confidence < LOW_FORECAST_CONFIDENCE for point in forecasts):
        result.recommendations.append("Improve data collection and tracking to increase forecast accuracy")
        result.risks.append("Low forecast confidence may lead to poor business decisions")
    return result
