"""
Markdown rendering for stream processing results.

Everything returned to the model is text. These helpers turn telemetry,
derived features, summaries and pages into compact markdown.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

from services.derived_features import (
    DataPoint,
    DerivedFeatures,
    FeatureSummary,
    StreamStatistics,
)
from services.lap_analysis import LapAnalysis, LapComparisons, LapSummary
from services.physiological_metrics import Correlations
from services.stream_features import InflectionPoint, Spike, Trend
from services.stream_pagination import StreamPage
from services.stream_statistics import BooleanStats, LocationStats, MetricStats, compute_int_stats
from services.telemetry import Telemetry

MAX_SAMPLE_POINTS = 5

TREND_EMOJI = {
    "increasing": "📈",
    "decreasing": "📉",
    "stable": "➡️",
}

MODE_DESCRIPTIONS = {
    "raw": "Raw stream data points",
    "derived": "Derived features and statistics",
    "ai-summary": "AI-generated summary",
}


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def format_duration(seconds: int) -> str:
    """MM:SS, or HH:MM:SS from one hour."""
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{meters:.0f}m"
    return f"{meters / 1000:.2f}km"


def format_speed(mps: float) -> str:
    return f"{mps * 3.6:.1f} km/h"


def _avg(values: Sequence[Any]) -> float:
    data = [float(v) for v in values if v is not None]
    return sum(data) / len(data) if data else 0.0


def _int_range(values: Sequence[Any], unit: str) -> str:
    """Range and mean of a sensor channel, ignoring zero (no reading) samples."""
    stats = compute_int_stats(values)
    return f"{stats.min:.0f}-{stats.max:.0f} {unit}, avg: {stats.mean:.1f} {unit}"


# ---------------------------------------------------------------------------
# Raw telemetry
# ---------------------------------------------------------------------------

def format_stream_data(telemetry: Optional[Telemetry], mode: str) -> str:
    """Per-channel counts and ranges. No per-sample values."""
    if telemetry is None:
        return "❌ **No stream data available**"

    lines: List[str] = [
        f"📊 **Stream Data** ({mode} mode)",
        "",
        f"**Total Data Points:** {telemetry.count_data_points()}",
        "",
        "**Available Streams:**",
    ]
    lines.extend(f"- {t}" for t in telemetry.available_stream_types())
    lines.append("")
    lines.append("**Stream Data Summary:**")

    t = telemetry
    if t.time:
        lines.append(f"- **Time:** {len(t.time)} data points ({t.time[0]}-{t.time[-1]} seconds)")
    if t.distance:
        lines.append(
            f"- **Distance:** {len(t.distance)} data points "
            f"({t.distance[0]:.2f}-{t.distance[-1]:.2f} meters)"
        )
    if t.heartrate:
        lines.append(
            f"- **Heart Rate:** {len(t.heartrate)} data points "
            f"({_int_range(t.heartrate, 'bpm')})"
        )
    if t.watts:
        lines.append(
            f"- **Power:** {len(t.watts)} data points "
            f"({_int_range(t.watts, 'watts')})"
        )
    if t.cadence:
        lines.append(
            f"- **Cadence:** {len(t.cadence)} data points "
            f"({_int_range(t.cadence, 'rpm')})"
        )
    if t.altitude:
        lines.append(
            f"- **Altitude:** {len(t.altitude)} data points "
            f"({min(t.altitude):.1f}-{max(t.altitude):.1f} meters, avg: {_avg(t.altitude):.1f} meters)"
        )
    if t.velocity_smooth:
        lines.append(
            f"- **Velocity:** {len(t.velocity_smooth)} data points "
            f"({min(t.velocity_smooth):.2f}-{max(t.velocity_smooth):.2f} m/s, "
            f"avg: {_avg(t.velocity_smooth):.2f} m/s)"
        )
    if t.temp:
        lines.append(
            f"- **Temperature:** {len(t.temp)} data points "
            f"({min(t.temp)}-{max(t.temp)}°C, avg: {_avg(t.temp):.1f}°C)"
        )
    if t.grade_smooth:
        lines.append(
            f"- **Grade:** {len(t.grade_smooth)} data points "
            f"({min(t.grade_smooth):.1f}%-{max(t.grade_smooth):.1f}%, avg: {_avg(t.grade_smooth):.1f}%)"
        )
    if t.moving:
        moving_pct = sum(1 for m in t.moving if m) / len(t.moving) * 100
        lines.append(f"- **Moving:** {len(t.moving)} data points ({moving_pct:.1f}% moving time)")
    if t.latlng:
        lines.append(f"- **GPS Coordinates:** {len(t.latlng)} data points")

    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Derived features
# ---------------------------------------------------------------------------

def _overview(summary: FeatureSummary) -> List[str]:
    lines = [
        "## 📈 **Overview**",
        "",
        f"- **Duration:** {format_duration(summary.duration)} ({summary.total_data_points} data points)",
    ]
    if summary.total_distance > 0:
        distance = f"- **Distance:** {format_distance(summary.total_distance)}"
        if summary.elevation_gain > 0:
            distance += f" with {summary.elevation_gain:.0f}m elevation gain"
        if summary.elevation_loss > 0:
            distance += f" and {summary.elevation_loss:.0f}m elevation loss"
        lines.append(distance)
    if summary.stream_types:
        lines.append(f"- **Available Data:** {', '.join(summary.stream_types)}")
    if summary.normalized_power > 0:
        lines.append(
            f"- **Power:** avg {summary.avg_power:.0f}W, normalized {summary.normalized_power:.0f}W"
        )
    if summary.heart_rate_drift:
        lines.append(f"- **Heart Rate Drift:** {summary.heart_rate_drift:+.1f} bpm/hour")
    if summary.moving_time_percent > 0:
        lines.append(f"- **Moving Time:** {summary.moving_time_percent:.1f}% of total time")
    lines.append("")
    return lines


def _metric_lines(stats: MetricStats, unit: str) -> List[str]:
    return [
        f"- **Range:** {stats.min:.1f} - {stats.max:.1f} {unit} (Mean: {stats.mean:.1f} {unit})",
        f"- **Median:** {stats.median:.1f} {unit} (Q25: {stats.q25:.1f}, Q75: {stats.q75:.1f})",
        f"- **Variability:** {stats.variability * 100:.1f}% (StdDev: {stats.std_dev:.1f} {unit})",
        f"- **Data Points:** {stats.count}",
    ]


def _speed_lines(stats: MetricStats) -> List[str]:
    return [
        f"- **Range:** {stats.min * 3.6:.1f} - {stats.max * 3.6:.1f} km/h (Mean: {stats.mean * 3.6:.1f} km/h)",
        f"- **Median:** {stats.median * 3.6:.1f} km/h",
        f"- **Variability:** {stats.variability * 100:.1f}% (StdDev: {stats.std_dev * 3.6:.1f} km/h)",
        f"- **Data Points:** {stats.count}",
    ]


def _boolean_lines(stats: BooleanStats) -> List[str]:
    return [
        f"- **Moving:** {stats.true_count} data points ({stats.true_percent:.1f}%)",
        f"- **Stopped:** {stats.false_count} data points ({stats.false_percent:.1f}%)",
        f"- **Total Data Points:** {stats.total_count}",
    ]


def _location_lines(stats: LocationStats) -> List[str]:
    box = stats.bounding_box
    return [
        f"- **Start:** {stats.start_lat:.6f}, {stats.start_lng:.6f}",
        f"- **End:** {stats.end_lat:.6f}, {stats.end_lng:.6f}",
        "- **Bounding Box:**",
        f"  - North: {box.north_lat:.6f}, South: {box.south_lat:.6f}",
        f"  - East: {box.east_lng:.6f}, West: {box.west_lng:.6f}",
        f"- **GPS Points:** {stats.total_points}",
    ]


def _statistics(stats: StreamStatistics) -> List[str]:
    lines = ["## 📊 **Statistical Analysis**", ""]
    sections = (
        ("### 💓 **Heart Rate Analysis**", stats.heart_rate, "bpm"),
        ("### ⚡ **Power Analysis**", stats.power, "W"),
        ("### 🏃 **Speed Analysis**", stats.velocity_smooth, None),
        ("### ⛰️ **Elevation Analysis**", stats.altitude, "m"),
        ("### 🔄 **Cadence Analysis**", stats.cadence, "rpm"),
        ("### 🌡️ **Temperature Analysis**", stats.temperature, "°C"),
        ("### 📐 **Grade Analysis**", stats.grade, "%"),
    )
    for heading, metric, unit in sections:
        if metric is None:
            continue
        lines.append(heading)
        lines.extend(_speed_lines(metric) if unit is None else _metric_lines(metric, unit))
        lines.append("")
    if stats.moving is not None:
        lines.append("### 🚶 **Moving Time Analysis**")
        lines.extend(_boolean_lines(stats.moving))
        lines.append("")
    if stats.latlng is not None:
        lines.append("### 🗺️ **Location Analysis**")
        lines.extend(_location_lines(stats.latlng))
        lines.append("")
    return lines


def _trends(trends: Sequence[Trend]) -> List[str]:
    if not trends:
        return []
    lines = ["## 📈 **Trend Analysis**", ""]
    for trend in trends:
        direction = trend.direction.value
        lines.append(
            f"- **{TREND_EMOJI.get(direction, '📊')} {trend.metric}:** {direction} trend "
            f"from {format_duration(trend.start_time)} to {format_duration(trend.end_time)} "
            f"(Magnitude: {trend.magnitude:.2f}, Confidence: {trend.confidence * 100:.1f}%)"
        )
    lines.append("")
    return lines


def _spikes(spikes: Sequence[Spike]) -> List[str]:
    if not spikes:
        return []
    lines = ["## 🔥 **Spikes and Anomalies**", ""]
    for spike in spikes:
        lines.append(
            f"- **{spike.metric} Spike:** {spike.value:.1f} at {format_duration(spike.time)} "
            f"(Magnitude: {spike.magnitude:.2f}x, Duration: {spike.duration}s)"
        )
    lines.append("")
    return lines


def _inflections(points: Sequence[InflectionPoint]) -> List[str]:
    if not points:
        return []
    lines = ["## 🔄 **Inflection Points**", ""]
    for point in points:
        lines.append(
            f"- **{point.metric}:** {point.value:.1f} at {format_duration(point.time)} "
            f"(Direction: {point.direction.value}, Magnitude: {point.magnitude:.2f})"
        )
    lines.append("")
    return lines


def _correlations(corr: Correlations) -> List[str]:
    pairs = (
        ("Power ↔ Heart Rate", corr.power_heart_rate),
        ("Speed ↔ Heart Rate", corr.speed_heart_rate),
        ("Cadence ↔ Power", corr.cadence_power),
        ("Altitude ↔ Speed", corr.altitude_speed),
        ("Temperature ↔ Heart Rate", corr.temperature_heart_rate),
    )
    present = [(name, value) for name, value in pairs if value != 0]
    if not present:
        return []
    lines = ["## 🔗 **Correlations**", ""]
    lines.extend(f"- **{name}:** {value:.2f}" for name, value in present)
    lines.append("")
    return lines


def _lap_summary_line(lap: LapSummary) -> str:
    name = lap.lap_name or f"Lap {lap.lap_number}"
    if lap.distance > 0:
        line = f"**{name}:** {lap.distance / 1000:.2f}km in {format_duration(lap.duration)}"
    else:
        line = f"**{name}:** {format_duration(lap.duration)}"
    metrics = []
    if lap.avg_speed > 0:
        metrics.append(f"Avg Speed: {lap.avg_speed * 3.6:.1f} km/h")
    if lap.avg_heart_rate > 0:
        metrics.append(f"Avg HR: {lap.avg_heart_rate:.0f} bpm")
    if lap.avg_power > 0:
        metrics.append(f"Avg Power: {lap.avg_power:.0f}W")
    if metrics:
        line += f" - {', '.join(metrics)}"
    return line


def _lap_comparison_lines(c: LapComparisons) -> List[str]:
    lines = [
        f"- **Fastest Lap:** Lap {c.fastest_lap}",
        f"- **Slowest Lap:** Lap {c.slowest_lap}",
    ]
    if c.highest_power_lap > 0:
        lines.append(f"- **Highest Power:** Lap {c.highest_power_lap}")
    if c.highest_hr_lap > 0:
        lines.append(f"- **Highest HR:** Lap {c.highest_hr_lap}")
    lines.append(f"- **Speed Variation:** {c.speed_variation * 100:.1f}% across laps")
    if c.power_variation > 0:
        lines.append(f"- **Power Variation:** {c.power_variation * 100:.1f}% across laps")
    if c.hr_variation > 0:
        lines.append(f"- **HR Variation:** {c.hr_variation * 100:.1f}% across laps")
    lines.append(f"- **Consistency Score:** {c.consistency_score * 10:.1f}/10")
    lines.append("")
    return lines


def _laps(analysis: LapAnalysis) -> List[str]:
    lines = [
        "## 🏁 **Lap-by-Lap Analysis**",
        "",
        f"**Segmentation:** {analysis.segmentation_type} ({analysis.total_laps} segments)",
        "",
        "### 📊 **Lap Performance Summary**",
        "",
    ]
    lines.extend(_lap_summary_line(lap) for lap in analysis.lap_summaries)
    lines.append("")
    lines.append("### 🏆 **Lap Comparisons**")
    lines.append("")
    lines.extend(_lap_comparison_lines(analysis.lap_comparisons))
    return lines


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def _samples(points: Sequence[DataPoint]) -> List[str]:
    if not points:
        return []
    lines = ["## 📋 **Sample Data Points**", "", "Representative data points from the activity:", ""]
    for point in points[:MAX_SAMPLE_POINTS]:
        line = f"**Time {format_duration(point.time_offset)}:**"
        values = [f"{k}: {_format_value(v)}" for k, v in point.values.items()]
        if values:
            line += " " + ", ".join(values)
        lines.append(line)
    if len(points) > MAX_SAMPLE_POINTS:
        lines.append("")
        lines.append(f"*... and {len(points) - MAX_SAMPLE_POINTS} more data points*")
    lines.append("")
    return lines


def format_derived_features(features: Optional[DerivedFeatures]) -> str:
    if features is None:
        return "❌ **No derived features data available**"

    lines = [f"📊 **Stream Analysis** (Activity ID: {features.activity_id})", ""]
    lines.extend(_overview(features.summary))
    lines.extend(_statistics(features.statistics))
    lines.extend(_trends(features.trends))
    lines.extend(_spikes(features.spikes))
    lines.extend(_inflections(features.inflection_points))
    lines.extend(_correlations(features.correlations))
    if features.lap_analysis is not None:
        lines.extend(_laps(features.lap_analysis))
    lines.extend(_samples(features.sample_data))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Summaries and pages
# ---------------------------------------------------------------------------

def format_stream_summary(summary: Any) -> str:
    """Render a StreamSummary (duck-typed to avoid importing the summarizer)."""
    if summary is None:
        return "❌ **No stream summary data available**"

    lines = [f"🤖 **AI Stream Summary** (Activity ID: {summary.activity_id})", ""]
    if summary.model:
        header = f"**Model:** {summary.model}"
        if summary.tokens_used > 0:
            header += f" | **Tokens Used:** {summary.tokens_used}"
        lines.extend([header, ""])
    if summary.summary_prompt:
        lines.extend(["**Analysis Request:**", f"> {summary.summary_prompt}", ""])
    lines.extend(["**AI Analysis:**", "", summary.summary])
    return "\n".join(lines)


def navigation_instructions(page: StreamPage) -> str:
    if not page.has_next_page:
        return "✅ **Complete:** This is the final page of data for this activity."

    lines = [
        "**Navigation:**",
        f"- Next page: Call get-activity-streams with page_number={page.page_number + 1}",
    ]
    if page.page_number > 1:
        lines.append(f"- Previous page: Call get-activity-streams with page_number={page.page_number - 1}")
    lines.append(
        f"- Jump to specific page: Call get-activity-streams with page_number=X (1-{page.total_pages})"
    )
    lines.append("- Get full dataset: Call get-activity-streams with page_size=-1")
    lines.append("")
    lines.append(
        "💡 **Tip:** Analyze this page's data before requesting the next page to maintain context efficiency."
    )
    return "\n".join(lines)


def format_stream_page(page: Optional[StreamPage]) -> str:
    if page is None:
        return "❌ **No stream page data available**"

    parts = [f"📄 **Page {page.page_number} of {page.total_pages}** for Activity {page.activity_id}\n\n"]
    if page.time_range and page.time_range[1] > page.time_range[0]:
        start, end = page.time_range
        parts.append(f"**Time Range:** {start}-{end} seconds (Duration: {end - start} seconds)\n\n")

    mode = page.processing_mode
    parts.append(f"**Processing Mode:** {MODE_DESCRIPTIONS.get(mode, mode)}\n\n")

    if isinstance(page.data, str):
        parts.append(page.data)
    else:
        parts.append(f"**Processed Data:**\n{page.data!r}")

    parts.append("\n\n" + (page.instructions or navigation_instructions(page)))

    stats = f"\n\n📊 **Page Stats:** {page.estimated_tokens} estimated tokens"
    if page.has_next_page:
        stats += f" | Next: page {page.page_number + 1}"
    parts.append(stats)
    return "".join(parts)
