"""Tests for lap-by-lap analysis, lap comparisons and distance segmentation."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fixtures.stream_fixtures import make_easy_run_stream, make_laps
from services.lap_analysis import (
    LapComparisons,
    LapSummary,
    analyze_distance_segments,
    analyze_lap_by_lap,
    analyze_single_lap,
    compare_laps,
    create_distance_segments,
    direction_consistency,
    find_distance_index,
    lap_spikes,
)
from services.stream_features import TrendDirection
from services.telemetry import Lap, Telemetry


@pytest.fixture
def easy_run():
    return Telemetry.from_dict(make_easy_run_stream())


class TestAnalyzeLapByLap:
    def test_one_summary_per_lap(self, easy_run):
        laps = make_laps(3600, 4)
        analysis = analyze_lap_by_lap(easy_run, laps)

        assert analysis.total_laps == 4
        assert analysis.segmentation_type == "laps"
        assert [s.lap_number for s in analysis.lap_summaries] == [1, 2, 3, 4]
        assert analysis.lap_summaries[0].lap_name == "Lap 1"

    def test_lap_timing_and_averages(self, easy_run):
        laps = make_laps(3600, 4)
        second = analyze_lap_by_lap(easy_run, laps).lap_summaries[1]

        assert second.start_time == 900
        assert second.end_time == 1799
        assert second.avg_speed == pytest.approx(2.8)
        assert second.max_cadence == 172
        assert second.statistics.heart_rate is not None
        assert second.statistics.power is None

    def test_comparisons_follow_the_run_shape(self, easy_run):
        analysis = analyze_lap_by_lap(easy_run, make_laps(3600, 4))
        comparisons = analysis.lap_comparisons

        assert comparisons.fastest_lap == 2
        assert comparisons.slowest_lap == 1
        assert comparisons.lowest_hr_lap == 1
        assert comparisons.highest_hr_lap == 3
        assert comparisons.highest_power_lap == 0
        assert 0.0 <= comparisons.consistency_score <= 1.0

    def test_warmup_lap_heart_rate_trend(self, easy_run):
        first = analyze_lap_by_lap(easy_run, make_laps(3600, 4)).lap_summaries[0]
        hr_trend = next(t for t in first.trends if t.metric == "heart_rate")
        assert hr_trend.direction == TrendDirection.increasing
        assert 0.0 < hr_trend.confidence <= 1.0

    def test_invalid_lap_keeps_metadata_only(self, easy_run):
        lap = Lap(start_index=5000, end_index=6000, name="Ghost", distance=1000.0, elapsed_time=300)
        summary = analyze_single_lap(easy_run, lap, 1)

        assert summary.lap_name == "Ghost"
        assert summary.distance == 1000.0
        assert summary.duration == 300
        assert summary.avg_speed == 0.0
        assert summary.statistics.heart_rate is None
        assert summary.trends == []

    def test_no_laps_falls_back_to_distance_segments(self, easy_run):
        analysis = analyze_lap_by_lap(easy_run, [])
        assert analysis.segmentation_type == "distance"
        assert analysis.total_laps > 0


class TestDistanceSegments:
    def test_kilometre_segments(self, easy_run):
        analysis = analyze_distance_segments(easy_run)

        assert analysis.segmentation_type == "distance"
        assert analysis.total_laps == 10
        assert analysis.lap_summaries[0].lap_name == "Segment 1 (1.0km)"
        assert analysis.lap_summaries[-1].distance < 1000

    def test_short_activity_is_one_segment(self):
        segments = create_distance_segments([0.0, 100.0, 200.0, 450.0], 1000.0)
        assert len(segments) == 1
        assert segments[0].end_index == 3
        assert segments[0].distance == 450.0

    def test_missing_distance(self):
        analysis = analyze_distance_segments(Telemetry(time=[0, 1, 2]))
        assert analysis.total_laps == 0
        assert analysis.lap_summaries == []

    def test_find_distance_index(self):
        distance = [0.0, 10.0, 20.0, 30.0]
        assert find_distance_index(distance, 0.0) == 0
        assert find_distance_index(distance, 15.0) == 2
        assert find_distance_index(distance, 20.0) == 2
        assert find_distance_index(distance, 100.0) == 3
        assert find_distance_index([], 5.0) == 0


class TestCompareLaps:
    def test_identical_laps_are_fully_consistent(self):
        summaries = [LapSummary(lap_number=i, avg_speed=3.0, avg_heart_rate=150.0) for i in (1, 2, 3)]
        comparisons = compare_laps(summaries)

        assert comparisons.consistency_score == 1.0
        assert comparisons.speed_variation == 0.0
        assert comparisons.fastest_lap == 1
        assert comparisons.slowest_lap == 1

    def test_power_extremes(self):
        summaries = [
            LapSummary(lap_number=1, avg_speed=3.0, avg_power=220.0),
            LapSummary(lap_number=2, avg_speed=3.2, avg_power=260.0),
            LapSummary(lap_number=3, avg_speed=2.9, avg_power=0.0),
        ]
        comparisons = compare_laps(summaries)

        assert comparisons.highest_power_lap == 2
        assert comparisons.lowest_power_lap == 1
        assert comparisons.fastest_lap == 2
        assert comparisons.slowest_lap == 3
        assert comparisons.power_variation > 0

    def test_empty(self):
        assert compare_laps([]) == LapComparisons()


class TestLapDetectors:
    def test_direction_consistency(self):
        assert direction_consistency([1, 2, 3, 2]) == pytest.approx(2 / 3)
        assert direction_consistency([5, 5, 5]) == 1.0
        assert direction_consistency([1, 2]) == 0.0

    def test_power_spike_offset_from_lap_start(self):
        watts = [100] * 20
        watts[10] = 400
        telemetry = Telemetry(time=list(range(100, 120)), watts=watts)
        spikes = lap_spikes(telemetry, Lap(start_index=0, end_index=19))

        assert len(spikes) == 1
        assert spikes[0].metric == "power"
        assert spikes[0].time_offset == 10
        assert spikes[0].value == 400
