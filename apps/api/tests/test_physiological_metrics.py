"""Tests for elevation, normalized power, HR drift and correlations."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fixtures.stream_fixtures import make_hill_stream
from services.physiological_metrics import (
    correlations,
    elevation_analysis,
    heart_rate_drift,
    normalized_power,
    pearson,
)
from services.telemetry import Telemetry


class TestElevationAnalysis:
    def test_gain_loss_net_without_distance(self):
        result = elevation_analysis([100, 110, 105, 120])
        assert result.total_gain == pytest.approx(25.0)
        assert result.total_loss == pytest.approx(5.0)
        assert result.net_change == pytest.approx(20.0)
        assert result.climb_segments == []
        assert result.max_grade == 0.0

    def test_hill_grades_and_climb_segment(self):
        stream = make_hill_stream(climb_s=300, descent_s=300, speed_m_s=3.0, climb_grade_pct=6.0)
        result = elevation_analysis(stream["altitude"], stream["distance"], stream["time"])

        assert result.total_gain == pytest.approx(54.0, abs=0.05)
        assert result.total_loss == pytest.approx(53.82, abs=0.05)
        assert result.max_grade == pytest.approx(6.0, abs=0.01)
        assert result.min_grade == pytest.approx(-6.0, abs=0.01)

        assert len(result.climb_segments) == 1
        climb = result.climb_segments[0]
        assert climb.start_index == 0
        assert climb.end_index == 300
        assert climb.distance == pytest.approx(900.0)
        assert climb.elevation_gain == pytest.approx(54.0, abs=0.05)

    def test_single_steep_step_is_not_a_climb(self):
        result = elevation_analysis([0, 10, 10, 10], [0, 100, 200, 300])
        assert result.max_grade == pytest.approx(10.0)
        assert result.climb_segments == []

    def test_mismatched_distance_skips_grades(self):
        result = elevation_analysis([0, 10, 20], [0, 100])
        assert result.total_gain == pytest.approx(20.0)
        assert result.max_grade == 0.0

    def test_too_short(self):
        assert elevation_analysis([100]).total_gain == 0.0
        assert elevation_analysis(None).net_change == 0.0


class TestNormalizedPower:
    def test_constant_power(self):
        assert normalized_power([200] * 120, list(range(120))) == pytest.approx(200.0)

    def test_variable_power_exceeds_average(self):
        power = ([100] * 60 + [300] * 60) * 5
        np_value = normalized_power(power, list(range(len(power))))
        assert np_value > 200.0

    def test_fewer_than_thirty_samples(self):
        assert normalized_power([250] * 29) == 0.0

    def test_sub_minute_duration(self):
        assert normalized_power([250] * 40, list(range(40))) == 0.0

    def test_missing(self):
        assert normalized_power(None) == 0.0


class TestHeartRateDrift:
    def test_linear_drift_in_bpm_per_hour(self):
        times = list(range(0, 3600, 10))
        hr = [140 + t * (10 / 3600) for t in times]
        assert heart_rate_drift(hr, times) == pytest.approx(10.0)

    def test_zero_readings_are_ignored(self):
        times = list(range(0, 3600, 10))
        hr = [140 + t * (10 / 3600) for t in times]
        for i in range(0, len(hr), 7):
            hr[i] = 0
        assert heart_rate_drift(hr, times) == pytest.approx(10.0)

    def test_needs_ten_samples(self):
        assert heart_rate_drift([140] * 9, list(range(9))) == 0.0
        assert heart_rate_drift([140, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0], list(range(11))) == 0.0


class TestCorrelations:
    def test_power_heart_rate_example(self):
        telemetry = Telemetry(watts=[100, 200, 300, 400, 500], heartrate=[120, 140, 160, 180, 200])
        assert correlations(telemetry).power_heart_rate == pytest.approx(1.0, abs=0.1)

    def test_negative_correlation(self):
        assert pearson([1, 2, 3, 4], [8, 6, 4, 2]) == pytest.approx(-1.0)

    def test_zero_variance_is_zero(self):
        assert pearson([5, 5, 5], [1, 2, 3]) == 0.0

    def test_shared_range_only(self):
        assert pearson([1, 2, 3, 100], [2, 4, 6]) == pytest.approx(1.0)

    def test_missing_channels(self):
        result = correlations(Telemetry(heartrate=[120, 130]))
        assert result.power_heart_rate == 0.0
        assert result.temperature_heart_rate == 0.0
        assert pearson([1], [1]) == 0.0
