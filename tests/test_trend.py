"""Trend series tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from knowledge.types.trend import TrendSeries

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)


def test_values_stay_sorted_and_latest_is_newest() -> None:
    series = TrendSeries(name="Creatinine")
    assert series.add_value(NOW - timedelta(days=1), 1.4, "mg/dL")
    assert series.add_value(NOW - timedelta(days=3), 1.1, "mg/dL")
    assert series.add_value(NOW, "1.9", "mg/dL")

    timestamps = [entry.timestamp for entry in series.values]
    assert timestamps == sorted(timestamps)
    assert series.latest_value is not None
    assert series.latest_value.value == 1.9


def test_duplicates_and_non_numeric_values_are_rejected() -> None:
    series = TrendSeries(name="Troponin")
    assert series.add_value(NOW, 0.02)
    assert not series.add_value(NOW, 0.02)
    assert not series.add_value(NOW, "pending")
    assert not series.add_value("not a date", 0.5)
    assert len(series.values) == 1


def test_trend_and_baseline() -> None:
    series = TrendSeries(name="BNP")
    assert series.compute_trend() == "insufficient data"

    series.add_value(NOW - timedelta(days=40), 100)
    series.add_value(NOW - timedelta(days=35), 300)
    series.add_value(NOW - timedelta(days=1), 320)
    assert series.compute_baseline(NOW) == 200

    steady = TrendSeries(name="Sodium")
    steady.add_value(NOW - timedelta(days=2), 100)
    steady.add_value(NOW, 130)
    assert steady.trend == "rising significantly"
    assert steady.summary().endswith("↑")


def test_critical_flags_are_tracked() -> None:
    series = TrendSeries(name="Potassium")
    series.add_value(NOW, 6.9, "mEq/L", flag="HH")
    assert len(series.critical_events) == 1
    assert series.summary() == "Potassium: 6.9mEq/L (HH) →"


def test_values_between_is_inclusive() -> None:
    series = TrendSeries(name="Potassium")
    for days, value in ((10, 4.1), (5, 4.6), (1, 5.3)):
        series.add_value(NOW - timedelta(days=days), value)

    window = series.values_between(NOW - timedelta(days=5), NOW)
    assert [entry.value for entry in window] == [4.6, 5.3]
    assert series.values_between(NOW + timedelta(days=1), NOW + timedelta(days=2)) == []
