import pytest
from dataclasses import FrozenInstanceError

from pachistory import (
    FrequencyTable, count_commands, count_packages, summarize, SummaryStats,
    Timestamp, TimeBuckets, fill_gaps, render_chart, installed_total,
)

# ============================================================================
# FREQUENCY TABLE
# ============================================================================

def test_frequency_table_total_counts_every_increment():
    table = FrequencyTable()
    for key in ["a", "b", "a", "c", "a", "b"]:
        table.increment(key)
    assert table.total() == 6
    assert len(table) == 3
    assert sum(count for _, count in table.sorted_by_frequency()) == table.total()

def test_frequency_table_orders():
    table = FrequencyTable(["b", "a", "b", "c", "b", "a"])
    assert table.sorted_by_frequency() == [("b", 3), ("a", 2), ("c", 1)]
    assert table.sorted_by_key() == [("a", 2), ("b", 3), ("c", 1)]

def test_frequency_ties_keep_first_seen_order():
    table = FrequencyTable(["zsh", "bash", "zsh", "bash", "fish"])
    assert table.sorted_by_frequency() == [("zsh", 2), ("bash", 2), ("fish", 1)]

def test_frequency_table_most_common():
    table = FrequencyTable([3, 1, 3, 2])
    assert table.most_common(1) == [(3, 2)]
    assert table.most_common(0) == []
    assert len(table.most_common(10)) == 3

def test_frequency_table_lookup():
    table = FrequencyTable(["x"])
    assert table["x"] == 1
    assert table["missing"] == 0
    assert "x" in table
    assert "missing" not in table

def test_empty_frequency_table():
    table = FrequencyTable()
    assert table.total() == 0
    assert table.sorted_by_frequency() == []
    assert table.sorted_by_key() == []

# ============================================================================
# TOP-N TABLES
# ============================================================================

def test_count_commands(sample_events):
    table = count_commands(sample_events)
    assert table.total() == 9
    assert table.most_common(1) == [("pacman -Syu", 2)]
    assert table["pacman -S foo vim"] == 1

def test_count_packages(sample_events):
    upgraded = count_packages(sample_events, "upgraded")
    assert upgraded.sorted_by_frequency() == [("linux", 2), ("foo", 1)]

    installed = count_packages(sample_events, "installed")
    assert installed.total() == 9
    assert installed["foo"] == 2

    assert count_packages(sample_events, "removed").total() == 5
    assert count_packages(sample_events, "downgraded")["linux"] == 1

def test_count_packages_unknown_action(sample_events):
    with pytest.raises(ValueError):
        count_packages(sample_events, "reinstalled")

# ============================================================================
# SUMMARY
# ============================================================================

def test_summarize_sample(sample_events):
    stats = summarize(sample_events)
    assert stats.events == 27
    assert stats.commands == 9
    assert stats.installs == 9
    assert stats.removals == 5
    assert stats.upgrades == 3
    assert stats.downgrades == 1
    assert stats.packages == 4
    # two -Syu runs, each with at least one upgrade
    assert stats.updates == 2
    assert stats.first_seen == Timestamp(2022, 12, 31, 23)
    assert stats.last_seen == Timestamp(2023, 4, 8, 12)

def test_summarize_empty():
    stats = summarize([])
    assert stats == SummaryStats()
    assert stats.to_dict()["first_seen"] is None

def test_summary_is_immutable(sample_events):
    stats = summarize(sample_events)
    with pytest.raises(FrozenInstanceError):
        stats.events = 0

def test_summary_to_dict(sample_events):
    data = summarize(sample_events).to_dict()
    assert data["packages"] == 4
    assert data["last_seen"] == "2023-04-08 12:00"
    assert "upgrading" not in data

def test_installed_total(sample_events):
    assert installed_total(sample_events) == 4
    assert installed_total([]) == 0

# ============================================================================
# TIME BUCKETS
# ============================================================================

def test_time_buckets_by_unit(sample_events):
    buckets = TimeBuckets.from_events(sample_events)
    assert buckets.table("year").sorted_by_key() == [(2022, 1), (2023, 26)]
    months = buckets.table("month")
    assert months[12] == 1
    assert months[3] == 8
    assert months[4] == 12
    assert buckets.table("hour").total() == 27

def test_time_buckets_kind_filter(sample_events):
    buckets = TimeBuckets.from_events(sample_events, ["installed"])
    assert buckets.table("month").sorted_by_key() == [(1, 2), (3, 4), (4, 2), (12, 1)]
    commands = TimeBuckets.from_events(sample_events, ["command"])
    assert commands.table("year").total() == 9

def test_time_buckets_unknown_unit():
    with pytest.raises(ValueError):
        TimeBuckets().table("minute")

def test_fill_gaps():
    table = FrequencyTable([1, 1, 4])
    assert fill_gaps(table) == [(1, 2), (2, 0), (3, 0), (4, 1)]
    assert fill_gaps(FrequencyTable()) == []

def test_fill_gaps_months(sample_events):
    months = fill_gaps(TimeBuckets.from_events(sample_events).table("month"))
    assert [key for key, _ in months] == list(range(1, 13))
    assert dict(months)[7] == 0

# ============================================================================
# BAR CHART
# ============================================================================

def test_render_chart_shape():
    table = FrequencyTable([1, 1, 1, 1, 3, 3])
    rows = render_chart(table, height=4, width=3)
    assert rows == [
        "##",
        "##",
        "##    ##",
        "##    ##",
        " 1  2  3",
    ]

def test_render_chart_rounds_half_up():
    table = FrequencyTable([1, 1, 1, 1, 2])
    rows = render_chart(table, height=10, width=3)
    # 10 * 1/4 = 2.5 rows -> 3
    assert rows[10 - 3] == "## ##"
    assert rows[10 - 4] == "##"
    assert len(rows) == 11

def test_render_chart_labels_use_trailing_digits():
    table = FrequencyTable([2022, 2023])
    rows = render_chart(table, height=1, width=3)
    assert rows == ["## ##", "22 23"]

def test_render_chart_wider_columns():
    rows = render_chart(FrequencyTable([5]), height=2, width=5)
    assert rows == ["####", "####", "   5"]

def test_render_chart_empty_and_invalid():
    assert render_chart(FrequencyTable()) == []
    with pytest.raises(ValueError):
        render_chart(FrequencyTable([1]), height=0)
    with pytest.raises(ValueError):
        render_chart(FrequencyTable([1]), width=1)
