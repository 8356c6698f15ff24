"""Tests for the duration and recurrence micro-syntax."""

from datetime import date

import pytest

from todo_sync.duration import DurationParser
from todo_sync.models import Due, Duration, DurationUnit
from todo_sync.recurring import RecurrenceType, RecurringTaskParser

from conftest import make_task


class TestDurationParser:
    """Test duration tokens."""

    @pytest.mark.parametrize("text,expected", [
        ("⏱️ 30min", Duration(30)),
        ("⏱ 30min", Duration(30)),
        ("⏱️ 2h", Duration(120)),
        ("⏱️ 1.5h", Duration(90)),
        ("⏱️ 1h30min", Duration(90)),
        ("⏱️ 3d", Duration(3, DurationUnit.DAY)),
    ])
    def test_parse(self, text, expected):
        assert DurationParser.parse(f"Task {text} 📅 5/2/2024") == expected

    def test_parse_rejects_missing_or_zero(self):
        assert DurationParser.parse("Task without duration") is None
        assert DurationParser.parse("⏱️ 0min") is None
        assert DurationParser.parse("⏱️ later") is None

    def test_format(self):
        assert DurationParser.format(Duration(45)) == "⏱️ 45min"
        assert DurationParser.format(Duration(120)) == "⏱️ 2h"
        assert DurationParser.format(Duration(150)) == "⏱️ 2h30min"
        assert DurationParser.format(Duration(2, DurationUnit.DAY)) == "⏱️ 2d"
        assert DurationParser.format(None) == ""

    def test_equals_compares_total_length(self):
        assert DurationParser.equals(Duration(1440), Duration(1, DurationUnit.DAY))
        assert not DurationParser.equals(Duration(30), None)
        assert DurationParser.equals(None, None)

    def test_remove_and_describe(self):
        assert DurationParser.remove("Write report ⏱️ 1h30min today") == "Write report today"
        assert DurationParser.describe(Duration(90)) == "1 hour 30 minutes"
        assert DurationParser.describe(Duration(1, DurationUnit.DAY)) == "1 day"

    def test_is_valid(self):
        assert DurationParser.is_valid(Duration(60))
        assert not DurationParser.is_valid(Duration(2000))
        assert not DurationParser.is_valid(None)


class TestRecurringTaskParser:
    """Test recurrence tokens."""

    def test_parse_stops_at_next_token(self):
        assert RecurringTaskParser.parse("Water plants 🔄 every 2 weeks 🟡 📅 5/2/2024") == "every 2 weeks"
        assert RecurringTaskParser.parse("Water plants 🔄 every monday") == "every monday"
        assert RecurringTaskParser.parse("Water plants") is None

    def test_rule_for_recurring_task(self):
        task = make_task("1", "Standup", due=Due(date(2024, 5, 2), string="every weekday", is_recurring=True))

        assert RecurringTaskParser.rule_for(task) == "every weekday"

    def test_rule_for_unrecognised_string_is_generic(self):
        task = make_task("1", "Standup", due=Due(date(2024, 5, 2), string="tomorrow", is_recurring=True))

        assert RecurringTaskParser.rule_for(task) == "recurring"

    def test_no_rule_without_recurrence_flag(self):
        task = make_task("1", "Standup", due=Due(date(2024, 5, 2), string="every day"))

        assert RecurringTaskParser.rule_for(task) is None
        assert RecurringTaskParser.format(None) == ""

    @pytest.mark.parametrize("rule,expected", [
        ("daily", RecurrenceType.DAILY),
        ("every 3 days", RecurrenceType.DAILY),
        ("every weekday", RecurrenceType.DAILY),
        ("every friday", RecurrenceType.WEEKLY),
        ("every 2 weeks", RecurrenceType.WEEKLY),
        ("every month", RecurrenceType.MONTHLY),
        ("annually", RecurrenceType.YEARLY),
        ("every other full moon", RecurrenceType.CUSTOM),
        ("tomorrow", None),
    ])
    def test_classify(self, rule, expected):
        assert RecurringTaskParser.classify(rule) == expected

    def test_remove(self):
        assert RecurringTaskParser.remove("Water plants 🔄 every week 🟡") == "Water plants 🟡"
