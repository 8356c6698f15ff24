"""Recurrence token handling.

A recurring task carries its natural-language rule verbatim after the
``🔄`` marker, for example ``🔄 every 2 weeks``. The rule itself is owned by
the remote service; locally it is only displayed, compared and classified.
"""

import re
from enum import Enum
from typing import Optional

from .models import Task


RECURRENCE_EMOJI = "🔄"
GENERIC_RULE = "recurring"

# A rule runs until the next trailing token or the end of the line.
RECURRENCE_TOKEN_RE = re.compile(
    r"🔄\s+(.+?)(?=\s+(?:🔴|🟡|🔵|⚪|📅|#|⏱|<!--)|$)"
)

RECURRENCE_KEYWORDS = ("every", "daily", "weekly", "monthly", "yearly", "annually")


class RecurrenceType(Enum):
    """Coarse frequency of a recurrence rule"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"  # Anything the table below does not recognise


class RecurringTaskParser:
    """Parse and render the recurrence micro-syntax."""

    FREQUENCY_PATTERNS = {
        r'^daily$': RecurrenceType.DAILY,
        r'^every (\d+ )?days?\b': RecurrenceType.DAILY,
        r'^every (weekday|workday)s?\b': RecurrenceType.DAILY,
        r'^weekly$': RecurrenceType.WEEKLY,
        r'^every (\d+ )?weeks?\b': RecurrenceType.WEEKLY,
        r'^every (mon|tues?|wed(?:nes)?|thu(?:rs)?|fri|sat(?:ur)?|sun)(day)?s?\b': RecurrenceType.WEEKLY,
        r'^every weekend\b': RecurrenceType.WEEKLY,
        r'^monthly$': RecurrenceType.MONTHLY,
        r'^every (\d+ )?months?\b': RecurrenceType.MONTHLY,
        r'^yearly$': RecurrenceType.YEARLY,
        r'^annually$': RecurrenceType.YEARLY,
        r'^every (\d+ )?years?\b': RecurrenceType.YEARLY,
    }

    @staticmethod
    def parse(text: str) -> Optional[str]:
        """Return the rule following the recurrence marker, if any."""
        match = RECURRENCE_TOKEN_RE.search(text)
        if not match:
            return None
        rule = match.group(1).strip()
        return rule or None

    @staticmethod
    def format(rule: Optional[str]) -> str:
        if not rule or not rule.strip():
            return ""
        return f"{RECURRENCE_EMOJI} {rule.strip()}"

    @staticmethod
    def rule_for(task: Task) -> Optional[str]:
        """Rule to display for a task, or None when it does not recur."""
        if not task.is_recurring:
            return None
        if task.due.string and RecurringTaskParser.is_recurring_pattern(task.due.string):
            return task.due.string.strip()
        return GENERIC_RULE

    @staticmethod
    def remove(text: str) -> str:
        """Strip the recurrence token from ``text``."""
        return re.sub(r"\s{2,}", " ", RECURRENCE_TOKEN_RE.sub("", text)).strip()

    @staticmethod
    def is_recurring_pattern(rule: Optional[str]) -> bool:
        if not rule:
            return False
        lowered = rule.lower()
        return any(keyword in lowered for keyword in RECURRENCE_KEYWORDS)

    @classmethod
    def classify(cls, rule: Optional[str]) -> Optional[RecurrenceType]:
        """Map a rule string onto a coarse frequency."""
        if not rule:
            return None
        normalized = rule.lower().strip()
        for regex, rec_type in cls.FREQUENCY_PATTERNS.items():
            if re.match(regex, normalized):
                return rec_type
        if cls.is_recurring_pattern(normalized):
            return RecurrenceType.CUSTOM
        return None
