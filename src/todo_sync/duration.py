"""Duration token parsing and formatting.

Durations are written after the task content as ``⏱️ 30min``, ``⏱️ 2h``,
``⏱️ 1h30min`` or ``⏱️ 3d``. Hours are stored remotely as minutes.
"""

import re
from typing import Optional

from .models import Duration, DurationUnit


DURATION_EMOJI = "⏱️"

# The emoji is matched with or without its variation selector.
DURATION_RE = re.compile(r"⏱️?\s*(\d+(?:\.\d+)?)(min|h|d)(?:(\d+)min)?")

MAX_MINUTES = 24 * 60
MAX_DAYS = 365


class DurationParser:
    """Parse and render the duration micro-syntax."""

    @staticmethod
    def parse(text: str) -> Optional[Duration]:
        """Parse the first duration token in ``text``.

        Returns None when there is no token or the value is not positive.
        """
        match = DURATION_RE.search(text)
        if not match:
            return None
        return DurationParser._from_match(match)

    @staticmethod
    def _from_match(match) -> Optional[Duration]:
        amount = float(match.group(1))
        unit = match.group(2)
        extra_minutes = int(match.group(3)) if match.group(3) else 0

        if unit == "d":
            days = int(round(amount))
            if days <= 0:
                return None
            return Duration(amount=days, unit=DurationUnit.DAY)

        if unit == "h":
            minutes = int(round(amount * 60)) + extra_minutes
        else:
            minutes = int(round(amount))

        if minutes <= 0:
            return None
        return Duration(amount=minutes, unit=DurationUnit.MINUTE)

    @staticmethod
    def format(duration: Optional[Duration]) -> str:
        """Render a duration token, or an empty string for no duration."""
        if duration is None or duration.amount <= 0:
            return ""

        if duration.unit == DurationUnit.DAY:
            return f"{DURATION_EMOJI} {duration.amount}d"

        minutes = duration.amount
        if minutes >= 60:
            hours, rest = divmod(minutes, 60)
            if rest == 0:
                return f"{DURATION_EMOJI} {hours}h"
            return f"{DURATION_EMOJI} {hours}h{rest}min"
        return f"{DURATION_EMOJI} {minutes}min"

    @staticmethod
    def remove(text: str) -> str:
        """Strip every duration token from ``text``."""
        return re.sub(r"\s{2,}", " ", DURATION_RE.sub("", text)).strip()

    @staticmethod
    def equals(first: Optional[Duration], second: Optional[Duration]) -> bool:
        """Compare two durations by total length, treating None as equal only to None."""
        if first is None or second is None:
            return first is None and second is None
        return first.to_minutes() == second.to_minutes()

    @staticmethod
    def is_valid(duration: Optional[Duration]) -> bool:
        if duration is None or duration.amount <= 0:
            return False
        if duration.unit == DurationUnit.DAY:
            return duration.amount <= MAX_DAYS
        return duration.amount <= MAX_MINUTES

    @staticmethod
    def to_minutes(duration: Optional[Duration]) -> int:
        return duration.to_minutes() if duration else 0

    @staticmethod
    def describe(duration: Optional[Duration]) -> str:
        """Human-readable duration for status output."""
        if duration is None:
            return "no duration"
        if duration.unit == DurationUnit.DAY:
            return f"{duration.amount} day" + ("s" if duration.amount != 1 else "")
        hours, minutes = divmod(duration.amount, 60)
        parts = []
        if hours:
            parts.append(f"{hours} hour" + ("s" if hours != 1 else ""))
        if minutes:
            parts.append(f"{minutes} minute" + ("s" if minutes != 1 else ""))
        return " ".join(parts)
