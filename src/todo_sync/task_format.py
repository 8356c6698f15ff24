"""Task line formatting and parsing.

A task is written to a document as one line followed by an indented
description block and, recursively, its subtasks::

    - [ ] Buy groceries ⏱️ 30min 🔄 every week 🔴 📅 5/26/2024 #errands <!-- id:42:1a2b3c4d5e6f -->
        Milk, eggs, bread
      - [ ] Find the coupon book <!-- id:43:9f8e7d6c5b4a -->

Parsing is the left inverse of formatting: the trailing tokens are peeled
off the end of the line (in any order) and decoded independently, so a
malformed token only drops its own field. Token markers inside the content
and checkbox-shaped description lines are backslash-escaped on the way out
so that peeling never reaches into them.
"""

import hashlib
import json
import re
from datetime import date
from typing import Dict, List, Optional, Tuple

from .duration import DurationParser
from .models import DEFAULT_PRIORITY, ParsedTask, Task
from .recurring import RecurringTaskParser
from .utils.datetime import today_local


HASH_VERSION = 1
HASH_LENGTH = 12

DESCRIPTION_INDENT = 4
SUBTASK_INDENT = 2

PRIORITY_EMOJI = {
    4: "🔴",
    3: "🟡",
    2: "🔵",
    1: "⚪",
}
EMOJI_PRIORITY = {emoji: priority for priority, emoji in PRIORITY_EMOJI.items()}

PRIORITY_NAMES = {
    4: "Urgent (P1)",
    3: "High Priority (P2)",
    2: "Medium Priority (P3)",
    1: "Low Priority (P4)",
}

DATE_EMOJI = "📅"

CHECKBOX_RE = re.compile(r"^(\s*)- \[( |x|X)\]\s+(.*)$")
ID_COMMENT_RE = re.compile(r"<!--\s*id:([^:\s>]+)(?::([0-9a-fA-F]+))?\s*-->")

# Labels that are not a single plain word are written as #[name].
LABEL_TAIL_RE = re.compile(r"\s#(?:\[([^\[\]<>]+)\]|(?!\d+$)([^\s#<>\[\]]+))$")
PLAIN_LABEL_RE = re.compile(r"^(?!\d+$)[^\s#<>\[\]]+$")
DATE_TAIL_RE = re.compile(r"\s📅\s*(\S+)$")
OVERDUE_TAIL_RE = re.compile(r"\s🔴\s*\*\*OVERDUE:\s*([^*]*)\*\*$")
PRIORITY_TAIL_RE = re.compile(r"\s(🔴|🟡|🔵|⚪)$")
DURATION_TAIL_RE = re.compile(r"\s⏱️?\s*(\S+)$")
RECURRENCE_TAIL_RE = re.compile(r"\s🔄\s+(.+)$")

US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

# A token marker in content is written as \<marker> so the parser cannot
# mistake content text for a trailing token. Existing backslashes in front
# of a marker are doubled, which keeps the escape reversible.
TOKEN_MARKERS = "#📅🔴🟡🔵⚪⏱🔄"
CONTENT_ESCAPE_RE = re.compile(rf"(?:(?<=\s)|^)(\\*)(?=[{TOKEN_MARKERS}])")
CONTENT_UNESCAPE_RE = re.compile(rf"(?:(?<=\s)|^)(\\+)(?=[{TOKEN_MARKERS}])")

# Description lines shaped like a checkbox would parse as subtasks.
DESCRIPTION_ESCAPE_RE = re.compile(r"^(\\*)(?=- \[[ xX]\])")
DESCRIPTION_UNESCAPE_RE = re.compile(r"^(\\+)(?=- \[[ xX]\])")


def _escape(pattern: re.Pattern, text: str) -> str:
    return pattern.sub(lambda m: m.group(1) * 2 + "\\", text)


def _unescape(pattern: re.Pattern, text: str) -> str:
    return pattern.sub(lambda m: "\\" * (len(m.group(1)) // 2), text)


def escape_content(content: str) -> str:
    return _escape(CONTENT_ESCAPE_RE, content)


def unescape_content(content: str) -> str:
    return _unescape(CONTENT_UNESCAPE_RE, content)


def format_label(name: str) -> str:
    if PLAIN_LABEL_RE.match(name):
        return f"#{name}"
    return f"#[{name}]"


def format_date(value: date) -> str:
    """Render a date as M/D/YYYY without zero padding."""
    return f"{value.month}/{value.day}/{value.year}"


def parse_date_token(value: str) -> Optional[date]:
    """Decode a date token; accepts M/D/YYYY and ISO dates."""
    value = value.strip()
    match = US_DATE_RE.match(value)
    try:
        if match:
            month, day, year = (int(part) for part in match.groups())
            return date(year, month, day)
        return date.fromisoformat(value)
    except ValueError:
        return None


def format_date_token(due_date: date, today: Optional[date] = None) -> str:
    today = today or today_local()
    if due_date < today:
        return f"🔴 **OVERDUE: {format_date(due_date)}**"
    return f"{DATE_EMOJI} {format_date(due_date)}"


def format_priority_name(priority: int) -> str:
    return PRIORITY_NAMES.get(priority, PRIORITY_NAMES[DEFAULT_PRIORITY])


def _normalize_text(text: str) -> str:
    return " ".join((text or "").split())


def _normalize_description(description: str) -> str:
    lines = [line.strip() for line in (description or "").splitlines()]
    return "\n".join(line for line in lines if line)


def calculate_task_hash(task: Task) -> str:
    """Compute the snapshot hash used for change detection.

    The digest covers content, description, priority, due date, duration,
    the recurrence flag, label names, project, section and order. Labels are
    sorted and text is whitespace-normalised before hashing, so the result
    only changes when a tracked field does.

    Args:
        task: Remote task to hash

    Returns:
        Truncated hex digest
    """
    hash_data = {
        "v": HASH_VERSION,
        "content": _normalize_text(task.content),
        "description": _normalize_description(task.description),
        "priority": task.priority,
        "due": task.due.date.isoformat() if task.due else None,
        "duration": task.duration.to_dict() if task.duration else None,
        "recurring": task.is_recurring,
        "labels": task.label_names,
        "project_id": task.project_id,
        "section_id": task.section_id,
        "order": task.order,
    }
    hash_string = json.dumps(hash_data, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(hash_string.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def format_task_line(task: Task, today: Optional[date] = None, indent: int = 0,
                     task_hash: Optional[str] = None) -> str:
    """Serialize a task to its single canonical line."""
    checkbox = "[x]" if task.is_completed else "[ ]"
    parts = [f"{' ' * indent}- {checkbox} {escape_content(_normalize_text(task.content))}"]

    duration_token = DurationParser.format(task.duration)
    if duration_token:
        parts.append(duration_token)

    recurrence_token = RecurringTaskParser.format(RecurringTaskParser.rule_for(task))
    if recurrence_token:
        parts.append(recurrence_token)

    if task.priority > DEFAULT_PRIORITY and task.priority in PRIORITY_EMOJI:
        parts.append(PRIORITY_EMOJI[task.priority])

    if task.due:
        parts.append(format_date_token(task.due.date, today))

    for label in task.labels:
        parts.append(format_label(label.name))

    parts.append(f"<!-- id:{task.id}:{task_hash or calculate_task_hash(task)} -->")
    return " ".join(parts)


def format_description(description: str, indent: int = 0) -> List[str]:
    prefix = " " * (indent + DESCRIPTION_INDENT)
    return [
        f"{prefix}{_escape(DESCRIPTION_ESCAPE_RE, line)}"
        for line in _normalize_description(description).splitlines()
    ]


def format_task(task: Task, children: Optional[Dict[str, List[Task]]] = None,
                today: Optional[date] = None, indent: int = 0) -> List[str]:
    """Serialize a task with its description block and nested subtasks.

    Args:
        task: Task to render
        children: Subtasks keyed by parent id, already sorted
        today: Reference day for overdue rendering
        indent: Leading spaces for the task line

    Returns:
        Document lines
    """
    lines = [format_task_line(task, today=today, indent=indent)]
    lines.extend(format_description(task.description, indent))
    for child in (children or {}).get(task.id, []):
        lines.extend(format_task(child, children, today, indent + SUBTASK_INDENT))
    return lines


def _peel_tokens(rest: str, parsed: ParsedTask) -> str:
    """Strip recognised trailing tokens from ``rest``, filling ``parsed``."""
    seen = set()
    labels: List[str] = []
    rest = " " + rest.rstrip()

    while True:
        match = LABEL_TAIL_RE.search(rest)
        if match:
            labels.append(match.group(1) or match.group(2))
            rest = rest[:match.start()]
            continue

        match = OVERDUE_TAIL_RE.search(rest)
        if match:
            if "date" not in seen:
                parsed.due_date = parse_date_token(match.group(1))
                parsed.overdue = parsed.due_date is not None
                seen.add("date")
            rest = rest[:match.start()]
            continue

        match = DATE_TAIL_RE.search(rest)
        if match:
            if "date" not in seen:
                parsed.due_date = parse_date_token(match.group(1))
                seen.add("date")
            rest = rest[:match.start()]
            continue

        match = PRIORITY_TAIL_RE.search(rest)
        if match:
            if "priority" not in seen:
                parsed.priority = EMOJI_PRIORITY[match.group(1)]
                seen.add("priority")
            rest = rest[:match.start()]
            continue

        match = DURATION_TAIL_RE.search(rest)
        if match:
            if "duration" not in seen:
                parsed.duration = DurationParser.parse(match.group(0))
                seen.add("duration")
            rest = rest[:match.start()]
            continue

        match = RECURRENCE_TAIL_RE.search(rest)
        if match:
            if "recurrence" not in seen:
                parsed.recurrence = match.group(1).strip() or None
                seen.add("recurrence")
            rest = rest[:match.start()]
            continue

        break

    labels.reverse()
    unique_labels = []
    for label in labels:
        if label not in unique_labels:
            unique_labels.append(label)
    parsed.labels = unique_labels
    return rest.strip()


def extract_id_and_hash(line: str) -> Tuple[Optional[str], Optional[str]]:
    """Return the id and hash from the last id comment on a line."""
    matches = ID_COMMENT_RE.findall(line)
    if not matches:
        return None, None
    task_id, task_hash = matches[-1]
    return task_id, (task_hash or None)


def extract_task_id(line: str) -> Optional[str]:
    return extract_id_and_hash(line)[0]


def extract_task_hash(line: str) -> Optional[str]:
    return extract_id_and_hash(line)[1]


def remove_metadata(line: str) -> str:
    """Strip id comments from a line."""
    return ID_COMMENT_RE.sub("", line).rstrip()


def is_task_line(line: str) -> bool:
    return CHECKBOX_RE.match(line) is not None


def parse_task_line(line: str) -> Optional[ParsedTask]:
    """Decode one document line.

    Returns:
        ParsedTask, or None when the line has no checkbox prefix
    """
    match = CHECKBOX_RE.match(line.rstrip("\n"))
    if not match:
        return None

    leading, status, body = match.groups()
    task_id, task_hash = extract_id_and_hash(body)
    body = ID_COMMENT_RE.sub("", body)

    parsed = ParsedTask(
        content="",
        completed=status.lower() == "x",
        task_id=task_id,
        stored_hash=task_hash,
        indent=len(leading.expandtabs(4)),
        block=[line.rstrip("\n")],
    )
    parsed.content = unescape_content(_normalize_text(_peel_tokens(body, parsed)))
    return parsed


def parse_document(text: str, path: Optional[str] = None) -> List[ParsedTask]:
    """Parse every task in a document.

    Description lines are the non-blank, non-task lines indented deeper than
    their task line. Parent ids follow indentation.

    Args:
        text: Document contents
        path: Document path recorded on each parsed task

    Returns:
        Tasks in document order
    """
    tasks: List[ParsedTask] = []
    stack: List[ParsedTask] = []
    current: Optional[ParsedTask] = None
    description: List[str] = []

    def finish():
        if current is not None:
            current.description = "\n".join(description)

    for index, line in enumerate(text.splitlines()):
        parsed = parse_task_line(line)
        if parsed is not None:
            finish()
            description = []
            parsed.document_path = path
            parsed.line_number = index
            while stack and stack[-1].indent >= parsed.indent:
                stack.pop()
            if stack:
                parsed.parent_task_id = stack[-1].task_id
            stack.append(parsed)
            tasks.append(parsed)
            current = parsed
            continue

        stripped = line.strip()
        indent = len(line) - len(line.lstrip())
        if current is not None and stripped and indent > current.indent:
            description.append(_unescape(DESCRIPTION_UNESCAPE_RE, stripped))
            current.block.append(line)
            continue

        finish()
        description = []
        current = None
        if stripped and indent == 0:
            stack = []

    finish()
    return tasks


def find_new_tasks(text: str, path: Optional[str] = None) -> List[ParsedTask]:
    """Tasks in a document that carry no id comment yet."""
    return [task for task in parse_document(text, path) if task.task_id is None]


def update_task_completion(line: str, completed: bool) -> str:
    match = CHECKBOX_RE.match(line)
    if not match:
        return line
    leading, _, body = match.groups()
    return f"{leading}- [{'x' if completed else ' '}] {body}"


def update_task_hash(line: str, new_hash: str) -> str:
    """Replace the hash in the last id comment of a line."""
    task_id = extract_task_id(line)
    if task_id is None:
        return line
    return embed_task_id(line, task_id, new_hash)


def embed_task_id(line: str, task_id: str, task_hash: str) -> str:
    """Write (or rewrite) the id comment at the end of a line."""
    return f"{remove_metadata(line)} <!-- id:{task_id}:{task_hash} -->"


def has_task_changed(task: Task, line: str) -> bool:
    """Whether the remote task differs from the version recorded on the line."""
    return extract_task_hash(line) != calculate_task_hash(task)
