"""Tests for the safe-write filter."""

from datetime import date, datetime, timezone

from todo_sync.models import Due, Label, ParsedTask
from todo_sync.sync.safe_write import (
    OperationType,
    PreservedFields,
    SafeSyncResult,
    SafeWriteFilter,
    has_rich_formatting,
)

from conftest import make_task


def local(content, **kwargs):
    kwargs.setdefault("task_id", "1")
    return ParsedTask(content=content, **kwargs)


def plan_types(plan):
    return [op.type for op in plan.operations]


class TestSafeWriteFilter:
    """Test which local edits become remote operations."""

    def setup_method(self):
        self.filter = SafeWriteFilter()

    def test_completion(self):
        plan = self.filter.plan_operations([(local("Task", completed=True), make_task("1", "Task"))])

        assert plan_types(plan) == [OperationType.COMPLETE]
        assert plan.operations[0].payload == {}

    def test_priority_is_only_raised(self):
        raised = self.filter.plan_operations([(local("Task", priority=4), make_task("1", "Task", priority=2))])
        lowered = self.filter.plan_operations([(local("Task", priority=1), make_task("1", "Task", priority=3))])

        assert plan_types(raised) == [OperationType.UPDATE_PRIORITY]
        assert raised.operations[0].payload == {"priority": 4}
        assert plan_types(lowered) == []
        assert lowered.skipped == ["1: priority can only be raised"]

    def test_due_date_added_or_moved_earlier(self):
        added = self.filter.plan_operations([(local("Task", due_date=date(2024, 5, 3)), make_task("1", "Task"))])
        earlier = self.filter.plan_operations([
            (local("Task", due_date=date(2024, 5, 3)), make_task("1", "Task", due=date(2024, 5, 9))),
        ])
        later = self.filter.plan_operations([
            (local("Task", due_date=date(2024, 6, 3)), make_task("1", "Task", due=date(2024, 5, 9))),
        ])

        assert added.operations[0].payload == {"due_date": "2024-05-03"}
        assert plan_types(earlier) == [OperationType.UPDATE_DUE_DATE]
        assert plan_types(later) == []
        assert later.skipped

    def test_recurring_due_date_is_never_written(self):
        remote = make_task("1", "Standup", due=Due(date(2024, 5, 9), string="every day", is_recurring=True))

        plan = self.filter.plan_operations([(local("Standup", due_date=date(2024, 5, 3)), remote)])

        assert plan_types(plan) == []
        assert "recurring" in plan.skipped[0]

    def test_content_update(self):
        plan = self.filter.plan_operations([
            (local("Email the landlord about the lease"), make_task("1", "Call mom")),
        ])

        assert plan_types(plan) == [OperationType.UPDATE_CONTENT]
        assert plan.operations[0].payload == {"content": "Email the landlord about the lease"}

    def test_rich_remote_content_is_not_overwritten(self):
        remote = make_task("1", "Review [the doc](https://example.com) with @alice")

        plan = self.filter.plan_operations([(local("Review the doc"), remote)])

        assert plan_types(plan) == []
        assert plan.skipped == ["1: content change not safe to write"]

    def test_noise_only_content_change_is_ignored(self):
        plan = self.filter.plan_operations([(local("Buy milk today"), make_task("1", "Buy milk"))])

        assert plan.operations == []
        assert plan.skipped == []

    def test_completion_only(self):
        edits = [(local("Email the landlord about the lease", completed=True, priority=4),
                  make_task("1", "Call mom"))]

        plan = self.filter.plan_operations(edits, completion_only=True)

        assert plan_types(plan) == [OperationType.COMPLETE]

    def test_edited_fields_limit_operations(self):
        """A stale date on the line does not become a write."""
        edits = [(local("Task", priority=4, due_date=date(2024, 5, 3)), make_task("1", "Task"))]

        plan = self.filter.plan_operations(edits, edited_fields={"1": {"priority"}})

        assert plan_types(plan) == [OperationType.UPDATE_PRIORITY]
        assert plan.for_task("1")[0].payload == {"priority": 4}

    def test_preserved_fields_snapshot(self):
        remote = make_task(
            "1", "Task", project_id="p1", section_id="s1", parent_id="0", assignee_id="u2",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            labels=[Label(name="home", id="l1")], due=Due(date(2024, 5, 9), string="every day", is_recurring=True),
        )

        plan = self.filter.plan_operations([(local("Task", priority=4), remote)])

        preserved = plan.operations[0].preserved
        assert preserved == PreservedFields.from_task(remote)
        assert preserved.assignee_id == "u2"
        assert preserved.label_ids == ("l1",)
        assert preserved.due["is_recurring"] is True
        assert set(plan.operations[0].payload) == {"priority"}


class TestHelpers:
    """Test formatting detection and result tallies."""

    def test_has_rich_formatting(self):
        assert has_rich_formatting("**Bold** move")
        assert has_rich_formatting("Ping @bob")
        assert has_rich_formatting("Run `make`")
        assert not has_rich_formatting("Plain text, user@example.com")
        assert not has_rich_formatting(None)

    def test_result_tally(self):
        plan = SafeWriteFilter().plan_operations([
            (local("Task", completed=True, priority=4), make_task("1", "Task")),
        ])
        result = SafeSyncResult()

        for operation in plan.operations:
            result.record(operation)

        assert result.completed == 1
        assert result.priority_updated == 1
        assert result.updated == 1
