"""End-to-end sync transaction between the remote task service and the vault.

One run walks the state machine::

    IDLE -> FETCHING -> DIFFING -> BACKING_UP -> RESOLVING
         -> WRITING_LOCAL -> WRITING_REMOTE -> DONE

with FAILED reachable from any state. Per-document and per-mutation
failures are collected in the report; only an unrecoverable error (the
remote cannot be fetched, for instance) ends the run in FAILED.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..backup import BackupArchiver
from ..documents import DocumentLayout, RenderedDocument, is_managed, read_metadata
from ..models import (
    Conflict,
    DEFAULT_PRIORITY,
    Due,
    Label,
    ParsedTask,
    Project,
    ReverseSyncResult,
    Section,
    SyncDirection,
    SyncState,
    SyncStats,
    Task,
    TaskMapping,
)
from ..task_format import calculate_task_hash, format_task_line, is_task_line
from ..utils.datetime import now_utc, parse_iso_date, to_iso_string, today_local
from .change_detector import (
    TRACKED_LOCAL_FIELDS,
    ChangeDetector,
    LocalChanges,
    LocalCorpus,
    RemoteChanges,
    snapshot_of_task,
)
from .conflict_resolver import ConflictResolver, ResolutionAction
from .mapping_store import MappingStore
from .safe_write import OperationType, SafeOperation, SafePlan, SafeSyncResult, SafeWriteFilter
from .services import (
    DocumentStore,
    DocumentStoreError,
    PartialWriteFailure,
    RemoteTaskService,
    SyncError,
    SyncInProgressError,
    TransientServiceError,
)


logger = logging.getLogger(__name__)

LineKey = Tuple[str, int]


@dataclass
class RemoteSnapshot:
    """Everything fetched from the remote service in one run."""

    tasks: List[Task] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    labels: List[Label] = field(default_factory=list)

    def __post_init__(self):
        self.tasks_by_id: Dict[str, Task] = {task.id: task for task in self.tasks}

    def sections_for(self, project: Optional[Project]) -> List[Section]:
        if project is None:
            return []
        return [section for section in self.sections if section.project_id == project.id]


@dataclass
class SyncReport:
    """Summary of one run, produced whatever the terminal state."""

    direction: SyncDirection
    state: SyncState = SyncState.IDLE
    stats: SyncStats = field(default_factory=SyncStats)
    reverse: ReverseSyncResult = field(default_factory=ReverseSyncResult)
    manual_conflicts: List[Conflict] = field(default_factory=list)
    remote_changes: Optional[RemoteChanges] = None
    local_changes: Optional[LocalChanges] = None
    analysis: str = ""
    started_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    @property
    def errors(self) -> List[str]:
        return self.stats.errors + self.reverse.errors

    @property
    def succeeded(self) -> bool:
        return self.state == SyncState.DONE and not self.errors

    @property
    def partial(self) -> bool:
        """Run completed but some documents or mutations failed."""
        return self.state == SyncState.DONE and bool(self.errors)

    def summary(self) -> str:
        if self.state == SyncState.FAILED:
            outcome = "failed"
        elif self.partial:
            outcome = "partially succeeded"
        else:
            outcome = "succeeded"

        lines = [
            f"Sync {outcome} ({self.direction.value})",
            f"  Tasks: {self.stats.tasks_processed}, projects: {self.stats.projects_processed}",
            f"  Documents: {self.stats.files_created} created, {self.stats.files_updated} updated, "
            f"{self.stats.files_unchanged} unchanged",
            f"  Remote: {self.reverse.completed} completed, {self.reverse.updated} updated, "
            f"{self.reverse.created} created, {self.reverse.deleted} deleted, {self.reverse.skipped} skipped",
        ]
        if self.manual_conflicts:
            lines.append(f"  Manual conflicts: {len(self.manual_conflicts)}")
        for error in self.errors:
            lines.append(f"  Error: {error}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "state": self.state.value,
            "stats": self.stats.to_dict(),
            "reverse": self.reverse.to_dict(),
            "manualConflicts": [conflict.to_dict() for conflict in self.manual_conflicts],
            "startedAt": to_iso_string(self.started_at),
            "finishedAt": to_iso_string(self.finished_at),
        }


@dataclass
class RunContext:
    """Working state of a single run."""

    remote: RemoteSnapshot
    corpus: LocalCorpus
    # Current text of every readable document, managed or not
    texts: Dict[str, str] = field(default_factory=dict)
    unreadable: Set[str] = field(default_factory=set)
    # Task ids appearing in documents the sync does not manage
    foreign_ids: Set[str] = field(default_factory=set)
    writes_enabled: bool = True
    completion_only: bool = False
    conflicts: List[Conflict] = field(default_factory=list)
    edits: List[Tuple[ParsedTask, Task]] = field(default_factory=list)
    safe_plan: SafePlan = field(default_factory=SafePlan)
    # Lines kept verbatim when documents are regenerated, by task id
    preserved: Dict[str, ParsedTask] = field(default_factory=dict)
    # Lines without a remote task, appended to their document
    additions: Dict[str, List[ParsedTask]] = field(default_factory=dict)
    recreate: List[ParsedTask] = field(default_factory=list)
    deletions: List[Task] = field(default_factory=list)
    relocations: Dict[LineKey, LineKey] = field(default_factory=dict)
    patches: Dict[str, List[Tuple[int, Task]]] = field(default_factory=dict)
    written: Set[str] = field(default_factory=set)

    @property
    def removing(self) -> Set[str]:
        """Tasks about to be deleted remotely, left out of the documents."""
        if not self.writes_enabled or self.completion_only:
            return set()
        return {task.id for task in self.deletions}

    def preserve(self, parsed: ParsedTask) -> None:
        if parsed.task_id is not None:
            self.preserved[parsed.task_id] = parsed

    def add_line(self, parsed: ParsedTask) -> None:
        self.additions.setdefault(parsed.document_path, []).append(parsed)


class SyncOrchestrator:
    """Runs sync transactions, one at a time."""

    def __init__(self, remote: RemoteTaskService, documents: DocumentStore,
                 mapping_store: MappingStore,
                 archiver: Optional[BackupArchiver] = None,
                 layout: Optional[DocumentLayout] = None,
                 detector: Optional[ChangeDetector] = None,
                 resolver: Optional[ConflictResolver] = None,
                 safe_filter: Optional[SafeWriteFilter] = None,
                 fetch_timeout: float = 10.0,
                 auto_sync_interval: int = 5,
                 enable_reverse_sync: bool = True,
                 clock: Callable[[], date] = today_local):
        """Initialize the orchestrator.

        Args:
            remote: Remote task service
            documents: Local document store
            mapping_store: Loaded mapping store
            archiver: Backup archiver; without one, remote writes are
                limited to completions
            layout: Document layout
            detector: Change detector sharing ``mapping_store``
            resolver: Conflict resolver
            safe_filter: Safe-write filter
            fetch_timeout: Deadline in seconds for the remote fetch
            auto_sync_interval: Minutes between automatic runs
            enable_reverse_sync: Whether local edits are pushed remotely
            clock: Returns the reference day for overdue rendering
        """
        self.remote = remote
        self.documents = documents
        self.mapping_store = mapping_store
        self.archiver = archiver
        self.layout = layout or DocumentLayout()
        self.detector = detector or ChangeDetector(mapping_store)
        self.resolver = resolver or ConflictResolver()
        self.safe_filter = safe_filter or SafeWriteFilter(self.resolver.content_threshold)
        self.fetch_timeout = fetch_timeout
        self.auto_sync_interval = auto_sync_interval
        self.enable_reverse_sync = enable_reverse_sync
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.state = SyncState.IDLE
        self.last_sync_time: Optional[datetime] = None
        self.last_report: Optional[SyncReport] = None
        self._in_flight = False

        self._resolution_handlers: Dict[ResolutionAction, Callable[[RunContext, Conflict], None]] = {
            ResolutionAction.PUSH_LOCAL: self._queue_edit,
            ResolutionAction.KEEP_REMOTE: self._queue_edit,
            ResolutionAction.RECREATE_REMOTE: self._queue_recreate,
            ResolutionAction.DELETE_REMOTE: self._queue_deletion,
            ResolutionAction.MANUAL: self._queue_manual,
        }
        self._operation_handlers = {
            OperationType.COMPLETE: self._apply_complete,
            OperationType.UPDATE_CONTENT: self._apply_update,
            OperationType.UPDATE_PRIORITY: self._apply_update,
            OperationType.UPDATE_DUE_DATE: self._apply_update,
        }

    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    def should_sync(self) -> bool:
        """Whether the automatic sync interval has elapsed."""
        if self._in_flight:
            return False
        if self.last_sync_time is None:
            return True
        return now_utc() - self.last_sync_time >= timedelta(minutes=self.auto_sync_interval)

    def _transition(self, report: SyncReport, state: SyncState) -> None:
        self.logger.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state
        report.state = state

    async def run(self, direction: SyncDirection = SyncDirection.BIDIRECTIONAL) -> SyncReport:
        """Run one sync transaction.

        Args:
            direction: Which way changes flow

        Returns:
            SyncReport, also when the run failed

        Raises:
            SyncInProgressError: If a run is already active
        """
        if self._in_flight:
            raise SyncInProgressError("A sync is already running")
        self._in_flight = True

        report = SyncReport(direction=direction)
        self.state = SyncState.IDLE
        self.logger.info(f"Starting {direction.value} sync")
        try:
            await self._execute(report)
            self._transition(report, SyncState.DONE)
            self.last_sync_time = now_utc()
            report.stats.last_sync_time = self.last_sync_time
            self.logger.info(
                f"Sync finished: {report.stats.document_writes} documents written, "
                f"{report.reverse.remote_writes} remote writes, {len(report.errors)} errors"
            )
        except TransientServiceError as e:
            await self._fail(report, f"Transient service error: {e}")
        except SyncError as e:
            await self._fail(report, f"Sync failed: {e}")
        except Exception as e:
            self.logger.exception("Unexpected error during sync")
            await self._fail(report, f"Unexpected error: {e}")
        finally:
            report.finished_at = now_utc()
            self.last_report = report
            self._in_flight = False

        return report

    async def _fail(self, report: SyncReport, message: str) -> None:
        failed_in = self.state
        self.logger.error(f"{message} (during {failed_in.value})")
        report.stats.add_error(message)
        self._transition(report, SyncState.FAILED)

        # Mappings committed alongside completed writes must not be lost.
        if failed_in in (SyncState.WRITING_LOCAL, SyncState.WRITING_REMOTE):
            await self._save_mappings(report)

    async def _execute(self, report: SyncReport) -> None:
        direction = report.direction

        self._transition(report, SyncState.FETCHING)
        ctx = await self._fetch(report)
        ctx.writes_enabled = direction != SyncDirection.PULL_ONLY and self.enable_reverse_sync

        self._transition(report, SyncState.DIFFING)
        self._diff(ctx, report)

        self._transition(report, SyncState.BACKING_UP)
        await self._backup(ctx, report)

        self._transition(report, SyncState.RESOLVING)
        self._resolve(ctx, report)

        self._transition(report, SyncState.WRITING_LOCAL)
        if direction != SyncDirection.PUSH_ONLY:
            await self._write_local(ctx, report)

        self._transition(report, SyncState.WRITING_REMOTE)
        if ctx.writes_enabled:
            await self._write_remote(ctx, report)
        await self._flush_patches(ctx, report)

        await self._cleanup_orphans(report)
        await self._save_mappings(report)

    # FETCHING

    async def _fetch(self, report: SyncReport) -> RunContext:
        try:
            snapshot = await asyncio.wait_for(self._fetch_remote(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise TransientServiceError(f"Remote fetch exceeded {self.fetch_timeout}s deadline") from e

        report.stats.tasks_processed = len(snapshot.tasks)
        report.stats.projects_processed = len(snapshot.projects)
        self.logger.info(f"Fetched {len(snapshot.tasks)} tasks in {len(snapshot.projects)} projects")

        texts, unreadable = await self._read_documents(report)
        managed = {path: text for path, text in texts.items() if is_managed(text)}
        ctx = RunContext(
            remote=snapshot,
            corpus=LocalCorpus.from_documents(managed),
            texts=texts,
            unreadable=unreadable,
        )
        for path, text in texts.items():
            if path not in managed:
                ctx.foreign_ids.update(LocalCorpus.from_documents({path: text}).by_id())
        return ctx

    async def _fetch_remote(self) -> RemoteSnapshot:
        if not await self.remote.is_ready():
            raise TransientServiceError("Remote task service is not ready")

        # Labels first so tasks can reference label ids.
        labels = await self.remote.fetch_labels()
        tasks, projects, sections = await asyncio.gather(
            self.remote.fetch_all(),
            self.remote.fetch_projects(),
            self.remote.fetch_sections(),
        )
        return RemoteSnapshot(tasks=tasks, projects=projects, sections=sections, labels=labels)

    async def _read_documents(self, report: SyncReport) -> Tuple[Dict[str, str], Set[str]]:
        texts: Dict[str, str] = {}
        unreadable: Set[str] = set()
        for path in await self.documents.list():
            try:
                texts[path] = await self.documents.read(path)
            except DocumentStoreError as e:
                unreadable.add(path)
                report.stats.add_error(str(PartialWriteFailure(path, f"unreadable: {e}")))
                self.logger.error(f"Failed to read {path}: {e}")
        return texts, unreadable

    # DIFFING

    def _diff(self, ctx: RunContext, report: SyncReport) -> None:
        tasks = ctx.remote.tasks
        remote_by_id = ctx.remote.tasks_by_id

        local_changes = self.detector.identify_local_changes(tasks, ctx.corpus)
        remote_changes = self.detector.identify_changed_tasks(tasks, ctx.corpus)
        report.local_changes = local_changes
        report.remote_changes = remote_changes
        report.stats.incremental = self.detector.should_use_incremental_sync(remote_changes)
        report.stats.efficiency = self.detector.calculate_efficiency(remote_changes)
        report.analysis = self.detector.generate_sync_report(remote_changes)
        self.logger.info(report.analysis)

        changed_ids = {task.id for task in remote_changes.changed}
        for parsed, remote in local_changes.completed + local_changes.modified:
            mapping = self.mapping_store.get_mapping(remote.id)
            edited = local_changes.edited_fields.get(remote.id, set())
            conflict = self.resolver.detect_conflict(
                parsed, remote,
                edited_fields=edited,
                remote_changed=remote.id in changed_ids,
                baseline_content=mapping.snapshot.get("content") if mapping and mapping.snapshot else None,
            )
            if conflict is not None:
                ctx.conflicts.append(conflict)
            else:
                self._keep_unwritten_edit(ctx, report, parsed, remote, edited)

        local_by_id = ctx.corpus.by_id()
        for task_id in remote_changes.deleted:
            parsed = local_by_id[task_id]
            # Untouched or completed lines simply follow the remote deletion.
            if not parsed.completed and self._edited_since_sync(parsed):
                ctx.conflicts.append(self.resolver.detect_conflict(parsed, None))

        for mapping in self.mapping_store.get_all_mappings():
            remote = remote_by_id.get(mapping.task_id)
            if remote is None or mapping.task_id in local_by_id or mapping.task_id in ctx.foreign_ids:
                continue
            # A missing or unreadable document orphans its mappings; it is not a deletion.
            if mapping.document_path not in ctx.corpus.documents:
                continue
            ctx.conflicts.append(self.resolver.detect_local_deletion(remote))

        for parsed in local_changes.newly_added:
            ctx.add_line(parsed)

        report.reverse.conflicts = len(ctx.conflicts)

    def _keep_unwritten_edit(self, ctx: RunContext, report: SyncReport, parsed: ParsedTask,
                             remote: Task, edited: Set[str]) -> None:
        """Keep a local edit that raised no conflict instead of rendering over it."""
        local_view = parsed.snapshot()
        remote_view = snapshot_of_task(remote)
        unwritten = sorted(
            name for name in edited - {"completed"}
            if local_view.get(name) != remote_view.get(name)
        )
        if not unwritten:
            return
        ctx.preserve(parsed)
        report.reverse.skipped += 1
        self.logger.warning(
            f"Local edit to task {remote.id} ({', '.join(unwritten)}) is not written remotely; line kept as is"
        )

    def _edited_since_sync(self, parsed: ParsedTask) -> bool:
        mapping = self.mapping_store.get_mapping(parsed.task_id)
        if mapping is None or not mapping.snapshot:
            return False
        current = parsed.snapshot()
        return any(
            current.get(name) != mapping.snapshot.get(name)
            for name in TRACKED_LOCAL_FIELDS if name != "completed"
        )

    # BACKING_UP

    async def _backup(self, ctx: RunContext, report: SyncReport) -> None:
        if not ctx.writes_enabled:
            return
        if self.archiver is None:
            ctx.completion_only = True
            self.logger.warning("No backup archiver configured, remote writes limited to completions")
            return

        snapshot = ctx.remote
        result = await self.archiver.create_pre_sync_backup(
            tasks=snapshot.tasks,
            projects=snapshot.projects,
            sections=snapshot.sections,
            labels=snapshot.labels,
        )
        report.reverse.backup_created = result.success
        report.reverse.backup_file = result.backup_file
        if not result.success:
            ctx.completion_only = True
            report.reverse.add_error(f"Backup failed, remote writes limited to completions: {result.error}")
            self.logger.warning(f"Backup failed ({result.error}), remote writes limited to completions")

    # RESOLVING

    def _resolve(self, ctx: RunContext, report: SyncReport) -> None:
        resolution = self.resolver.resolve_conflicts(ctx.conflicts)
        report.manual_conflicts = list(resolution.manual)
        report.reverse.errors.extend(resolution.errors)

        for conflict in resolution.manual:
            self._queue_manual(ctx, conflict)
        for item in resolution.resolutions:
            self._resolution_handlers[item.action](ctx, item.conflict)

        local_changes = report.local_changes
        ctx.safe_plan = self.safe_filter.plan_operations(
            ctx.edits,
            completion_only=ctx.completion_only,
            edited_fields=local_changes.edited_fields if local_changes else None,
        )
        report.reverse.skipped += len(ctx.safe_plan.skipped)

        planned = {operation.task_id for operation in ctx.safe_plan.operations}
        for parsed, remote in ctx.edits:
            # Edits that cannot be written this run stay in the document for the next one.
            if remote.id in planned or ctx.completion_only or not ctx.writes_enabled:
                ctx.preserve(parsed)

        if ctx.completion_only:
            # Recreated lines are among the additions.
            deferred = len(ctx.deletions) + sum(len(lines) for lines in ctx.additions.values())
            if deferred:
                report.reverse.skipped += deferred
                self.logger.warning(f"Deferred {deferred} creations and deletions until a backup succeeds")

    def _queue_edit(self, ctx: RunContext, conflict: Conflict) -> None:
        ctx.edits.append((conflict.local, conflict.remote))

    def _queue_recreate(self, ctx: RunContext, conflict: Conflict) -> None:
        ctx.recreate.append(conflict.local)
        ctx.add_line(conflict.local)

    def _queue_deletion(self, ctx: RunContext, conflict: Conflict) -> None:
        ctx.deletions.append(conflict.remote)

    def _queue_manual(self, ctx: RunContext, conflict: Conflict) -> None:
        if conflict.local is not None:
            ctx.preserve(conflict.local)

    # WRITING_LOCAL

    async def _write_local(self, ctx: RunContext, report: SyncReport) -> None:
        removing = ctx.removing
        render_tasks = [task for task in ctx.remote.tasks if task.id not in removing]
        assigned = self.layout.assign_documents(render_tasks, ctx.remote.projects)
        affected = self._affected_documents(ctx, report, assigned) if report.stats.incremental else None
        today = self.clock()

        targets = list(assigned)
        targets.extend(path for path in sorted(ctx.corpus.documents) if path not in assigned)

        for path in targets:
            existing = ctx.texts.get(path)
            if path in ctx.unreadable:
                continue
            if existing is not None and path not in ctx.corpus.documents:
                message = str(PartialWriteFailure(path, "exists and is not managed by the sync, left untouched"))
                report.stats.add_error(message)
                self.logger.warning(message)
                continue
            if affected is not None and existing is not None and path not in affected:
                report.stats.files_unchanged += 1
                continue

            project, doc_tasks = assigned.get(path, (None, []))
            title = read_metadata(existing).get("title") if existing and project is None else None
            rendered = self.layout.render(
                path, project, doc_tasks,
                sections=ctx.remote.sections_for(project),
                preserved=ctx.preserved,
                additions=ctx.additions.get(path, []),
                today=today,
                title=title,
            )

            if rendered.text == existing:
                report.stats.files_unchanged += 1
            else:
                try:
                    await self._write_document(path, rendered.text)
                except DocumentStoreError as e:
                    message = str(PartialWriteFailure(path, str(e)))
                    report.stats.add_error(message)
                    self.logger.error(f"Failed to write {path}: {e}")
                    continue
                if existing is None:
                    report.stats.files_created += 1
                else:
                    report.stats.files_updated += 1
                ctx.texts[path] = rendered.text
                ctx.written.add(path)

            self._commit_document(ctx, rendered)

    async def _write_document(self, path: str, text: str) -> None:
        if "/" in path:
            await self.documents.create_dir(path.rsplit("/", 1)[0])
        await self.documents.write(path, text)

    def _affected_documents(self, ctx: RunContext, report: SyncReport,
                            assigned: Dict[str, Tuple[Optional[Project], List[Task]]]) -> Set[str]:
        """Documents an incremental pass has to re-render."""
        affected_ids = set(report.remote_changes.affected_ids) if report.remote_changes else set()
        if report.local_changes:
            affected_ids.update(report.local_changes.edited_fields)
        affected_ids.update(ctx.preserved)
        affected_ids.update(task.id for task in ctx.deletions)

        paths = {path for path, lines in ctx.additions.items() if lines}
        for path, (_, doc_tasks) in assigned.items():
            if any(task.id in affected_ids for task in doc_tasks):
                paths.add(path)
        for path, parsed_tasks in ctx.corpus.tasks.items():
            if any(parsed.task_id in affected_ids for parsed in parsed_tasks):
                paths.add(path)
        return paths

    def _commit_document(self, ctx: RunContext, rendered: RenderedDocument) -> None:
        """Record where every task of a written document now lives."""
        mappings = []
        for task_id, line_number in rendered.placements.items():
            remote = ctx.remote.tasks_by_id.get(task_id)
            if remote is None:
                continue
            pending = ctx.preserved.get(task_id)
            if pending is not None:
                mappings.append(self._pending_mapping(pending, remote, rendered.path, line_number))
                ctx.relocations[(pending.document_path, pending.line_number)] = (rendered.path, line_number)
            else:
                mappings.append(TaskMapping(
                    task_id=task_id,
                    document_path=rendered.path,
                    line_number=line_number,
                    content=remote.content,
                    checksum=calculate_task_hash(remote),
                    snapshot=snapshot_of_task(remote),
                ))

        for parsed, line_number in rendered.additions:
            ctx.relocations[(parsed.document_path, parsed.line_number)] = (rendered.path, line_number)
            if parsed.task_id is not None:
                existing = self.mapping_store.get_mapping(parsed.task_id)
                if existing is not None:
                    mappings.append(replace(existing, document_path=rendered.path, line_number=line_number))

        self.mapping_store.replace_document_mappings(rendered.path, mappings)

    def _pending_mapping(self, parsed: ParsedTask, remote: Task, path: str, line_number: int) -> TaskMapping:
        """Mapping for a preserved line; its baseline stays what was last synced."""
        existing = self.mapping_store.get_mapping(remote.id)
        if existing is not None:
            return replace(existing, document_path=path, line_number=line_number)

        if parsed.stored_hash == calculate_task_hash(remote):
            snapshot = snapshot_of_task(remote)
        else:
            snapshot = parsed.snapshot()
            snapshot["completed"] = remote.is_completed
        return TaskMapping(
            task_id=remote.id,
            document_path=path,
            line_number=line_number,
            content=remote.content,
            checksum=parsed.stored_hash,
            snapshot=snapshot,
        )

    # WRITING_REMOTE

    async def _write_remote(self, ctx: RunContext, report: SyncReport) -> None:
        if not ctx.completion_only:
            await self._apply_deletions(ctx, report)

        await self._apply_operations(ctx, report)

        if not ctx.completion_only:
            await self._create_tasks(ctx, report)

    async def _apply_deletions(self, ctx: RunContext, report: SyncReport) -> None:
        for task in ctx.deletions:
            try:
                await self.remote.delete(task.id)
            except SyncError as e:
                self._record_remote_failure(report, task.id, "delete", e)
                continue
            report.reverse.deleted += 1
            self.mapping_store.remove_mapping(task.id)
            self.logger.info(f"Deleted remote task {task.id} removed from its document")

    async def _apply_operations(self, ctx: RunContext, report: SyncReport) -> None:
        lines = {remote.id: parsed for parsed, remote in ctx.edits}
        grouped: Dict[str, List[SafeOperation]] = {}
        for operation in ctx.safe_plan.operations:
            grouped.setdefault(operation.task_id, []).append(operation)

        result = SafeSyncResult()
        for task_id, operations in grouped.items():
            current = ctx.remote.tasks_by_id[task_id]
            failed = False
            for operation in operations:
                try:
                    await self._operation_handlers[operation.type](operation)
                except SyncError as e:
                    self._record_remote_failure(report, task_id, operation.type.value, e)
                    failed = True
                    break
                current = self._apply_operation(current, operation)
                result.record(operation)

            # A partially applied edit stays pending and is retried next run.
            if not failed:
                self._queue_patch(ctx, lines[task_id], current)

        report.reverse.completed += result.completed
        report.reverse.updated += result.updated

    async def _apply_complete(self, operation: SafeOperation) -> None:
        await self.remote.close(operation.task_id)

    async def _apply_update(self, operation: SafeOperation) -> None:
        await self.remote.update(operation.task_id, operation.payload)

    @staticmethod
    def _apply_operation(task: Task, operation: SafeOperation) -> Task:
        """The remote task as it is after ``operation`` succeeded."""
        if operation.type == OperationType.COMPLETE:
            return replace(task, is_completed=True)
        if operation.type == OperationType.UPDATE_CONTENT:
            return replace(task, content=operation.payload["content"])
        if operation.type == OperationType.UPDATE_PRIORITY:
            return replace(task, priority=operation.payload["priority"])
        new_date = parse_iso_date(operation.payload["due_date"])
        due = replace(task.due, date=new_date, datetime=None) if task.due else Due(date=new_date)
        return replace(task, due=due)

    async def _create_tasks(self, ctx: RunContext, report: SyncReport) -> None:
        """Create new local lines and recreate remotely deleted ones, in document order."""
        created: Dict[LineKey, str] = {}
        lines = sorted(
            (parsed for lines in ctx.additions.values() for parsed in lines),
            key=lambda parsed: (parsed.document_path, parsed.line_number),
        )
        for parsed in lines:
            if parsed.task_id is None and parsed.completed:
                self.logger.debug(f"Not creating already completed task '{parsed.content}'")
                continue

            options = self._create_options(ctx, parsed, created)
            try:
                task = await self.remote.create(parsed.content, options)
            except SyncError as e:
                self._record_remote_failure(report, parsed.task_id or parsed.content[:50], "create", e)
                continue

            report.reverse.created += 1
            created[(parsed.document_path, parsed.line_number)] = task.id
            if parsed.task_id is not None:
                self.mapping_store.remove_mapping(parsed.task_id)
                self.logger.info(f"Recreated task {parsed.task_id} as {task.id}")
            else:
                self.logger.info(f"Created remote task {task.id} from '{parsed.content}'")
            self._queue_patch(ctx, parsed, task)

    def _create_options(self, ctx: RunContext, parsed: ParsedTask,
                        created: Dict[LineKey, str]) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "description": parsed.description or None,
            "labels": list(parsed.labels),
            "duration": parsed.duration,
        }
        if parsed.priority > DEFAULT_PRIORITY:
            options["priority"] = parsed.priority
        if parsed.recurrence:
            options["due_string"] = parsed.recurrence
        elif parsed.due_date is not None:
            options["due_date"] = parsed.due_date.isoformat()

        parent_id = self._parent_id(ctx, parsed, created)
        if parent_id is not None:
            options["parent_id"] = parent_id
        else:
            project_id = read_metadata(ctx.texts.get(parsed.document_path, "")).get("project_id")
            if project_id is not None:
                options["project_id"] = str(project_id)
        return options

    @staticmethod
    def _parent_id(ctx: RunContext, parsed: ParsedTask, created: Dict[LineKey, str]) -> Optional[str]:
        """Remote id of the nearest less-indented task line above ``parsed``."""
        if parsed.indent == 0:
            return None
        siblings = ctx.corpus.tasks.get(parsed.document_path, [])
        for candidate in reversed(siblings):
            if candidate.line_number >= parsed.line_number or candidate.indent >= parsed.indent:
                continue
            key = (candidate.document_path, candidate.line_number)
            if key in created:
                return created[key]
            if candidate.task_id in ctx.remote.tasks_by_id:
                return candidate.task_id
            return None
        return None

    def _queue_patch(self, ctx: RunContext, parsed: ParsedTask, task: Task) -> None:
        key = (parsed.document_path, parsed.line_number)
        path, line_number = ctx.relocations.get(key, key)
        ctx.patches.setdefault(path, []).append((line_number, task))

    def _record_remote_failure(self, report: SyncReport, target: str, action: str, error: Exception) -> None:
        failure = PartialWriteFailure(f"task {target}", f"{action} failed: {error}")
        report.reverse.add_error(str(failure))
        self.logger.error(str(failure))

    async def _flush_patches(self, ctx: RunContext, report: SyncReport) -> None:
        """Re-render lines whose remote write succeeded and commit their mappings."""
        today = self.clock()
        for path, patches in ctx.patches.items():
            text = ctx.texts.get(path)
            if text is None:
                continue
            lines = text.splitlines()
            committed = []
            for line_number, task in patches:
                if line_number >= len(lines) or not is_task_line(lines[line_number]):
                    report.reverse.add_error(str(PartialWriteFailure(
                        f"{path}:{line_number}", f"line for task {task.id} moved, not updated"
                    )))
                    continue
                current = lines[line_number]
                indent = len(current) - len(current.lstrip())
                task_hash = calculate_task_hash(task)
                lines[line_number] = format_task_line(task, today=today, indent=indent, task_hash=task_hash)
                committed.append(TaskMapping(
                    task_id=task.id,
                    document_path=path,
                    line_number=line_number,
                    content=task.content,
                    checksum=task_hash,
                    snapshot=snapshot_of_task(task),
                ))

            new_text = "\n".join(lines) + ("\n" if text.endswith("\n") else "")
            if new_text != text:
                try:
                    await self.documents.write(path, new_text)
                except DocumentStoreError as e:
                    message = str(PartialWriteFailure(path, str(e)))
                    report.stats.add_error(message)
                    self.logger.error(f"Failed to update {path} after remote writes: {e}")
                    continue

                ctx.texts[path] = new_text
                if path not in ctx.written:
                    ctx.written.add(path)
                    report.stats.files_updated += 1
            for mapping in committed:
                self.mapping_store.add_mapping(mapping)

    # Bookkeeping

    async def _cleanup_orphans(self, report: SyncReport) -> None:
        try:
            await self.mapping_store.cleanup_orphaned(self.documents)
        except SyncError as e:
            report.stats.add_error(f"Orphan cleanup failed: {e}")

    async def _save_mappings(self, report: SyncReport) -> None:
        try:
            await self.mapping_store.save()
        except OSError as e:
            report.stats.add_error(f"Failed to save task mappings: {e}")
            self.logger.error(f"Failed to save task mappings: {e}")
