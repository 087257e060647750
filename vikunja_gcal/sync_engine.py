from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from vikunja_gcal.google_calendar import CalendarSinkError, GoogleCalendarService
from vikunja_gcal.models import (
    AppConfig,
    EventPayload,
    FetchResult,
    ManagedCalendar,
    Project,
    RemoteEvent,
    SyncResult,
    Task,
)
from vikunja_gcal.rate_limit import IntervalLimiter
from vikunja_gcal.reconciler import (
    CREATE,
    MOVE,
    NOOP,
    SKIP,
    UPDATE,
    TaskDecision,
    calendar_name,
    find_calendar,
    index_events,
    plan_cleanup,
    plan_task_action,
)
from vikunja_gcal.vikunja_client import VikunjaClient


logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    def list_projects(self) -> FetchResult[Project]: ...

    def list_tasks(self) -> FetchResult[Task]: ...


class CalendarSink(Protocol):
    def list_calendars(self, name_prefix: str) -> FetchResult[ManagedCalendar]: ...

    def create_calendar(self, name: str, timezone: str = "UTC") -> ManagedCalendar: ...

    def share_calendar(self, calendar_id: str, principal: str, role: str = "owner") -> bool: ...

    def list_events(self, calendar_id: str) -> FetchResult[RemoteEvent]: ...

    def create_event(self, calendar_id: str, payload: EventPayload) -> RemoteEvent: ...

    def update_event(self, calendar_id: str, event_id: str, payload: EventPayload) -> RemoteEvent: ...

    def delete_event(self, calendar_id: str, event_id: str) -> bool: ...


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


@dataclass
class _CycleCounters:
    created: int = 0
    updated: int = 0
    moved: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    failed_fetches: list[str] = field(default_factory=list)
    unlisted_calendar_ids: set[str] = field(default_factory=set)

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "moved": self.moved,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class SyncEngine:
    """One-way reconciliation of Vikunja tasks into per-project Google calendars.

    Phases run strictly in order: provisioning, sharing, indexing, diff/apply,
    cleanup. Remote calls are sequential; pacing lives in the sink. Only one
    cycle runs at a time per engine; a concurrent ``run_once`` returns a
    ``busy`` result instead of waiting.
    """

    def __init__(self, config: AppConfig, task_source: TaskSource, calendar_sink: CalendarSink) -> None:
        self.config = config
        self.task_source = task_source
        self.calendar_sink = calendar_sink
        self._run_lock = threading.Lock()
        self.last_result: SyncResult | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "SyncEngine":
        limiter = IntervalLimiter.from_milliseconds(config.sync.pacing_ms)
        return cls(
            config,
            VikunjaClient(config.vikunja),
            GoogleCalendarService.from_config(config.google, limiter=limiter),
        )

    @property
    def prefix(self) -> str:
        return self.config.sync.calendar_prefix

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sync already in progress; %s trigger rejected", trigger)
            return SyncResult(
                status="busy",
                message="A sync cycle is already running.",
                duration_ms=0,
                trigger=trigger,
            )
        counters = _CycleCounters()
        try:
            result = self._run_cycle(trigger, started_at, counters)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync cycle failed: %s", error_message)
            result = SyncResult(
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                trigger=trigger,
                **counters.as_kwargs(),
            )
        finally:
            self._run_lock.release()
        self.last_result = result
        return result

    def _run_cycle(self, trigger: str, started_at: datetime, counters: _CycleCounters) -> SyncResult:
        logger.info("--- Starting sync cycle (trigger=%s) ---", trigger)

        projects_result = self.task_source.list_projects()
        tasks_result = self.task_source.list_tasks()
        calendars_result = self.calendar_sink.list_calendars(self.prefix)
        for label, fetched in (
            ("projects", projects_result),
            ("tasks", tasks_result),
            ("calendars", calendars_result),
        ):
            if not fetched.ok:
                counters.failed_fetches.append(label)

        projects = projects_result.items
        tasks = tasks_result.items
        calendars = list(calendars_result.items)
        uncompleted = [task for task in tasks if not task.done]

        logger.info("Found %d projects and %d total tasks with due dates.", len(projects), len(tasks))
        logger.info("Syncing %d uncompleted tasks.", len(uncompleted))
        logger.info("Found %d managed calendars in Google.", len(calendars))

        if calendars_result.ok:
            self._ensure_calendars(projects, calendars)
        else:
            # Without the listing every project calendar would look missing.
            logger.warning("Skipping calendar provisioning because listing Google calendars failed.")
        self._ensure_sharing(calendars)

        displaced: list[RemoteEvent] = []
        event_index = index_events(self._fetch_events(calendars, counters), displaced)
        logger.info("Indexed %d synced events across %d calendars.", len(event_index), len(calendars))

        project_map = {project.project_id: project for project in projects}
        for task in uncompleted:
            decision = plan_task_action(
                task=task,
                projects=project_map,
                calendars=calendars,
                event_index=event_index,
                prefix=self.prefix,
                frontend_url=self.config.vikunja.frontend_url,
            )
            self._apply(decision, counters)

        cleanup_skipped = bool(counters.failed_fetches)
        if cleanup_skipped:
            logger.warning(
                "Skipping cleanup because these fetches failed: %s",
                ", ".join(counters.failed_fetches),
            )
        else:
            self._cleanup(event_index, displaced, {task.key for task in uncompleted}, counters)

        logger.info("--- Sync cycle finished ---")
        status = "partial" if cleanup_skipped or counters.failed else "success"
        message = (
            f"created={counters.created} updated={counters.updated} moved={counters.moved} "
            f"deleted={counters.deleted} skipped={counters.skipped} failed={counters.failed}"
        )
        logger.info("Sync result: %s (%s)", status, message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=_elapsed_ms(started_at),
            trigger=trigger,
            cleanup_skipped=cleanup_skipped,
            **counters.as_kwargs(),
        )

    def _ensure_calendars(self, projects: list[Project], calendars: list[ManagedCalendar]) -> None:
        """Create any missing project calendar and append it to ``calendars``."""
        for project in projects:
            expected_name = calendar_name(self.prefix, project.title)
            if find_calendar(calendars, expected_name) is not None:
                continue
            logger.info('Creating new Google Calendar: "%s"', expected_name)
            try:
                created = self.calendar_sink.create_calendar(expected_name, timezone="UTC")
            except CalendarSinkError as exc:
                logger.error('Error creating calendar for project "%s": %s', project.title, exc)
                continue
            calendars.append(created)

    def _ensure_sharing(self, calendars: list[ManagedCalendar]) -> None:
        principal = self.config.google.share_with_email
        if not principal:
            return
        for calendar in calendars:
            try:
                granted = self.calendar_sink.share_calendar(
                    calendar.calendar_id,
                    principal,
                    self.config.google.share_role,
                )
            except CalendarSinkError as exc:
                logger.error('Failed to share calendar "%s": %s', calendar.name, exc)
                continue
            if granted:
                logger.info('Shared calendar "%s" with %s', calendar.name, principal)

    def _fetch_events(
        self, calendars: list[ManagedCalendar], counters: _CycleCounters
    ) -> list[tuple[str, list[RemoteEvent]]]:
        fetched: list[tuple[str, list[RemoteEvent]]] = []
        for calendar in calendars:
            result = self.calendar_sink.list_events(calendar.calendar_id)
            if not result.ok:
                counters.failed_fetches.append(f"events:{calendar.name}")
                counters.unlisted_calendar_ids.add(calendar.calendar_id)
            fetched.append((calendar.calendar_id, result.items))
        return fetched

    def _apply(self, decision: TaskDecision, counters: _CycleCounters) -> None:
        task = decision.task
        if decision.action == NOOP:
            return
        if decision.action == SKIP:
            counters.skipped += 1
            if decision.reason == "project_not_found":
                logger.info(
                    'Skipping task "%s" (ID: %s) because its project could not be determined.',
                    task.title,
                    task.task_id,
                )
            else:
                logger.info(
                    "Skipping task %s because its project calendar was not found or created.",
                    task.task_id,
                )
            return

        target = decision.target_calendar
        payload = decision.payload
        existing = decision.existing_event
        if target is None or payload is None:
            raise ValueError(f"Decision {decision.action!r} for task {task.task_id} has no target")
        if decision.action in {CREATE, MOVE} and target.calendar_id in counters.unlisted_calendar_ids:
            # The target may already hold an event we could not see.
            counters.skipped += 1
            logger.warning(
                "Skipping task %s because events of calendar \"%s\" could not be listed.",
                task.task_id,
                target.name,
            )
            return

        if decision.action == UPDATE and existing is not None:
            logger.info('Updating event for task: "%s" (ID: %s, reason=%s)', task.title, task.task_id, decision.reason)
            try:
                self.calendar_sink.update_event(existing.calendar_id, existing.event_id, payload)
            except CalendarSinkError as exc:
                counters.failed += 1
                logger.error("Failed to update event for task %s: %s", task.task_id, exc)
                return
            counters.updated += 1
            return

        if decision.action == MOVE and existing is not None:
            logger.info('Moving task "%s" (ID: %s) to calendar "%s".', task.title, task.task_id, target.name)
            try:
                self.calendar_sink.delete_event(existing.calendar_id, existing.event_id)
            except CalendarSinkError as exc:
                # Creating now would leave the task in two calendars; retry next cycle.
                counters.failed += 1
                logger.error("Failed to delete old event during move for task %s: %s", task.task_id, exc)
                return

        if decision.action in {CREATE, MOVE}:
            if decision.action == CREATE:
                logger.info('Creating new event for task: "%s" (ID: %s)', task.title, task.task_id)
            try:
                self.calendar_sink.create_event(target.calendar_id, payload)
            except CalendarSinkError as exc:
                counters.failed += 1
                logger.error("Failed to create event for task %s: %s", task.task_id, exc)
                return
            if decision.action == MOVE:
                counters.moved += 1
            else:
                counters.created += 1

    def _cleanup(
        self,
        event_index: dict[str, RemoteEvent],
        displaced: list[RemoteEvent],
        keep_task_ids: set[str],
        counters: _CycleCounters,
    ) -> None:
        for event in displaced:
            logger.info("Deleting duplicate event %s for task ID: %s", event.event_id, event.task_id)
            self._delete(event, counters)
        for event in plan_cleanup(event_index, keep_task_ids):
            logger.info("Deleting event for stale or completed task ID: %s", event.task_id)
            self._delete(event, counters)

    def _delete(self, event: RemoteEvent, counters: _CycleCounters) -> None:
        try:
            self.calendar_sink.delete_event(event.calendar_id, event.event_id)
        except CalendarSinkError as exc:
            counters.failed += 1
            logger.error("Failed to delete event %s: %s", event.event_id, exc)
            return
        counters.deleted += 1
