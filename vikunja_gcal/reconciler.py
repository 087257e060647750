from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Iterable

from vikunja_gcal.models import (
    OPAQUE,
    EventPayload,
    ManagedCalendar,
    Project,
    RemoteEvent,
    Task,
)


CREATE = "create"
UPDATE = "update"
MOVE = "move"
NOOP = "noop"
SKIP = "skip"


@dataclass
class TaskDecision:
    action: str
    task: Task
    reason: str
    target_calendar: ManagedCalendar | None = None
    existing_event: RemoteEvent | None = None
    payload: EventPayload | None = None


def calendar_name(prefix: str, project_title: str) -> str:
    return f"{prefix} {project_title}"


def find_calendar(calendars: Iterable[ManagedCalendar], name: str) -> ManagedCalendar | None:
    for calendar in calendars:
        if calendar.name == name:
            return calendar
    return None


def task_link(frontend_url: str, task: Task) -> str:
    return f"{frontend_url.rstrip('/')}/projects/{task.project_id}/tasks/{task.task_id}"


def build_event_payload(task: Task, frontend_url: str) -> EventPayload:
    if task.due_date is None:
        raise ValueError(f"Task {task.task_id} has no due date")
    return EventPayload(
        summary=task.title,
        description=f"{task.description or ''}\n\nView in Vikunja: {task_link(frontend_url, task)}",
        start=task.due_date,
        end=task.due_date + timedelta(days=1),
        task_id=task.key,
        transparency=OPAQUE,
    )


def index_events(
    events_by_calendar: Iterable[tuple[str, Iterable[RemoteEvent]]],
    displaced: list[RemoteEvent] | None = None,
) -> dict[str, RemoteEvent]:
    """Map task id -> event across calendars.

    The later-enumerated event wins when a task id shows up more than once.
    Losers are appended to ``displaced`` when a list is given, so the caller
    can remove the extra copies.
    """
    index: dict[str, RemoteEvent] = {}
    for calendar_id, events in events_by_calendar:
        for event in events:
            if not event.task_id:
                continue
            if event.calendar_id != calendar_id:
                event = replace(event, calendar_id=calendar_id)
            previous = index.get(event.task_id)
            if previous is not None and displaced is not None:
                displaced.append(previous)
            index[event.task_id] = event
    return index


def resolve_project(task: Task, projects: dict[int, Project]) -> Project | None:
    if task.project is not None and task.project.title:
        return task.project
    return projects.get(task.project_id)


def is_stale(task: Task, event: RemoteEvent) -> bool:
    if event.transparency != OPAQUE:
        return True
    if task.updated_at is None:
        return False
    if event.updated_at is None:
        return True
    return task.updated_at > event.updated_at


def plan_task_action(
    *,
    task: Task,
    projects: dict[int, Project],
    calendars: list[ManagedCalendar],
    event_index: dict[str, RemoteEvent],
    prefix: str,
    frontend_url: str,
) -> TaskDecision:
    existing = event_index.get(task.key)
    project = resolve_project(task, projects)
    if project is None:
        return TaskDecision(SKIP, task, "project_not_found", existing_event=existing)

    target = find_calendar(calendars, calendar_name(prefix, project.title))
    if target is None:
        return TaskDecision(SKIP, task, "calendar_not_found", existing_event=existing)

    payload = build_event_payload(task, frontend_url)
    if existing is None:
        return TaskDecision(CREATE, task, "missing_event", target, None, payload)
    if existing.calendar_id != target.calendar_id:
        return TaskDecision(MOVE, task, "wrong_calendar", target, existing, payload)
    if is_stale(task, existing):
        reason = "not_opaque" if existing.transparency != OPAQUE else "task_modified"
        return TaskDecision(UPDATE, task, reason, target, existing, payload)
    return TaskDecision(NOOP, task, "up_to_date", target, existing, payload)


def plan_cleanup(event_index: dict[str, RemoteEvent], keep_task_ids: Iterable[str]) -> list[RemoteEvent]:
    """Events whose task is no longer an uncompleted, dated task."""
    keep = set(keep_task_ids)
    return [event for task_id, event in event_index.items() if task_id not in keep]
