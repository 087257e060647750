from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from vikunja_gcal.models import Project, Task
from vikunja_gcal.reconciler import build_event_payload, resolve_project


PRODID = "-//vikunja-gcal//Task Feed//EN"
UID_DOMAIN = "vikunja-gcal"


def normalize_project_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def find_project(projects: Iterable[Project], name: str) -> Project | None:
    wanted = normalize_project_name(name)
    for project in projects:
        if normalize_project_name(project.title) == wanted:
            return project
    return None


def feed_tasks(tasks: Iterable[Task], project: Project | None = None) -> list[Task]:
    """Uncompleted, dated tasks, optionally restricted to one project."""
    selected = [task for task in tasks if not task.done and task.due_date is not None]
    if project is not None:
        selected = [task for task in selected if task.project_id == project.project_id]
    return sorted(selected, key=lambda task: (task.due_date, task.task_id))


def build_calendar(
    tasks: Iterable[Task],
    *,
    projects: dict[int, Project],
    frontend_url: str,
    calendar_title: str,
    now: datetime | None = None,
) -> bytes:
    stamp = now or datetime.now(timezone.utc)
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("METHOD", "PUBLISH")
    calendar_obj.add("X-WR-CALNAME", calendar_title)
    for task in tasks:
        payload = build_event_payload(task, frontend_url)
        vevent = ICEvent()
        vevent.add("UID", f"task-{task.task_id}@{UID_DOMAIN}")
        vevent.add("DTSTAMP", stamp)
        vevent.add("SUMMARY", payload.summary)
        vevent.add("DESCRIPTION", payload.description)
        vevent.add("DTSTART", payload.start)
        vevent.add("DTEND", payload.end)
        vevent.add("TRANSP", payload.transparency.upper())
        if task.updated_at is not None:
            vevent.add("LAST-MODIFIED", task.updated_at)
        project = resolve_project(task, projects)
        if project is not None:
            vevent.add("CATEGORIES", [project.title])
        calendar_obj.add_component(vevent)
    return calendar_obj.to_ical()
