import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from vikunja_gcal.google_calendar import CalendarSinkError
from vikunja_gcal.models import (
    AppConfig,
    EventPayload,
    FetchResult,
    ManagedCalendar,
    Project,
    RemoteEvent,
    Task,
)
from vikunja_gcal.rate_limit import IntervalLimiter
from vikunja_gcal.sync_engine import SyncEngine
from vikunja_gcal.vikunja_client import VikunjaClient


PREFIX = "[Vikunja]"
SINK_NOW = datetime(2024, 2, 25, 12, 0, tzinfo=timezone.utc)


def _task(task_id: int = 42, **overrides: object) -> Task:
    values: dict = {
        "task_id": task_id,
        "title": "Report",
        "project_id": 7,
        "due_date": date(2024, 3, 1),
        "description": "Quarterly numbers",
        "done": False,
        "updated_at": datetime(2024, 2, 20, 10, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Task(**values)


class _FakeTaskSource:
    def __init__(self, projects: list[Project], tasks: list[Task]) -> None:
        self.projects = projects
        self.tasks = tasks
        self.projects_ok = True
        self.tasks_ok = True

    def list_projects(self) -> FetchResult[Project]:
        if not self.projects_ok:
            return FetchResult.failed("boom")
        return FetchResult(items=list(self.projects))

    def list_tasks(self) -> FetchResult[Task]:
        if not self.tasks_ok:
            return FetchResult.failed("boom")
        return FetchResult(items=[task for task in self.tasks if task.due_date is not None])


class _FakeCalendarSink:
    def __init__(self) -> None:
        self.calendars: list[ManagedCalendar] = []
        self.events: dict[str, dict[str, RemoteEvent]] = {}
        self.acl: dict[str, set[str]] = {}
        self.mutations: list[tuple] = []
        self.failing_event_calendars: set[str] = set()
        self.fail_create_calendar = False
        self.fail_list_calendars = False
        self.fail_deletes = False
        self._next_id = 0

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def add_calendar(self, name: str) -> ManagedCalendar:
        calendar = ManagedCalendar(calendar_id=self._new_id("cal"), name=name)
        self.calendars.append(calendar)
        self.events[calendar.calendar_id] = {}
        self.acl[calendar.calendar_id] = set()
        return calendar

    def add_event(self, calendar_id: str, task_id: str, **overrides: object) -> RemoteEvent:
        values: dict = {
            "event_id": self._new_id("evt"),
            "calendar_id": calendar_id,
            "task_id": task_id,
            "summary": "Report",
            "start": date(2024, 3, 1),
            "end": date(2024, 3, 2),
            "updated_at": SINK_NOW,
        }
        values.update(overrides)
        event = RemoteEvent(**values)
        self.events[calendar_id][event.event_id] = event
        return event

    def all_events(self) -> list[RemoteEvent]:
        return [event for events in self.events.values() for event in events.values()]

    def list_calendars(self, name_prefix: str) -> FetchResult[ManagedCalendar]:
        if self.fail_list_calendars:
            return FetchResult.failed("500")
        return FetchResult(items=[cal for cal in self.calendars if cal.name.startswith(name_prefix)])

    def create_calendar(self, name: str, timezone: str = "UTC") -> ManagedCalendar:
        self.mutations.append(("create_calendar", name, timezone))
        if self.fail_create_calendar:
            raise CalendarSinkError("quota exceeded", status=403)
        return self.add_calendar(name)

    def share_calendar(self, calendar_id: str, principal: str, role: str = "owner") -> bool:
        if principal in self.acl[calendar_id]:
            return False
        self.mutations.append(("share_calendar", calendar_id, principal, role))
        self.acl[calendar_id].add(principal)
        return True

    def list_events(self, calendar_id: str) -> FetchResult[RemoteEvent]:
        if calendar_id in self.failing_event_calendars:
            return FetchResult.failed("500")
        return FetchResult(items=list(self.events[calendar_id].values()))

    def _materialize(self, calendar_id: str, event_id: str, payload: EventPayload) -> RemoteEvent:
        return RemoteEvent(
            event_id=event_id,
            calendar_id=calendar_id,
            task_id=payload.task_id,
            summary=payload.summary,
            description=payload.description,
            start=payload.start,
            end=payload.end,
            updated_at=SINK_NOW,
            transparency=payload.transparency,
        )

    def create_event(self, calendar_id: str, payload: EventPayload) -> RemoteEvent:
        self.mutations.append(("create_event", calendar_id, payload.task_id))
        event = self._materialize(calendar_id, self._new_id("evt"), payload)
        self.events[calendar_id][event.event_id] = event
        return event

    def update_event(self, calendar_id: str, event_id: str, payload: EventPayload) -> RemoteEvent:
        self.mutations.append(("update_event", calendar_id, event_id))
        event = self._materialize(calendar_id, event_id, payload)
        self.events[calendar_id][event_id] = event
        return event

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        self.mutations.append(("delete_event", calendar_id, event_id))
        if self.fail_deletes:
            raise CalendarSinkError("backend error", status=500)
        return self.events[calendar_id].pop(event_id, None) is not None


def _config() -> AppConfig:
    return AppConfig.from_dict(
        {
            "vikunja": {
                "api_url": "https://vikunja.example.com/api/v1",
                "api_token": "token",
                "frontend_url": "https://vikunja.example.com",
            },
            "google": {"credentials_file": "sa.json", "share_with_email": "me@example.com"},
            "sync": {"calendar_prefix": PREFIX, "pacing_ms": 0},
        }
    )


class SyncEngineRunOnceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.source = _FakeTaskSource([Project(7, "Ops")], [_task()])
        self.sink = _FakeCalendarSink()
        self.engine = SyncEngine(_config(), self.source, self.sink)

    def _kinds(self) -> list[str]:
        return [mutation[0] for mutation in self.sink.mutations]

    def test_first_cycle_creates_calendar_shares_it_and_creates_event(self) -> None:
        result = self.engine.run_once(trigger="manual")

        self.assertEqual(result.status, "success")
        self.assertEqual(self._kinds(), ["create_calendar", "share_calendar", "create_event"])
        self.assertEqual([cal.name for cal in self.sink.calendars], ["[Vikunja] Ops"])
        self.assertEqual(self.sink.mutations[0][2], "UTC")
        events = self.sink.all_events()
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.task_id, "42")
        self.assertEqual(event.start, date(2024, 3, 1))
        self.assertEqual(event.end, date(2024, 3, 2))
        self.assertEqual(event.summary, "Report")
        self.assertEqual(
            event.description,
            "Quarterly numbers\n\nView in Vikunja: https://vikunja.example.com/projects/7/tasks/42",
        )
        self.assertEqual(result.created, 1)

    def test_second_cycle_without_changes_is_idempotent(self) -> None:
        self.engine.run_once()
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self.sink.mutations, [])
        self.assertEqual(result.mutations, 0)
        self.assertEqual(len(self.sink.all_events()), 1)

    def test_completed_task_event_is_deleted_and_not_recreated(self) -> None:
        self.engine.run_once()
        self.source.tasks = [_task(done=True)]
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self._kinds(), ["delete_event"])
        self.assertEqual(self.sink.all_events(), [])
        self.assertEqual(result.deleted, 1)

    def test_deleted_task_or_cleared_due_date_removes_event(self) -> None:
        self.engine.run_once()
        self.source.tasks = [_task(due_date=None)]

        self.engine.run_once()

        self.assertEqual(self.sink.all_events(), [])

    def test_project_change_moves_event_without_duplicates(self) -> None:
        self.source.projects = [Project(7, "Ops"), Project(8, "Home")]
        self.engine.run_once()
        ops = next(cal for cal in self.sink.calendars if cal.name == "[Vikunja] Ops")
        home = next(cal for cal in self.sink.calendars if cal.name == "[Vikunja] Home")
        self.source.tasks = [_task(project_id=8)]
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self._kinds(), ["delete_event", "create_event"])
        self.assertEqual(self.sink.events[ops.calendar_id], {})
        self.assertEqual([e.task_id for e in self.sink.events[home.calendar_id].values()], ["42"])
        self.assertEqual(result.moved, 1)

    def test_move_does_not_create_when_old_event_delete_fails(self) -> None:
        self.source.projects = [Project(7, "Ops"), Project(8, "Home")]
        self.engine.run_once()
        self.source.tasks = [_task(project_id=8)]
        self.sink.fail_deletes = True
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self._kinds(), ["delete_event"])
        self.assertEqual(result.failed, 1)
        self.assertEqual(len(self.sink.all_events()), 1)

    def test_update_only_when_task_strictly_newer(self) -> None:
        calendar = self.sink.add_calendar("[Vikunja] Ops")
        self.sink.acl[calendar.calendar_id].add("me@example.com")
        event = self.sink.add_event(calendar.calendar_id, "42", updated_at=datetime(2024, 2, 20, 10, 0, tzinfo=timezone.utc))

        self.engine.run_once()
        self.assertEqual(self.sink.mutations, [])

        self.source.tasks = [_task(updated_at=datetime(2024, 2, 20, 10, 0, 1, tzinfo=timezone.utc))]
        self.engine.run_once()
        self.assertEqual(self.sink.mutations, [("update_event", calendar.calendar_id, event.event_id)])

    def test_non_opaque_event_is_updated(self) -> None:
        calendar = self.sink.add_calendar("[Vikunja] Ops")
        self.sink.acl[calendar.calendar_id].add("me@example.com")
        self.sink.add_event(calendar.calendar_id, "42", transparency="transparent")

        result = self.engine.run_once()

        self.assertEqual(self._kinds(), ["update_event"])
        self.assertEqual(self.sink.all_events()[0].transparency, "opaque")
        self.assertEqual(result.updated, 1)

    def test_unresolvable_project_skips_task_and_keeps_existing_event(self) -> None:
        calendar = self.sink.add_calendar("[Vikunja] Ops")
        self.sink.acl[calendar.calendar_id].add("me@example.com")
        self.sink.add_event(calendar.calendar_id, "42")
        self.source.tasks = [_task(project_id=99)]

        result = self.engine.run_once()

        self.assertEqual(self.sink.mutations, [])
        self.assertEqual(len(self.sink.all_events()), 1)
        self.assertEqual(result.skipped, 1)

    def test_calendar_creation_failure_defers_tasks_without_crashing(self) -> None:
        self.sink.fail_create_calendar = True

        result = self.engine.run_once()

        self.assertEqual(result.status, "success")
        self.assertEqual(self._kinds(), ["create_calendar"])
        self.assertEqual(result.skipped, 1)
        self.assertEqual(self.sink.all_events(), [])

    def test_failed_task_fetch_skips_cleanup(self) -> None:
        self.engine.run_once()
        self.source.tasks_ok = False
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self.sink.mutations, [])
        self.assertTrue(result.cleanup_skipped)
        self.assertEqual(result.status, "partial")
        self.assertEqual(len(self.sink.all_events()), 1)

    def test_failed_event_listing_skips_cleanup(self) -> None:
        calendar = self.sink.add_calendar("[Vikunja] Ops")
        other = self.sink.add_calendar("[Vikunja] Old")
        self.sink.acl[calendar.calendar_id].add("me@example.com")
        self.sink.acl[other.calendar_id].add("me@example.com")
        self.sink.add_event(other.calendar_id, "1000")
        self.sink.failing_event_calendars.add(calendar.calendar_id)

        result = self.engine.run_once()

        self.assertTrue(result.cleanup_skipped)
        # Neither the orphan cleanup nor a blind create into the unlisted calendar.
        self.assertEqual(self.sink.mutations, [])
        self.assertEqual(result.skipped, 1)

    def test_failed_calendar_listing_creates_no_calendars_or_events(self) -> None:
        self.engine.run_once()
        self.sink.fail_list_calendars = True
        self.sink.mutations.clear()

        result = self.engine.run_once()

        self.assertEqual(self.sink.mutations, [])
        self.assertEqual(result.status, "partial")
        self.assertTrue(result.cleanup_skipped)
        self.assertEqual([cal.name for cal in self.sink.calendars], ["[Vikunja] Ops"])
        self.assertEqual(len(self.sink.all_events()), 1)

    def test_duplicate_events_for_one_task_collapse_to_one(self) -> None:
        self.source.projects = [Project(7, "Ops"), Project(8, "Home")]
        ops = self.sink.add_calendar("[Vikunja] Ops")
        home = self.sink.add_calendar("[Vikunja] Home")
        for calendar in (ops, home):
            self.sink.acl[calendar.calendar_id].add("me@example.com")
        self.sink.add_event(ops.calendar_id, "42")
        self.sink.add_event(home.calendar_id, "42")

        self.engine.run_once()

        remaining = self.sink.all_events()
        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0].calendar_id, ops.calendar_id)

    def test_orphan_calendars_are_never_deleted(self) -> None:
        self.sink.add_calendar("[Vikunja] Gone Project")

        self.engine.run_once()

        self.assertIn("[Vikunja] Gone Project", [cal.name for cal in self.sink.calendars])

    def test_sharing_is_rechecked_every_cycle(self) -> None:
        self.engine.run_once()
        calendar = self.sink.calendars[0]
        self.sink.acl[calendar.calendar_id].clear()
        self.sink.mutations.clear()

        self.engine.run_once()

        self.assertEqual(self._kinds(), ["share_calendar"])

    def test_inlined_project_is_preferred_over_project_map(self) -> None:
        self.source.projects = [Project(7, "Ops"), Project(8, "Home")]
        self.source.tasks = [_task(project=Project(8, "Home"))]

        self.engine.run_once()

        home = next(cal for cal in self.sink.calendars if cal.name == "[Vikunja] Home")
        self.assertEqual(len(self.sink.events[home.calendar_id]), 1)

    def test_per_item_failure_does_not_abort_cycle(self) -> None:
        self.source.tasks = [_task(1), _task(2)]
        original_create = self.sink.create_event

        def flaky_create(calendar_id: str, payload: EventPayload) -> RemoteEvent:
            if payload.task_id == "1":
                raise CalendarSinkError("rate limited", status=403)
            return original_create(calendar_id, payload)

        self.sink.create_event = flaky_create  # type: ignore[method-assign]

        result = self.engine.run_once()

        self.assertEqual(result.failed, 1)
        self.assertEqual(result.created, 1)
        self.assertEqual(result.status, "partial")
        self.assertEqual([event.task_id for event in self.sink.all_events()], ["2"])

    def test_unexpected_exception_is_reported_as_error(self) -> None:
        def explode(_prefix: str) -> FetchResult[ManagedCalendar]:
            raise KeyError("id")

        self.sink.list_calendars = explode  # type: ignore[method-assign]

        result = self.engine.run_once(trigger="scheduled")

        self.assertEqual(result.status, "error")
        self.assertIn("KeyError", result.message)
        self.assertIs(self.engine.last_result, result)
        self.assertFalse(self.engine.is_running())

    def test_overlapping_run_is_rejected(self) -> None:
        self.engine._run_lock.acquire()
        try:
            result = self.engine.run_once(trigger="manual")
        finally:
            self.engine._run_lock.release()

        self.assertEqual(result.status, "busy")
        self.assertEqual(self.sink.mutations, [])

    def test_events_without_task_id_are_left_alone(self) -> None:
        calendar = self.sink.add_calendar("[Vikunja] Ops")
        self.sink.acl[calendar.calendar_id].add("me@example.com")
        self.sink.add_event(calendar.calendar_id, "", summary="Dentist", updated_at=SINK_NOW - timedelta(days=3))

        self.engine.run_once()

        self.assertIn("Dentist", [event.summary for event in self.sink.all_events()])


class SyncEngineFromConfigTests(unittest.TestCase):
    def test_sink_gets_limiter_from_pacing_setting(self) -> None:
        config = _config()
        config.sync.pacing_ms = 250
        sink = _FakeCalendarSink()
        with mock.patch("vikunja_gcal.sync_engine.GoogleCalendarService.from_config", return_value=sink) as from_config:
            engine = SyncEngine.from_config(config)

        from_config.assert_called_once()
        self.assertIs(from_config.call_args.args[0], config.google)
        limiter = from_config.call_args.kwargs["limiter"]
        self.assertIsInstance(limiter, IntervalLimiter)
        self.assertAlmostEqual(limiter.interval_seconds, 0.25)
        self.assertIs(engine.calendar_sink, sink)
        self.assertIsInstance(engine.task_source, VikunjaClient)


if __name__ == "__main__":
    unittest.main()
