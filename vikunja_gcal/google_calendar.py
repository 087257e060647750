from __future__ import annotations

import logging
from typing import Any, Callable, Iterator

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import Error as GoogleApiClientError
from googleapiclient.errors import HttpError

from vikunja_gcal.models import (
    EventPayload,
    FetchResult,
    GoogleConfig,
    ManagedCalendar,
    RemoteEvent,
)
from vikunja_gcal.rate_limit import IntervalLimiter, unlimited


logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
GONE_STATUSES = {404, 410}
# HttpError is a GoogleApiClientError; auth refresh and DNS failures are neither.
API_ERRORS = (GoogleApiClientError, GoogleAuthError, httplib2.HttpLib2Error, OSError)
# Roles that give the principal at least read access to event details.
SUFFICIENT_ROLES = {"reader", "writer", "owner"}


class CalendarSinkError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _http_status(exc: Exception) -> int | None:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def build_calendar_api(credentials_file: str) -> Any:
    credentials = service_account.Credentials.from_service_account_file(credentials_file, scopes=SCOPES)
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


class GoogleCalendarService:
    """Calendar sink backed by the Google Calendar v3 API.

    Every mutating request waits on ``limiter`` first, so consecutive writes
    are spaced at least ``limiter.interval_seconds`` apart. Reads are not
    paced.
    """

    def __init__(self, api: Any, limiter: IntervalLimiter | None = None) -> None:
        self.api = api
        self.limiter = limiter or unlimited()

    @classmethod
    def from_config(cls, config: GoogleConfig, limiter: IntervalLimiter | None = None) -> "GoogleCalendarService":
        return cls(build_calendar_api(config.credentials_file), limiter=limiter)

    def _paged(self, request_factory: Callable[[str | None], Any]) -> Iterator[dict[str, Any]]:
        page_token: str | None = None
        while True:
            response = request_factory(page_token).execute()
            yield from response.get("items", []) or []
            page_token = response.get("nextPageToken")
            if not page_token:
                break

    def _mutate(self, action: str, request: Any) -> Any:
        self.limiter.wait()
        try:
            return request.execute()
        except HttpError as exc:
            raise CalendarSinkError(f"{action} failed: {exc}", status=_http_status(exc)) from exc
        except API_ERRORS as exc:
            raise CalendarSinkError(f"{action} failed: {type(exc).__name__}: {exc}") from exc

    def list_calendars(self, name_prefix: str) -> FetchResult[ManagedCalendar]:
        try:
            calendars = [
                ManagedCalendar(calendar_id=str(item["id"]), name=str(item.get("summary", "") or ""))
                for item in self._paged(lambda token: self.api.calendarList().list(pageToken=token))
            ]
        except API_ERRORS as exc:
            logger.error("Error fetching Google calendars: %s", exc)
            return FetchResult.failed(str(exc))
        return FetchResult(items=[cal for cal in calendars if cal.name.startswith(name_prefix)])

    def create_calendar(self, name: str, timezone: str = "UTC") -> ManagedCalendar:
        created = self._mutate(
            f"create calendar {name!r}",
            self.api.calendars().insert(body={"summary": name, "timeZone": timezone}),
        )
        return ManagedCalendar(calendar_id=str(created["id"]), name=str(created.get("summary", name)))

    def share_calendar(self, calendar_id: str, principal: str, role: str = "owner") -> bool:
        """Grant ``role`` to ``principal`` unless it already has read access or more.

        A ``freeBusyReader`` or ``none`` rule does not count. Returns True when
        a rule was inserted.
        """
        try:
            rules = list(self._paged(lambda token: self.api.acl().list(calendarId=calendar_id, pageToken=token)))
        except API_ERRORS as exc:
            raise CalendarSinkError(f"list ACL for {calendar_id} failed: {exc}", status=_http_status(exc)) from exc
        principal_key = principal.casefold()
        for rule in rules:
            if str((rule.get("scope") or {}).get("value", "")).casefold() != principal_key:
                continue
            if str(rule.get("role", "")) in SUFFICIENT_ROLES:
                return False
        self._mutate(
            f"share {calendar_id} with {principal}",
            self.api.acl().insert(
                calendarId=calendar_id,
                body={"role": role, "scope": {"type": "user", "value": principal}},
            ),
        )
        return True

    def list_events(self, calendar_id: str) -> FetchResult[RemoteEvent]:
        try:
            events = [
                RemoteEvent.from_api(calendar_id, item)
                for item in self._paged(
                    lambda token: self.api.events().list(
                        calendarId=calendar_id,
                        showDeleted=False,
                        maxResults=2500,
                        pageToken=token,
                    )
                )
            ]
        except API_ERRORS as exc:
            logger.error("Error fetching events for calendar %s: %s", calendar_id, exc)
            return FetchResult.failed(str(exc))
        return FetchResult(items=events)

    def create_event(self, calendar_id: str, payload: EventPayload) -> RemoteEvent:
        created = self._mutate(
            f"create event for task {payload.task_id}",
            self.api.events().insert(calendarId=calendar_id, body=payload.to_api()),
        )
        return RemoteEvent.from_api(calendar_id, created)

    def update_event(self, calendar_id: str, event_id: str, payload: EventPayload) -> RemoteEvent:
        updated = self._mutate(
            f"update event {event_id}",
            self.api.events().update(calendarId=calendar_id, eventId=event_id, body=payload.to_api()),
        )
        return RemoteEvent.from_api(calendar_id, updated)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event; returns False when it was already gone."""
        try:
            self._mutate(
                f"delete event {event_id}",
                self.api.events().delete(calendarId=calendar_id, eventId=event_id),
            )
        except CalendarSinkError as exc:
            if exc.status in GONE_STATUSES:
                logger.debug("Event %s already gone from %s", event_id, calendar_id)
                return False
            raise
        return True
