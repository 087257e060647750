from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Generic, TypeVar


T = TypeVar("T")

TASK_ID_PROPERTY = "vikunjaTaskId"
OPAQUE = "opaque"
DEFAULT_CALENDAR_PREFIX = "[Vikunja]"
# Vikunja serializes an unset due date as the zero time value.
NULL_DUE_DATE_YEAR = 1


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_due_date(value: str | date | None) -> date | None:
    """Return the calendar date of a Vikunja due date, or None when unset."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed: datetime | None = value
    elif isinstance(value, date):
        return value
    else:
        text = str(value).strip()
        if not text:
            return None
        if len(text) == 10:
            return date.fromisoformat(text)
        parsed = parse_iso_datetime(text)
    if parsed is None or parsed.year <= NULL_DUE_DATE_YEAR:
        return None
    return _ensure_tz(parsed).astimezone(timezone.utc).date()


def parse_all_day(value: dict[str, Any] | None) -> date | None:
    value = value or {}
    if value.get("date"):
        return date.fromisoformat(str(value["date"]))
    if value.get("dateTime"):
        parsed = parse_iso_datetime(value["dateTime"])
        return parsed.date() if parsed else None
    return None


@dataclass
class VikunjaConfig:
    api_url: str = ""
    api_token: str = ""
    frontend_url: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "VikunjaConfig":
        data = data or {}
        return cls(
            api_url=str(data.get("api_url", "") or "").strip().rstrip("/"),
            api_token=str(data.get("api_token", "") or "").strip(),
            frontend_url=str(data.get("frontend_url", "") or "").strip().rstrip("/"),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30) or 30)),
        )


@dataclass
class GoogleConfig:
    credentials_file: str = ""
    share_with_email: str = ""
    share_role: str = "owner"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            credentials_file=str(data.get("credentials_file", "") or "").strip(),
            share_with_email=str(data.get("share_with_email", "") or "").strip(),
            share_role=str(data.get("share_role", "owner") or "").strip() or "owner",
        )


@dataclass
class SyncConfig:
    calendar_prefix: str = DEFAULT_CALENDAR_PREFIX
    pacing_ms: int = 200
    interval_seconds: int = 900

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        prefix = data.get("calendar_prefix")
        return cls(
            calendar_prefix=str(prefix).strip() if prefix else DEFAULT_CALENDAR_PREFIX,
            pacing_ms=max(0, int(data.get("pacing_ms", 200))),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
        )


@dataclass
class FeedConfig:
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            host=str(data.get("host", "0.0.0.0")).strip() or "0.0.0.0",
            port=int(data.get("port", 8080)),
        )


@dataclass
class AppConfig:
    vikunja: VikunjaConfig = field(default_factory=VikunjaConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            vikunja=VikunjaConfig.from_dict(data.get("vikunja")),
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            feed=FeedConfig.from_dict(data.get("feed")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Project:
    project_id: int
    title: str

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "Project":
        return cls(project_id=int(payload["id"]), title=str(payload.get("title", "") or ""))


@dataclass
class Task:
    task_id: int
    title: str
    project_id: int
    due_date: date | None = None
    description: str = ""
    done: bool = False
    updated_at: datetime | None = None
    project: Project | None = None

    @property
    def key(self) -> str:
        return str(self.task_id)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "Task":
        inlined = payload.get("project")
        project = Project.from_api(inlined) if isinstance(inlined, dict) and inlined.get("id") else None
        project_id = payload.get("project_id")
        if project_id is None and project is not None:
            project_id = project.project_id
        return cls(
            task_id=int(payload["id"]),
            title=str(payload.get("title", "") or ""),
            project_id=int(project_id or 0),
            due_date=parse_due_date(payload.get("due_date")),
            description=str(payload.get("description", "") or ""),
            done=bool(payload.get("done", False)),
            updated_at=parse_iso_datetime(payload.get("updated") or payload.get("updated_at")),
            project=project,
        )


@dataclass
class ManagedCalendar:
    calendar_id: str
    name: str


@dataclass
class RemoteEvent:
    event_id: str
    calendar_id: str
    task_id: str = ""
    summary: str = ""
    description: str = ""
    start: date | None = None
    end: date | None = None
    updated_at: datetime | None = None
    transparency: str = OPAQUE

    @classmethod
    def from_api(cls, calendar_id: str, payload: dict[str, Any]) -> "RemoteEvent":
        private = (payload.get("extendedProperties") or {}).get("private") or {}
        return cls(
            event_id=str(payload.get("id", "")),
            calendar_id=calendar_id,
            task_id=str(private.get(TASK_ID_PROPERTY, "") or "").strip(),
            summary=str(payload.get("summary", "") or ""),
            description=str(payload.get("description", "") or ""),
            start=parse_all_day(payload.get("start")),
            end=parse_all_day(payload.get("end")),
            updated_at=parse_iso_datetime(payload.get("updated")),
            # Google omits transparency when it is the default.
            transparency=str(payload.get("transparency", OPAQUE) or OPAQUE),
        )


@dataclass
class EventPayload:
    summary: str
    description: str
    start: date
    end: date
    task_id: str
    transparency: str = OPAQUE

    def to_api(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "description": self.description,
            "start": {"date": self.start.isoformat()},
            "end": {"date": self.end.isoformat()},
            "transparency": self.transparency,
            "extendedProperties": {"private": {TASK_ID_PROPERTY: self.task_id}},
        }


@dataclass
class FetchResult(Generic[T]):
    items: list[T] = field(default_factory=list)
    ok: bool = True
    error: str = ""

    @classmethod
    def failed(cls, error: str) -> "FetchResult[T]":
        return cls(items=[], ok=False, error=error)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    moved: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    cleanup_skipped: bool = False
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mutations(self) -> int:
        return self.created + self.updated + self.moved + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "moved": self.moved,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
            "cleanup_skipped": self.cleanup_skipped,
            "run_at": serialize_datetime(self.run_at),
        }
