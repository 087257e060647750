from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import requests

from vikunja_gcal.models import FetchResult, Project, Task, VikunjaConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")

TOTAL_PAGES_HEADER = "x-pagination-total-pages"
RESULT_COUNT_HEADER = "x-pagination-result-count"
# Guards against a server that keeps reporting more pages than it serves.
MAX_PAGES = 1000


def _header_int(headers: Any, name: str, default: int) -> int:
    raw = (headers or {}).get(name)
    try:
        return int(str(raw).strip()) if raw is not None else default
    except ValueError:
        return default


class VikunjaClient:
    def __init__(self, config: VikunjaConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_token}",
            "Accept": "application/json",
        }

    def _get(self, path: str, params: dict[str, Any] | None = None) -> requests.Response:
        response = self.session.get(
            f"{self.config.api_url}{path}",
            headers=self._headers(),
            params=params,
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        return response

    def _get_all_pages(self, path: str, label: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            logger.debug("Fetching %s page %d", label, page)
            response = self._get(path, params={"page": page})
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError(f"Expected a list from {path}, got {type(payload).__name__}")
            items.extend(payload)
            total_pages = _header_int(response.headers, TOTAL_PAGES_HEADER, 1)
            result_count = _header_int(response.headers, RESULT_COUNT_HEADER, len(payload))
            logger.info("Got %d %s. Page %d of %d", result_count, label, page, total_pages)
            if page >= total_pages or not payload or page >= MAX_PAGES:
                break
            page += 1
        return items

    def _fetch(self, label: str, fetch: Callable[[], list[T]]) -> FetchResult[T]:
        try:
            return FetchResult(items=fetch())
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error("Error fetching Vikunja %s: %s", label, error)
            return FetchResult.failed(error)

    def list_projects(self) -> FetchResult[Project]:
        def fetch() -> list[Project]:
            return [Project.from_api(item) for item in self._get_all_pages("/projects", "projects")]

        return self._fetch("projects", fetch)

    def list_tasks(self) -> FetchResult[Task]:
        """Every task with a due date, across all pages of ``/tasks/all``."""

        def fetch() -> list[Task]:
            raw_tasks = self._get_all_pages("/tasks/all", "tasks")
            logger.info("Total tasks fetched: %d", len(raw_tasks))
            tasks = [Task.from_api(item) for item in raw_tasks]
            return [task for task in tasks if task.due_date is not None]

        return self._fetch("tasks", fetch)
