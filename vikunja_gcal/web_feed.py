from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from vikunja_gcal.config_manager import ConfigManager
from vikunja_gcal.ics_feed import build_calendar, feed_tasks, find_project
from vikunja_gcal.models import AppConfig
from vikunja_gcal.scheduler import SyncScheduler
from vikunja_gcal.sync_engine import SyncEngine, TaskSource
from vikunja_gcal.vikunja_client import VikunjaClient


logger = logging.getLogger(__name__)

ICS_MEDIA_TYPE = "text/calendar; charset=utf-8"


class AppContext:
    def __init__(
        self,
        config_manager: ConfigManager,
        config: AppConfig,
        task_source: TaskSource,
        sync_engine: SyncEngine | None = None,
        scheduler: SyncScheduler | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.config = config
        self.task_source = task_source
        self.sync_engine = sync_engine
        self.scheduler = scheduler

    @classmethod
    def from_config_manager(cls, config_manager: ConfigManager, with_sync: bool = True) -> "AppContext":
        config = config_manager.load_validated()
        sync_engine = SyncEngine.from_config(config) if with_sync else None
        scheduler = SyncScheduler(sync_engine, config.sync.interval_seconds) if sync_engine else None
        return cls(
            config_manager=config_manager,
            config=config,
            task_source=VikunjaClient(config.vikunja),
            sync_engine=sync_engine,
            scheduler=scheduler,
        )


def _ics_response(body: bytes, filename: str) -> Response:
    return Response(
        content=body,
        media_type=ICS_MEDIA_TYPE,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("VIKUNJA_GCAL_CONFIG", "config.yaml")
        context = AppContext.from_config_manager(ConfigManager(config_path))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduler = app.state.context.scheduler
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="Vikunja Calendar Feed", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    def _load_feed_data() -> tuple[list[Any], list[Any]]:
        projects_result = app.state.context.task_source.list_projects()
        tasks_result = app.state.context.task_source.list_tasks()
        if not projects_result.ok or not tasks_result.ok:
            # An empty feed would make subscribers drop every event.
            raise HTTPException(status_code=502, detail="Failed to fetch tasks from Vikunja")
        return projects_result.items, tasks_result.items

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/calendar.ics")
    def all_tasks_feed() -> Response:
        projects, tasks = _load_feed_data()
        config = app.state.context.config
        body = build_calendar(
            feed_tasks(tasks),
            projects={project.project_id: project for project in projects},
            frontend_url=config.vikunja.frontend_url,
            calendar_title=f"{config.sync.calendar_prefix} All Tasks",
        )
        return _ics_response(body, "tasks.ics")

    @app.get("/projects/{project_name}/calendar.ics")
    def project_feed(project_name: str) -> Response:
        projects, tasks = _load_feed_data()
        project = find_project(projects, project_name)
        if project is None:
            raise HTTPException(status_code=404, detail=f"Project not found: {project_name}")
        config = app.state.context.config
        body = build_calendar(
            feed_tasks(tasks, project),
            projects={project.project_id: project},
            frontend_url=config.vikunja.frontend_url,
            calendar_title=f"{config.sync.calendar_prefix} {project.title}",
        )
        return _ics_response(body, f"project-{project.project_id}.ics")

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        scheduler = app.state.context.scheduler
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Sync is not enabled on this server")
        if scheduler.trigger_manual():
            return {"message": "sync triggered"}
        return {"message": "sync already pending"}

    @app.get("/api/sync/status")
    def sync_status() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        if engine is None:
            return {"enabled": False, "running": False, "last_result": None}
        last_result = engine.last_result
        return {
            "enabled": True,
            "running": engine.is_running(),
            "last_result": last_result.to_dict() if last_result else None,
        }

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    return app
