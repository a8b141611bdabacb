from __future__ import annotations

import os
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from yogacal.config_manager import ConfigManager, google_config_with_env
from yogacal.models import RematchBatchError, SyncError
from yogacal.rematch import RematchProcessor, RematchRequest
from yogacal.scheduler import SyncScheduler
from yogacal.state_store import StateStore
from yogacal.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    feed_id: str = Field(min_length=1)
    mode: Literal["default", "historical"] = "default"
    window_days: int | None = Field(default=None, ge=1)


class RematchApiRequest(BaseModel):
    user_id: str = Field(min_length=1)
    feed_id: str | None = None
    event_ids: list[int] = Field(default_factory=list)
    rematch_tags: bool = True
    rematch_studios: bool = True
    batch_size: int = Field(default=100, ge=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        google_config = google_config_with_env(self.config_manager.load().google)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, google_config=google_config)
        self.rematch_processor = RematchProcessor(self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_secret = str(current.get("google", {}).get("client_secret", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        secret = google.get("client_secret")
        if secret is not None and str(secret).strip() in {"", "***"}:
            if current_secret:
                google.pop("client_secret", None)
            else:
                google["client_secret"] = ""
        if not google:
            sanitized.pop("google", None)

    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("YOGACAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("YOGACAL_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Yoga Calendar Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync")
    def sync_feed(request: SyncRequest) -> Any:
        try:
            result = app.state.context.sync_engine.sync_feed(
                request.feed_id, mode=request.mode, window_days=request.window_days
            )
        except SyncError as exc:
            return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})
        return result.to_dict()

    @app.post("/api/sync/all")
    def sync_all() -> dict[str, Any]:
        return app.state.context.sync_engine.sync_due_feeds(trigger="manual").to_dict()

    @app.post("/api/rematch")
    def rematch(request: RematchApiRequest) -> Any:
        try:
            result = app.state.context.rematch_processor.run(RematchRequest(**request.model_dump()))
        except RematchBatchError as exc:
            return JSONResponse(
                status_code=500,
                content={"error": f"Failed to update batch {exc.batch}", "details": exc.details, "batch": exc.batch},
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return result.to_dict()

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit)}

    return app
