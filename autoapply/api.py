"""HTTP surface: manual trigger, subscription status, automation toggle."""
from __future__ import annotations

import math
from contextlib import asynccontextmanager
from datetime import timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from autoapply.config import Settings, load_settings
from autoapply.errors import (
    IncompleteProfile,
    QuotaExceeded,
    RunAlreadyInProgress,
    UnknownUser,
)
from autoapply.log import get_logger
from autoapply.notifications import StoreSink
from autoapply.orchestrator import Engine, build_engine

log = get_logger(__name__)

SESSION_HEADER = "x-session-token"


class SubscriptionStatus(BaseModel):
    tier: str
    used: int
    remaining: int
    limit: int
    windowKind: str
    resetTime: str


class AutomationRequest(BaseModel):
    active: bool


class AutomationResponse(BaseModel):
    active: bool
    runCancelled: bool = False


def _quota_exceeded_body(exc: QuotaExceeded) -> dict[str, Any]:
    return {
        "error": "quota_exceeded",
        "retryAfter": max(0, math.ceil(exc.retry_after)),
        "resetTime": exc.reset_at.astimezone(timezone.utc).isoformat(),
    }


def create_app(settings: Settings | None = None, *, engine: Engine | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = engine or await run_in_threadpool(build_engine, settings or load_settings())
        app.state.engine = resolved
        log.info("API ready (db=%s)", resolved.db.path)
        yield

    app = FastAPI(title="AutoApply Engine", version="1.0.0", lifespan=lifespan)

    async def require_user(request: Request) -> int:
        token = request.headers.get(SESSION_HEADER, "")
        if not token:
            raise HTTPException(status_code=401, detail="Unauthorized")
        user_id = await run_in_threadpool(request.app.state.engine.profiles.resolve_session, token)
        if user_id is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "autoapply"}

    @app.post("/trigger-job-search", status_code=202)
    async def trigger_job_search(request: Request):
        user_id = await require_user(request)
        orchestrator = request.app.state.engine.orchestrator
        try:
            summary = await run_in_threadpool(orchestrator.run_for_user, user_id)
        except RunAlreadyInProgress:
            return JSONResponse(
                status_code=409,
                content={"error": "run_in_progress", "detail": "A job search is already running"},
            )
        except QuotaExceeded as exc:
            body = _quota_exceeded_body(exc)
            return JSONResponse(
                status_code=429, content=body, headers={"Retry-After": str(body["retryAfter"])}
            )
        except IncompleteProfile as exc:
            return JSONResponse(
                status_code=400,
                content={"error": "incomplete_profile", "missingFields": exc.missing_fields},
            )
        except UnknownUser:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return summary.to_dict()

    @app.get("/subscription/user", response_model=SubscriptionStatus)
    async def subscription_status(request: Request) -> SubscriptionStatus:
        user_id = await require_user(request)
        status = await run_in_threadpool(request.app.state.engine.quota.status, user_id)
        return SubscriptionStatus(
            tier=status.tier.value,
            used=status.used,
            remaining=status.remaining,
            limit=status.limit,
            windowKind=status.window_kind.value,
            resetTime=status.reset_at.astimezone(timezone.utc).isoformat(),
        )

    @app.post("/automation", response_model=AutomationResponse)
    async def set_automation(payload: AutomationRequest, request: Request) -> AutomationResponse:
        user_id = await require_user(request)
        engine_: Engine = request.app.state.engine
        await run_in_threadpool(engine_.profiles.set_automation, user_id, payload.active)
        cancelled = False
        if not payload.active:
            cancelled = engine_.orchestrator.cancel(user_id)
        return AutomationResponse(active=payload.active, runCancelled=cancelled)

    @app.get("/applications")
    async def list_applications(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[dict[str, Any]]:
        user_id = await require_user(request)
        records = await run_in_threadpool(
            request.app.state.engine.tracker.get_applications, user_id, limit
        )
        return [r.to_dict() for r in records]

    @app.get("/notifications")
    async def list_notifications(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[dict[str, Any]]:
        user_id = await require_user(request)
        store = StoreSink(request.app.state.engine.db)
        events = await run_in_threadpool(store.list, user_id, limit)
        return [e.to_dict() for e in events]

    return app
