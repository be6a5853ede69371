from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings
from .db import Database, utc_now_iso
from .engine import Engine
from .models import (
    AddChannelRequest,
    IdleStateRequest,
    PromptResponseRequest,
    ReorderChannelsRequest,
    SettingsUpdateRequest,
    SurfaceReportRequest,
)
from .services.host import HostBridge, Surface
from .services.state_store import ChannelListError, StateStore
from .services.twitch_api import StatusClient
from .services.webhook import NotificationWebhook

logger = logging.getLogger("autoswap")


settings = Settings()
db = Database(settings.db_path)
webhook = NotificationWebhook(settings.notify_webhook_url, settings.webhook_timeout_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await db.init()
    host = HostBridge(webhook=webhook if settings.notify_webhook_url else None)
    engine = Engine(
        settings=settings,
        store=StateStore(db, debounce_seconds=settings.write_debounce_seconds),
        client=StatusClient(settings),
        surfaces=host,
        notifier=host,
    )
    app.state.host = host
    app.state.engine = engine
    await engine.start()
    logger.info("%s %s started (db=%s)", settings.app_name, settings.build_version, settings.db_path)
    yield
    await engine.stop()


app = FastAPI(title="AutoSwap", lifespan=lifespan)


def _channel_error(err: ChannelListError) -> HTTPException:
    status_code = 404 if err.code == "channel_not_found" else 400
    return HTTPException(status_code=status_code, detail={"code": err.code, "message": err.message})


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/status")
async def api_status(request: Request) -> dict[str, Any]:
    return await request.app.state.engine.status_summary()


@app.get("/api/channels")
async def api_channels(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    channels = await engine.store.get_channels()
    return {"channels": [c.model_dump() for c in channels]}


@app.post("/api/channels")
async def api_channels_add(payload: AddChannelRequest, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    try:
        channels = await engine.add_channel(payload.name)
    except ChannelListError as err:
        logger.warning("add channel failed: code=%s name=%s", err.code, payload.name)
        raise _channel_error(err) from err
    return {"ok": True, "channels": [c.model_dump() for c in channels]}


@app.post("/api/channels/reorder")
async def api_channels_reorder(payload: ReorderChannelsRequest, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    channels = await engine.reorder_channels(payload.names)
    return {"ok": True, "channels": [c.model_dump() for c in channels]}


@app.delete("/api/channels/{name}")
async def api_channels_delete(name: str, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    try:
        channels = await engine.remove_channel(name)
    except ChannelListError as err:
        raise _channel_error(err) from err
    return {"ok": True, "channels": [c.model_dump() for c in channels]}


@app.get("/api/settings")
async def api_settings(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    return (await engine.store.get_settings()).model_dump()


@app.post("/api/settings")
async def api_settings_update(payload: SettingsUpdateRequest, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    patch = payload.model_dump(exclude_unset=True)
    updated = await engine.store.save_settings(patch)
    logger.info("settings updated: keys=%s", ",".join(sorted(patch)) or "-")
    return updated.model_dump()


@app.post("/api/control/poll")
async def api_control_poll(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    ran = await engine.force_poll()
    return {"ok": ran, "scheduler": engine.scheduler.describe()}


@app.post("/api/control/reroll")
async def api_control_reroll(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    redirected = await engine.force_fallback_reroll()
    runtime = await engine.store.get_runtime()
    return {"ok": redirected, "fallback": runtime.model_dump()}


@app.get("/api/control/managed-surface")
async def api_control_managed_surface(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    return {"managed_surface_id": await engine.get_managed_surface_id()}


@app.get("/api/host/surfaces")
async def api_host_surfaces(request: Request) -> dict[str, Any]:
    host: HostBridge = request.app.state.host
    return {"surfaces": [vars(s) for s in host.surfaces.values()]}


@app.post("/api/host/surfaces")
async def api_host_surfaces_report(payload: SurfaceReportRequest, request: Request) -> dict[str, Any]:
    host: HostBridge = request.app.state.host
    surface = Surface(surface_id=payload.surface_id, url=payload.url, status=payload.status, active=payload.active)
    host.report_surface(surface)
    return {"ok": True, "surface": vars(surface)}


@app.delete("/api/host/surfaces/{surface_id}")
async def api_host_surfaces_remove(surface_id: str, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    host: HostBridge = request.app.state.host
    known = host.remove_surface(surface_id)
    released = await engine.handle_surface_removed(surface_id)
    return {"ok": known or released, "released_managed_surface": released}


@app.post("/api/host/idle")
async def api_host_idle(payload: IdleStateRequest, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    await engine.set_idle_state(payload.state)
    return {"ok": True, "scheduler": engine.scheduler.describe()}


@app.get("/api/prompts")
async def api_prompts(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    return {"prompts": [vars(p) for p in engine.switcher.pending_prompts()]}


@app.post("/api/prompts/{prompt_id}")
async def api_prompts_respond(prompt_id: str, payload: PromptResponseRequest, request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    if not any(p.prompt_id == prompt_id for p in engine.switcher.pending_prompts()):
        raise HTTPException(
            status_code=404,
            detail={"code": "prompt_not_found", "message": "This switch prompt has expired or was already answered."},
        )
    switched = await engine.respond_to_prompt(prompt_id, payload.accept)
    return {"ok": True, "switched": switched}


@app.get("/api/analytics")
async def api_analytics(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    return (await engine.store.get_analytics()).model_dump()


@app.post("/api/analytics/clear")
async def api_analytics_clear(request: Request) -> dict[str, Any]:
    engine: Engine = request.app.state.engine
    cleared = await engine.clear_analytics()
    return {"ok": True, "analytics": cleared.model_dump(), "cleared_at": utc_now_iso()}


@app.get("/api/live/events")
async def api_live_events(request: Request) -> StreamingResponse:
    engine: Engine = request.app.state.engine
    host: HostBridge = request.app.state.host
    q: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=200)
    host.subscribers.add(q)

    async def _gen() -> AsyncGenerator[bytes, None]:
        try:
            initial = await engine.status_summary()
            yield f"data: {json.dumps({'event': 'status', **initial})}\n\n".encode("utf-8")
            while True:
                event = await q.get()
                yield f"data: {json.dumps(event)}\n\n".encode("utf-8")
        except asyncio.CancelledError:
            raise
        finally:
            host.subscribers.discard(q)

    return StreamingResponse(_gen(), media_type="text/event-stream")


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[str] = []
    for err in exc.errors():
        field = ".".join([str(x) for x in err.get("loc", []) if x != "body"]) or "request"
        details.append(f"{field}: {err.get('msg', 'Invalid value')}")
    message = "Invalid request data. " + ("; ".join(details) if details else "Check your input and try again.")
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": {"code": "validation_error", "message": message}},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled API error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "detail": {
                "code": "internal_error",
                "message": "Unexpected server error. Please retry. If the issue continues, check the logs.",
            },
        },
    )
