"""Pytest configuration and in-memory browser fakes for the control plane."""
import os
import tempfile

# Keep test runs away from the real data directory and any local .env targets.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="browser-control-tests-"))
os.environ["TARGET_URLS"] = "https://target.test/signin"
os.environ["AUTH_HOSTS"] = "accounts.target.test"

import aiosqlite
import pytest

from browser_control.control_plane.broker import SessionBroker
from browser_control.control_plane.browser import InterceptedRequest
from browser_control.control_plane.errors import LaunchFailure, PageUnavailable
from browser_control.database.models import initialize_db
from browser_control.database.repository import SessionRepository

PUBLIC_BASE = "http://control.test"


class FakeBrowserHandle:
    """Stands in for BrowserHandle: records calls, never starts Chromium."""

    def __init__(self, reachable=(), debug_url=None):
        self.reachable = set(reachable)
        self.debug_url = debug_url
        self.calls = []
        self.init_scripts = []
        self.current = "about:blank"
        self.content = None
        self.closed = False
        self.close_count = 0
        self._request_cbs = []
        self._navigation_cbs = []
        self._disconnect_cbs = []

    # state

    @property
    def is_closed(self):
        return self.closed

    @property
    def url(self):
        self._check()
        return self.current

    def _check(self):
        if self.closed:
            raise PageUnavailable("Browser page is not available")

    # hooks

    def on_request(self, callback):
        self._request_cbs.append(callback)

    def on_navigation(self, callback):
        self._navigation_cbs.append(callback)

    def on_disconnect(self, callback):
        self._disconnect_cbs.append(callback)

    def emit_request(self, method, url, content_type, body):
        request = InterceptedRequest(method=method, url=url, headers={"content-type": content_type}, post_data=body)
        for cb in self._request_cbs:
            cb(request)

    def emit_navigation(self, url):
        self.current = url
        for cb in self._navigation_cbs:
            cb(url)

    def crash(self):
        """Simulate the browser process dying underneath the session."""
        self.closed = True
        for cb in self._disconnect_cbs:
            cb()

    # primitives

    async def add_init_script(self, script):
        self._check()
        self.init_scripts.append(script)

    async def goto(self, url, timeout_ms):
        self._check()
        self.calls.append(("goto", url))
        if url not in self.reachable:
            raise TimeoutError(f"Timeout {timeout_ms}ms exceeded navigating to {url}")
        self.current = url
        return url

    async def set_content(self, html):
        self._check()
        self.content = html
        self.current = "about:blank"

    async def title(self):
        self._check()
        return "Fake Title"

    async def evaluate(self, script, arg=None):
        self._check()
        self.calls.append(("evaluate", arg))

    async def screenshot(self, fast=False, hq=False):
        self._check()
        if hq:
            return b"\x89PNGfull"
        return b"\xff\xd8jpeg" if fast else b"\x89PNGpng"

    async def click(self, selector):
        self._check()
        if selector == "#missing":
            raise TimeoutError("waiting for selector #missing")
        self.calls.append(("click", selector))

    async def mouse_click(self, x, y):
        self._check()
        self.calls.append(("mouse_click", x, y))

    async def type(self, selector, text):
        self._check()
        self.calls.append(("type", selector, text))

    async def keyboard_type(self, text):
        self._check()
        self.calls.append(("keyboard_type", text))

    async def press(self, key):
        self._check()
        self.calls.append(("press", key))

    async def focus(self, selector):
        self._check()
        self.calls.append(("focus", selector))

    async def debugging_url(self):
        return self.debug_url

    async def close(self):
        self.close_count += 1
        self.closed = True


class FakeLauncher:
    """Hands out FakeBrowserHandles; can be told to fail the next launches."""

    def __init__(self, reachable=("https://target.test/signin",), debug_url=None):
        self.reachable = set(reachable)
        self.debug_url = debug_url
        self.fail_next = 0
        self.error = None
        self.launches = []
        self.handles = []

    async def launch(self, session_token, viewport, *, fresh):
        self.launches.append((session_token, fresh))
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        if self.fail_next:
            self.fail_next -= 1
            raise LaunchFailure(f"launch {session_token}: all 2 attempts failed")
        handle = FakeBrowserHandle(self.reachable, self.debug_url)
        self.handles.append(handle)
        return handle

    def live(self):
        return [h for h in self.handles if not h.closed]


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
async def db(tmp_path):
    conn = await aiosqlite.connect(str(tmp_path / "sessions.db"))
    await initialize_db(conn)
    yield conn
    await conn.close()


@pytest.fixture
def repo(db):
    return SessionRepository(db)


@pytest.fixture
async def broker(launcher, repo):
    broker = SessionBroker(
        launcher,
        repo,
        auth_hosts=["accounts.target.test"],
        public_base_url=PUBLIC_BASE,
        navigation_timeout=1000,
    )
    yield broker
    await broker.shutdown()
