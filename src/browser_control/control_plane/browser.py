"""Playwright-driven Chromium: one process and one page per session."""

from __future__ import annotations

import logging
import re
import shutil
import socket
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from playwright.async_api import BrowserContext, Page, Playwright, Request, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..config import (
    BROWSER_EXECUTABLE,
    BROWSER_HEADLESS,
    BROWSER_PROFILE_DIR,
    BROWSER_TIMEOUT,
    DEBUG_PORT_RANGE,
)
from ..constants import CHROMIUM_ARGS_FULL, CHROMIUM_ARGS_MINIMAL, FAST_CAPTURE, HQ_CAPTURE, STANDARD_CAPTURE
from .errors import LaunchFailure, PageUnavailable
from .policy import FallbackExhausted, FallbackPolicy, first_success

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class InterceptedRequest:
    """Engine-neutral view of one outgoing request from the controlled page."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    post_data: Optional[str] = None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


def _intercepted(request: Request) -> InterceptedRequest:
    try:
        post_data = request.post_data
    except Exception:
        # Binary bodies cannot be decoded as text
        post_data = None
    return InterceptedRequest(
        method=request.method,
        url=request.url,
        headers={k.lower(): v for k, v in request.headers.items()},
        post_data=post_data,
    )


class BrowserHandle:
    """Exclusive owner of one browser context and its page.

    Every primitive raises PageUnavailable once the handle is closed or the
    browser has gone away.
    """

    def __init__(self, context: BrowserContext, page: Page, debug_port: Optional[int] = None):
        self._context = context
        self._page = page
        self._debug_port = debug_port
        self._closed = False
        self._disconnect_callbacks: list[Callable[[], None]] = []

        context.on("close", lambda _ctx: self._on_gone("context closed"))
        page.on("close", lambda _page: self._on_gone("page closed"))
        page.on("crash", lambda _page: self._on_gone("page crashed"))
        page.on("console", lambda message: logger.debug(f"Page console [{message.type}]: {message.text}"))
        page.on("pageerror", lambda error: logger.debug(f"Page error: {error}"))

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def is_closed(self) -> bool:
        return self._closed or self._page.is_closed()

    @property
    def url(self) -> str:
        return self._require_page().url

    def _require_page(self) -> Page:
        if self.is_closed:
            raise PageUnavailable("Browser page is not available")
        return self._page

    @asynccontextmanager
    async def _guard(self, operation: str):
        page = self._require_page()
        try:
            yield page
        except PlaywrightError as e:
            if self.is_closed:
                raise PageUnavailable(f"{operation} failed: page is closed") from e
            raise

    def _on_gone(self, reason: str):
        already_closed = self._closed
        self._closed = True
        if already_closed:
            return
        logger.info(f"Browser gone ({reason})")
        for callback in self._disconnect_callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Disconnect callback failed: {e}")

    # ── Event hooks ──────────────────────────────────────────────────────────

    def on_request(self, callback: Callable[[InterceptedRequest], None]):
        self._page.on("request", lambda request: callback(_intercepted(request)))

    def on_navigation(self, callback: Callable[[str], None]):
        def _framenavigated(frame):
            if frame == self._page.main_frame:
                callback(frame.url)

        self._page.on("framenavigated", _framenavigated)

    def on_disconnect(self, callback: Callable[[], None]):
        self._disconnect_callbacks.append(callback)

    # ── Primitives ───────────────────────────────────────────────────────────

    async def add_init_script(self, script: str):
        async with self._guard("add_init_script") as page:
            await page.add_init_script(script)

    async def goto(self, url: str, timeout_ms: int) -> str:
        async with self._guard("goto") as page:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            return page.url

    async def set_content(self, html: str):
        async with self._guard("set_content") as page:
            await page.set_content(html)

    async def title(self) -> str:
        async with self._guard("title") as page:
            return await page.title()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        async with self._guard("evaluate") as page:
            return await page.evaluate(script, arg)

    async def screenshot(self, fast: bool = False, hq: bool = False) -> bytes:
        options = FAST_CAPTURE if fast else HQ_CAPTURE if hq else STANDARD_CAPTURE
        async with self._guard("screenshot") as page:
            return await page.screenshot(**options)

    async def click(self, selector: str):
        async with self._guard("click") as page:
            await page.click(selector)

    async def mouse_click(self, x: float, y: float):
        async with self._guard("mouse_click") as page:
            await page.mouse.click(x, y)

    async def type(self, selector: str, text: str):
        async with self._guard("type") as page:
            await page.type(selector, text)

    async def keyboard_type(self, text: str):
        async with self._guard("keyboard_type") as page:
            await page.keyboard.type(text)

    async def press(self, key: str):
        async with self._guard("press") as page:
            await page.keyboard.press(key)

    async def focus(self, selector: str):
        async with self._guard("focus") as page:
            await page.focus(selector)

    async def debugging_url(self) -> Optional[str]:
        """Resolve a DevTools inspector URL for the page, if remote debugging is on."""
        if self._debug_port is None:
            return None

        endpoint = f"http://127.0.0.1:{self._debug_port}"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{endpoint}/json/list")
                resp.raise_for_status()
                targets = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not read debug targets from {endpoint}: {e}")
            return None

        for target in targets:
            ws_url = target.get("webSocketDebuggerUrl")
            if target.get("type") == "page" and ws_url:
                return f"{endpoint}/devtools/inspector.html?ws={ws_url.removeprefix('ws://')}"
        return None

    async def close(self):
        """Terminate the browser process. Safe to call more than once."""
        if self._closed and self._context is None:
            return
        self._closed = True
        context, self._context = self._context, None
        if context is None:
            return
        try:
            await context.close()
        except Exception as e:
            logger.warning(f"Error closing browser context: {e}")


# ── Launching ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LaunchConfig:
    name: str
    args: tuple[str, ...]
    remote_debugging: bool = True

    def __str__(self) -> str:
        return self.name


DEFAULT_LAUNCH_POLICY = FallbackPolicy(
    candidates=(
        LaunchConfig("full", tuple(CHROMIUM_ARGS_FULL)),
        LaunchConfig("minimal", tuple(CHROMIUM_ARGS_MINIMAL), remote_debugging=False),
    ),
)


def find_free_port(port_range: tuple[int, int]) -> Optional[int]:
    """Return the first port in the inclusive range that can be bound on loopback."""
    low, high = port_range
    for port in range(low, high + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    return None


def profile_dir_name(session_token: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", session_token)


class PlaywrightLauncher:
    """Starts one persistent Chromium context per session token."""

    def __init__(
        self,
        profile_root: Path = BROWSER_PROFILE_DIR,
        policy: FallbackPolicy[LaunchConfig] = DEFAULT_LAUNCH_POLICY,
        headless: bool = BROWSER_HEADLESS,
        executable_path: Optional[str] = BROWSER_EXECUTABLE,
        debug_ports: tuple[int, int] = DEBUG_PORT_RANGE,
    ):
        self._profile_root = Path(profile_root)
        self._policy = policy
        self._headless = headless
        self._executable_path = executable_path
        self._debug_ports = debug_ports
        self._playwright: Optional[Playwright] = None

    async def start(self):
        if self._playwright is None:
            logger.info("Starting Playwright driver...")
            self._playwright = await async_playwright().start()

    async def stop(self):
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")
            finally:
                self._playwright = None

    async def launch(self, session_token: str, viewport: dict, *, fresh: bool) -> BrowserHandle:
        """Launch a browser for the token.

        fresh=True wipes the token's profile first; otherwise cookies and
        storage from the previous browser for this token are reused.
        """
        profile_dir = self._profile_root / profile_dir_name(session_token)
        try:
            await self.start()
            if fresh:
                shutil.rmtree(profile_dir, ignore_errors=True)
            profile_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise LaunchFailure(f"launch {session_token}: browser environment unavailable: {e}") from e

        try:
            config, handle = await first_success(
                self._policy,
                lambda cfg: self._launch_with(cfg, profile_dir, viewport),
                label=f"launch {session_token}",
            )
        except FallbackExhausted as e:
            raise LaunchFailure(str(e)) from e

        logger.info(f"Browser launched for {session_token} with {config} configuration")
        return handle

    async def _launch_with(self, config: LaunchConfig, profile_dir: Path, viewport: dict) -> BrowserHandle:
        args = list(config.args)
        args.append(f"--window-size={viewport['width']},{viewport['height']}")

        debug_port = find_free_port(self._debug_ports) if config.remote_debugging else None
        if debug_port is not None:
            args.append(f"--remote-debugging-port={debug_port}")

        context = await self._playwright.chromium.launch_persistent_context(
            str(profile_dir),
            headless=self._headless,
            executable_path=self._executable_path,
            args=args,
            viewport=viewport,
        )
        try:
            page = context.pages[0] if context.pages else await context.new_page()
            page.set_default_timeout(BROWSER_TIMEOUT)
        except Exception:
            await context.close()
            raise
        return BrowserHandle(context, page, debug_port=debug_port)
