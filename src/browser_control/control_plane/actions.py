"""Apply typed remote-control actions to a browser handle."""

from __future__ import annotations

import base64
import logging
from typing import Awaitable, Callable

from ..config import NAVIGATION_TIMEOUT
from ..constants import NAMED_KEYS
from ..models.action import (
    Action,
    ActionKind,
    ActionResult,
    ClearAction,
    ClickAction,
    FocusAction,
    GetTitleAction,
    GetUrlAction,
    KeyAction,
    NavigateAction,
    ScreenshotAction,
    ScrollAction,
    TypeAction,
)
from .browser import BrowserHandle
from .errors import ActionFailure, PageUnavailable

logger = logging.getLogger(__name__)

Handler = Callable[[BrowserHandle, Action], Awaitable[ActionResult]]


async def _click(handle: BrowserHandle, action: ClickAction) -> ActionResult:
    if action.selector:
        await handle.click(action.selector)
        return ActionResult(success=True, message="Clicked element")
    await handle.mouse_click(action.x, action.y)
    return ActionResult(success=True, message="Clicked coordinates")


async def _type(handle: BrowserHandle, action: TypeAction) -> ActionResult:
    if action.selector:
        await handle.type(action.selector, action.text)
    else:
        await handle.keyboard_type(action.text)
    return ActionResult(success=True, message="Typed text")


async def _key(handle: BrowserHandle, action: KeyAction) -> ActionResult:
    if action.key in NAMED_KEYS:
        await handle.press(action.key)
    elif len(action.key) == 1:
        await handle.keyboard_type(action.key)
    else:
        raise ActionFailure(f"Unsupported key: {action.key}")
    return ActionResult(success=True, message=f"Pressed key: {action.key}")


async def _clear(handle: BrowserHandle, action: ClearAction) -> ActionResult:
    await handle.evaluate(
        "(selector) => { const el = document.querySelector(selector); if (el) el.value = ''; }",
        action.selector,
    )
    return ActionResult(success=True, message="Cleared field")


async def _navigate(handle: BrowserHandle, action: NavigateAction) -> ActionResult:
    url = await handle.goto(action.url, NAVIGATION_TIMEOUT)
    return ActionResult(success=True, message="Navigated to URL", data={"url": url})


async def _scroll(handle: BrowserHandle, action: ScrollAction) -> ActionResult:
    await handle.evaluate("([x, y]) => window.scrollBy(x, y)", [action.x, action.y])
    return ActionResult(success=True, message="Scrolled page")


async def _screenshot(handle: BrowserHandle, action: ScreenshotAction) -> ActionResult:
    image = await handle.screenshot(fast=action.fast)
    return ActionResult(
        success=True,
        data={
            "screenshot": base64.b64encode(image).decode("ascii"),
            "mimeType": "image/jpeg" if action.fast else "image/png",
        },
    )


async def _get_url(handle: BrowserHandle, action: GetUrlAction) -> ActionResult:
    return ActionResult(success=True, data={"url": handle.url})


async def _get_title(handle: BrowserHandle, action: GetTitleAction) -> ActionResult:
    return ActionResult(success=True, data={"title": await handle.title()})


async def _focus(handle: BrowserHandle, action: FocusAction) -> ActionResult:
    if action.selector:
        await handle.focus(action.selector)
        return ActionResult(success=True, message="Focused element")
    await handle.mouse_click(action.x, action.y)
    return ActionResult(success=True, message="Focused coordinates")


HANDLERS: dict[ActionKind, Handler] = {
    ActionKind.CLICK: _click,
    ActionKind.TYPE: _type,
    ActionKind.KEY: _key,
    ActionKind.CLEAR: _clear,
    ActionKind.NAVIGATE: _navigate,
    ActionKind.SCROLL: _scroll,
    ActionKind.SCREENSHOT: _screenshot,
    ActionKind.GET_URL: _get_url,
    ActionKind.GET_TITLE: _get_title,
    ActionKind.FOCUS: _focus,
}


async def execute_action(handle: BrowserHandle, action: Action) -> ActionResult:
    """Run one action. Failures come back as results; only PageUnavailable is raised."""
    handler = HANDLERS[ActionKind(action.action)]
    try:
        return await handler(handle, action)
    except PageUnavailable:
        raise
    except Exception as e:
        logger.warning(f"Action {action.action} failed: {e}")
        return ActionResult(success=False, message=str(e))
