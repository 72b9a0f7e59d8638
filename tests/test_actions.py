import base64

import pytest
from pydantic import ValidationError

from browser_control.control_plane.actions import HANDLERS, execute_action
from browser_control.control_plane.errors import PageUnavailable
from browser_control.models.action import ActionKind, ClickAction, parse_action

from conftest import FakeBrowserHandle


def test_every_action_kind_has_a_handler():
    assert set(HANDLERS) == set(ActionKind)


def test_parse_action_builds_typed_variant():
    action = parse_action("click", {"x": 10, "y": 20})
    assert isinstance(action, ClickAction)
    assert (action.x, action.y) == (10, 20)


def test_parse_action_rejects_unknown_and_incomplete():
    with pytest.raises(ValidationError):
        parse_action("explode", {})
    with pytest.raises(ValidationError):
        parse_action("click", {})
    with pytest.raises(ValidationError):
        parse_action("navigate", {})


async def test_click_by_selector_and_coordinates():
    handle = FakeBrowserHandle()

    by_selector = await execute_action(handle, parse_action("click", {"selector": "#next"}))
    by_point = await execute_action(handle, parse_action("click", {"x": 5, "y": 6}))

    assert by_selector.success and by_point.success
    assert ("click", "#next") in handle.calls
    assert ("mouse_click", 5, 6) in handle.calls


async def test_type_without_selector_uses_keyboard():
    handle = FakeBrowserHandle()
    await execute_action(handle, parse_action("type", {"text": "hello"}))
    await execute_action(handle, parse_action("type", {"text": "x", "selector": "#q"}))
    assert ("keyboard_type", "hello") in handle.calls
    assert ("type", "#q", "x") in handle.calls


async def test_named_and_printable_keys():
    handle = FakeBrowserHandle()
    assert (await execute_action(handle, parse_action("key", {"key": "Enter"}))).success
    assert (await execute_action(handle, parse_action("key", {"key": "a"}))).success
    unsupported = await execute_action(handle, parse_action("key", {"key": "Hyper"}))

    assert ("press", "Enter") in handle.calls
    assert ("keyboard_type", "a") in handle.calls
    assert not unsupported.success


async def test_scroll_defaults():
    handle = FakeBrowserHandle()
    await execute_action(handle, parse_action("scroll", {}))
    assert ("evaluate", [0, 100]) in handle.calls


async def test_screenshot_returns_base64_payload():
    handle = FakeBrowserHandle()
    result = await execute_action(handle, parse_action("screenshot", {"fast": True}))
    assert result.data["mimeType"] == "image/jpeg"
    assert base64.b64decode(result.data["screenshot"]) == b"\xff\xd8jpeg"


async def test_queries_return_data():
    handle = FakeBrowserHandle()
    handle.current = "https://target.test/signin"
    url = await execute_action(handle, parse_action("getUrl"))
    title = await execute_action(handle, parse_action("getTitle"))
    assert url.data == {"url": "https://target.test/signin"}
    assert title.data == {"title": "Fake Title"}


async def test_page_errors_become_failed_results():
    handle = FakeBrowserHandle()
    result = await execute_action(handle, parse_action("click", {"selector": "#missing"}))
    assert not result.success
    assert "#missing" in result.message


async def test_closed_page_raises():
    handle = FakeBrowserHandle()
    handle.closed = True
    with pytest.raises(PageUnavailable):
        await execute_action(handle, parse_action("getTitle"))
