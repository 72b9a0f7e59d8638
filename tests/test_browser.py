import socket
from unittest.mock import AsyncMock, MagicMock

import pytest

from browser_control.control_plane.browser import (
    BrowserHandle,
    LaunchConfig,
    PlaywrightLauncher,
    find_free_port,
    profile_dir_name,
)
from browser_control.control_plane.errors import LaunchFailure, PageUnavailable
from browser_control.control_plane.policy import FallbackPolicy


def _handle():
    context = MagicMock()
    context.close = AsyncMock()
    page = MagicMock()
    page.is_closed.return_value = False
    listeners = {}
    page.on.side_effect = lambda event, cb: listeners.setdefault(event, cb)
    context.on.side_effect = lambda event, cb: listeners.setdefault("context_" + event, cb)
    return BrowserHandle(context, page), context, page, listeners


def test_disconnect_fires_once():
    handle, _, page, listeners = _handle()
    seen = []
    handle.on_disconnect(lambda: seen.append(1))

    listeners["crash"](page)
    listeners["close"](page)

    assert seen == [1]
    assert handle.is_closed
    with pytest.raises(PageUnavailable):
        handle.url


async def test_close_is_idempotent_and_silent():
    handle, context, _, _ = _handle()
    seen = []
    handle.on_disconnect(lambda: seen.append(1))

    await handle.close()
    await handle.close()

    context.close.assert_awaited_once()
    assert seen == []
    with pytest.raises(PageUnavailable):
        await handle.screenshot()


async def test_no_debugging_url_without_port():
    handle, _, _, _ = _handle()
    assert await handle.debugging_url() is None


def test_main_frame_navigation_only():
    handle, _, page, listeners = _handle()
    urls = []
    handle.on_navigation(urls.append)

    main = page.main_frame
    main.url = "https://target.test/a"
    child = MagicMock()
    child.url = "https://ads.test/frame"

    listeners["framenavigated"](main)
    listeners["framenavigated"](child)

    assert urls == ["https://target.test/a"]


def test_profile_dir_name_is_filesystem_safe():
    assert profile_dir_name("a/b:c..d") == "a_b_c..d"


def test_find_free_port_skips_bound_ports():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        busy = sock.getsockname()[1]
        port = find_free_port((busy, busy + 20))
    assert port is not None
    assert port != busy


async def test_launcher_falls_back_then_gives_up(tmp_path, monkeypatch):
    policy = FallbackPolicy((LaunchConfig("full", ()), LaunchConfig("minimal", (), remote_debugging=False)))
    launcher = PlaywrightLauncher(profile_root=tmp_path, policy=policy)
    monkeypatch.setattr(launcher, "start", AsyncMock())

    tried = []

    async def failing(config, profile_dir, viewport):
        tried.append(config.name)
        raise RuntimeError("chromium exited")

    monkeypatch.setattr(launcher, "_launch_with", failing)
    with pytest.raises(LaunchFailure):
        await launcher.launch("tok", {"width": 800, "height": 600}, fresh=True)
    assert tried == ["full", "minimal"]

    sentinel = object()

    async def minimal_only(config, profile_dir, viewport):
        if config.name == "full":
            raise RuntimeError("no remote debugging")
        return sentinel

    monkeypatch.setattr(launcher, "_launch_with", minimal_only)
    assert await launcher.launch("tok", {"width": 800, "height": 600}, fresh=False) is sentinel
    assert (tmp_path / "tok").is_dir()


async def test_launcher_environment_errors_are_launch_failures(tmp_path, monkeypatch):
    launcher = PlaywrightLauncher(profile_root=tmp_path)
    monkeypatch.setattr(launcher, "start", AsyncMock(side_effect=RuntimeError("driver not installed")))

    with pytest.raises(LaunchFailure, match="driver not installed"):
        await launcher.launch("tok", {"width": 800, "height": 600}, fresh=True)


async def test_launcher_profile_errors_are_launch_failures(tmp_path, monkeypatch):
    blocker = tmp_path / "profiles"
    blocker.write_text("not a directory")
    launcher = PlaywrightLauncher(profile_root=blocker)
    monkeypatch.setattr(launcher, "start", AsyncMock())

    with pytest.raises(LaunchFailure):
        await launcher.launch("tok", {"width": 800, "height": 600}, fresh=False)


def test_page_console_and_errors_are_logged(caplog):
    _, _, _, listeners = _handle()
    message = MagicMock()
    message.type = "error"
    message.text = "Uncaught TypeError"

    with caplog.at_level("DEBUG", logger="browser_control.control_plane.browser"):
        listeners["console"](message)
        listeners["pageerror"](Exception("boom"))

    assert "Page console [error]: Uncaught TypeError" in caplog.text
    assert "Page error: boom" in caplog.text
