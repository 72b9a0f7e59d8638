import asyncio
from datetime import timedelta

import pytest

from browser_control.constants import PLACEHOLDER_URL
from browser_control.control_plane.errors import LaunchFailure, PageUnavailable, SessionNotFound
from browser_control.models.session import SessionState, utcnow

FORM = "application/x-www-form-urlencoded"


async def _settle(broker):
    """Wait for fire-and-forget persistence and cleanup tasks."""
    while broker._tasks:
        await asyncio.gather(*list(broker._tasks), return_exceptions=True)


async def test_create_launches_and_lands_on_target(broker, launcher, repo):
    info = await broker.create("tok", "camp")

    assert info.state == SessionState.ACTIVE
    assert info.is_active
    assert info.current_url == "https://target.test/signin"
    assert info.bind_url == "http://control.test/browser/tok"
    assert launcher.launches == [("tok", True)]
    assert '"tok"' in launcher.handles[0].init_scripts[0]
    assert (await repo.get_record("tok")).campaign_id == "camp"


async def test_create_twice_keeps_one_browser(broker, launcher):
    await broker.create("tok", "camp")
    await broker.create("tok", "camp")
    assert len(launcher.launches) == 1
    assert len(broker.list_sessions()) == 1


async def test_concurrent_creates_for_one_token_share_a_browser(broker, launcher):
    await asyncio.gather(broker.create("tok", "camp"), broker.create("tok", "camp"))
    assert len(launcher.live()) == 1


async def test_sessions_are_independent(broker, launcher):
    await broker.create("a", "camp")
    await broker.create("b", "camp")

    await broker.close("a")

    assert broker.lookup("a") is None
    assert broker.lookup("b").is_active
    assert launcher.handles[0].closed
    assert not launcher.handles[1].closed


async def test_close_is_idempotent(broker, launcher):
    await broker.create("tok", "camp")
    assert await broker.close("tok") is True
    assert await broker.close("tok") is False
    assert launcher.handles[0].close_count == 1


async def test_unreachable_targets_leave_placeholder(broker, launcher):
    launcher.reachable = set()
    info = await broker.create("tok", "camp", target_urls=["https://a.test/", "https://b.test/"])
    assert info.is_active
    assert info.current_url == PLACEHOLDER_URL


async def test_launch_failure_surfaces_and_leaves_nothing(broker, launcher):
    launcher.fail_next = 1
    with pytest.raises(LaunchFailure):
        await broker.create("tok", "camp")
    assert broker.lookup("tok") is None


async def test_restore_unknown_token(broker):
    with pytest.raises(SessionNotFound):
        await broker.get_or_restore("never-created")


async def test_restore_reuses_profile_and_campaign(broker, launcher):
    await broker.create("tok", "camp-7")
    await broker.close("tok")

    info = await broker.get_or_restore("tok")

    assert info.is_active
    assert info.campaign_id == "camp-7"
    assert launcher.launches == [("tok", True), ("tok", False)]


async def test_failed_restore_falls_back_to_fresh_session(broker, launcher):
    await broker.create("tok", "camp")
    await broker.close("tok")
    launcher.fail_next = 1

    info = await broker.get_or_restore("tok")

    assert info.is_active
    assert launcher.launches == [("tok", True), ("tok", False), ("tok", True)]


async def test_unexpected_launcher_error_is_a_launch_failure(broker, launcher):
    launcher.error = RuntimeError("playwright driver missing")
    with pytest.raises(LaunchFailure):
        await broker.create("tok", "camp")
    assert broker.lookup("tok") is None
    assert broker.list_sessions() == []

    # The token is not wedged: the next create launches normally
    info = await broker.create("tok", "camp")
    assert info.is_active


async def test_restore_falls_back_when_relaunch_raises_unexpectedly(broker, launcher):
    await broker.create("tok", "camp")
    await broker.close("tok")
    launcher.error = OSError("profile directory is read-only")

    info = await broker.get_or_restore("tok")

    assert info.is_active
    assert launcher.launches == [("tok", True), ("tok", False), ("tok", True)]


async def test_unknown_tokens_leave_no_locks_behind(broker):
    for n in range(1000):
        with pytest.raises(SessionNotFound):
            await broker.get_or_restore(f"unknown-{n}")
    assert broker._locks == {}
    assert broker._lock_users == {}


async def test_locks_are_released_with_their_session(broker):
    await broker.create("tok", "camp")
    await broker.close("tok")
    await broker.close("tok")
    assert broker._locks == {}


async def test_live_session_is_returned_without_relaunch(broker, launcher):
    await broker.create("tok", "camp")
    await broker.get_or_restore("tok")
    assert len(launcher.launches) == 1


async def test_sweep_closes_old_sessions_even_when_watched(broker):
    await broker.create("old", "camp")
    viewer = broker.hub.connect("v")
    broker.hub.join("old", "v")

    closed = await broker.sweep(timedelta(hours=4), now=utcnow() + timedelta(hours=5))

    assert closed == ["old"]
    assert broker.lookup("old") is None
    assert "sessionClosed" in [e.event for e in viewer.drain()]
    assert broker.hub.count("old") == 0


async def test_sweep_keeps_young_sessions(broker):
    await broker.create("young", "camp")
    assert await broker.sweep(timedelta(hours=4)) == []
    assert broker.lookup("young").is_active


async def test_unknown_action_is_a_failed_result(broker):
    await broker.create("tok", "camp")
    viewer = broker.hub.connect("v")
    broker.hub.join("tok", "v")

    result = await broker.execute_action("tok", "explode", {})

    assert not result.success
    assert result.message == "Unknown action: explode"
    assert broker.lookup("tok").is_active
    assert [e.event for e in viewer.drain()] == ["actionExecuted"]


async def test_invalid_params_are_a_failed_result(broker):
    await broker.create("tok", "camp")
    result = await broker.execute_action("tok", "click", {})
    assert not result.success
    assert result.message.startswith("Invalid parameters for click")


async def test_malformed_action_fields_are_failed_results(broker):
    await broker.create("tok", "camp")

    result = await broker.execute_action("tok", ["click"], {"selector": "#a"})
    assert not result.success
    assert result.message.startswith("Unknown action")

    result = await broker.execute_action("tok", "click", "abc")
    assert not result.success
    assert result.message == "Invalid parameters for click: params must be an object"

    result = await broker.execute_action("tok", {"kind": "click"}, None)
    assert not result.success
    assert broker.lookup("tok").is_active


async def test_action_on_unknown_token(broker):
    with pytest.raises(SessionNotFound):
        await broker.execute_action("missing", "getUrl")


async def test_form_login_is_captured_exactly_once(broker, launcher, repo):
    await broker.create("tok", "camp")
    viewer = broker.hub.connect("v")
    broker.hub.join("tok", "v")

    launcher.handles[0].emit_request(
        "POST",
        "https://accounts.target.test/v3/signin",
        FORM,
        "email=foo@bar.com&password=hunter2",
    )
    await _settle(broker)

    creds = broker.credentials("tok")
    assert len(creds) == 1
    assert creds[0].email_or_username == "foo@bar.com"
    assert creds[0].password == "hunter2"
    assert creds[0].capture_method == "network"

    events = viewer.drain()
    assert [e.event for e in events] == ["credentialsCaptured"]
    assert events[0].data["credentials"] == {"emailOrUsername": "foo@bar.com", "password": "hunter2"}
    assert len(await repo.list_credentials("tok")) == 1


async def test_unrelated_requests_capture_nothing(broker, launcher):
    await broker.create("tok", "camp")
    launcher.handles[0].emit_request("POST", "https://cdn.target.test/log", FORM, "password=x")
    launcher.handles[0].emit_request("GET", "https://accounts.target.test/signin", FORM, "password=x")
    assert broker.credentials("tok") == []


async def test_navigation_updates_session_and_viewers(broker, launcher):
    await broker.create("tok", "camp")
    viewer = broker.hub.connect("v")
    broker.hub.join("tok", "v")

    launcher.handles[0].emit_navigation("https://target.test/next")

    assert broker.lookup("tok").current_url == "https://target.test/next"
    assert [h.url for h in broker.history("tok")] == ["https://target.test/next"]
    event = viewer.drain()[0]
    assert event.event == "pageNavigation"
    assert event.data["url"] == "https://target.test/next"


async def test_browser_crash_removes_session(broker, launcher):
    await broker.create("tok", "camp")
    launcher.handles[0].crash()
    await _settle(broker)
    assert broker.lookup("tok") is None


async def test_dead_page_on_screenshot_closes_session(broker, launcher):
    await broker.create("tok", "camp")
    launcher.handles[0].closed = True

    with pytest.raises(PageUnavailable):
        await broker.screenshot("tok")
    assert broker.lookup("tok") is None


async def test_instrumentation_reports(broker):
    await broker.create("tok", "camp")
    viewer = broker.hub.connect("v")
    broker.hub.join("tok", "v")

    broker.report_input("tok", "password", "Passwd", "https://target.test/signin")
    broker.report_click("tok", {"tag": "BUTTON", "id": "next"}, "https://target.test/signin")
    captured = broker.report_form("tok", {"email": "erin@example.com", "pass": "pw"}, "https://target.test/signin")
    await _settle(broker)

    assert captured.capture_method == "form_capture"
    events = viewer.drain()
    assert [e.event for e in events] == ["inputCaptured", "clickTracked", "credentialsCaptured"]
    assert "value" not in events[0].data

    with pytest.raises(SessionNotFound):
        broker.report_click("missing", {}, "")
