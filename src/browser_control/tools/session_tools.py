"""MCP tools for operating browser sessions through the control plane."""

from __future__ import annotations

import json

import httpx

from ..config import CONTROL_PLANE_URL
from ..constants import API_PREFIX


async def _call_control_plane(method: str, path: str, json_body: dict | None = None) -> dict:
    """Make a request to the control plane HTTP service."""
    url = f"{CONTROL_PLANE_URL}{API_PREFIX}{path}"
    try:
        async with httpx.AsyncClient(timeout=120.0) as client:
            if method == "GET":
                resp = await client.get(url)
            elif method == "DELETE":
                resp = await client.delete(url)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                try:
                    data = resp.json()
                except ValueError:
                    data = {}
                return {"error": data.get("error") or data.get("message") or f"HTTP {resp.status_code}"}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": "Control plane is not reachable at "
            f"{CONTROL_PLANE_URL}. It should auto-start with the MCP server. "
            "If running standalone: browser-control-plane"
        }
    except httpx.TimeoutException:
        return {"error": "Control plane timed out. The browser may still be launching."}
    except Exception as e:
        return {"error": f"Failed to connect to control plane: {e}"}


async def start_session(campaign_id: str, session_token: str = "", target_urls: list[str] | None = None) -> str:
    """Launch a browser session for a campaign.

    Args:
        campaign_id: Campaign the session belongs to.
        session_token: Reuse a specific token; generated when empty.
        target_urls: Ordered candidate URLs; the configured defaults when omitted.

    Returns:
        Session summary including its bind URL.
    """
    body: dict = {"campaignId": campaign_id}
    if session_token:
        body["sessionToken"] = session_token
    if target_urls:
        body["targetUrls"] = target_urls

    result = await _call_control_plane("POST", "/create-session", body)
    if "error" in result:
        return f"Error: {result['error']}"

    session = result.get("session", {})
    return (
        f"Session {session.get('sessionToken')} is {session.get('state')} at "
        f"{session.get('currentUrl') or 'about:blank'}.\n"
        f"Bind URL: {session.get('bindUrl')}"
    )


async def session_status(session_token: str) -> str:
    """Return the JSON status of one session."""
    result = await _call_control_plane("GET", f"/session/{session_token}")
    if "error" in result:
        return f"Error: {result['error']}"
    return json.dumps(result.get("session", {}), indent=2)


async def list_sessions() -> str:
    result = await _call_control_plane("GET", "/sessions")
    if "error" in result:
        return f"Error: {result['error']}"
    if not result.get("count"):
        return "No live sessions."
    return json.dumps(result.get("sessions", []), indent=2)


async def execute_action(session_token: str, action: str, params: dict | None = None) -> str:
    """Apply a remote-control action (click, type, key, navigate, ...) to a session."""
    result = await _call_control_plane(
        "POST", f"/session/{session_token}/action", {"action": action, "params": params or {}}
    )
    if "error" in result:
        return f"Error: {result['error']}"

    outcome = result.get("result", {})
    if not outcome.get("success"):
        return f"Action failed: {outcome.get('message', 'unknown error')}"
    if outcome.get("data") is not None:
        return json.dumps(outcome["data"], indent=2)
    return outcome.get("message") or "Action executed."


async def close_session(session_token: str) -> str:
    result = await _call_control_plane("DELETE", f"/session/{session_token}")
    if "error" in result:
        return f"Error: {result['error']}"
    return result.get("message", "Session closed.")
