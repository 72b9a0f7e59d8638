"""Failure taxonomy for the browser control plane."""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for control-plane failures."""


class LaunchFailure(ControlPlaneError):
    """No browser process could be started, even with the minimal configuration."""


class NavigationFailure(ControlPlaneError):
    """One candidate URL could not be reached. Absorbed by the navigation controller."""


class PageUnavailable(ControlPlaneError):
    """The session's page is closed or its browser process has gone away."""


class ActionFailure(ControlPlaneError):
    """An action could not be applied. Reported as a structured result, never raised to callers."""


class SessionNotFound(ControlPlaneError):
    """The token is unknown both in memory and in durable storage."""

    def __init__(self, session_token: str):
        super().__init__(f"Session not found: {session_token}")
        self.session_token = session_token


class RestoreFailure(ControlPlaneError):
    """Relaunch during restoration failed. Recovered by creating a fresh session."""
