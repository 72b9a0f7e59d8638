"""Per-session broadcast groups of live viewers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

from ..models.session import ViewerEvent

logger = logging.getLogger(__name__)

VIEWER_QUEUE_SIZE = 256


class Viewer:
    """One connected viewer. Events queue up here until its transport drains them."""

    def __init__(self, viewer_id: str, queue_size: int = VIEWER_QUEUE_SIZE):
        self.viewer_id = viewer_id
        self.queue: asyncio.Queue[ViewerEvent] = asyncio.Queue(maxsize=queue_size)

    def deliver(self, event: ViewerEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.debug(f"Viewer {self.viewer_id} is lagging, dropped {event.event}")
            return False

    def drain(self) -> list[ViewerEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class ViewerHub:
    """Membership and at-most-once delivery, keyed by session token.

    Publishing is synchronous: events for one session reach every queue in
    the order they were published.
    """

    def __init__(self):
        self._viewers: dict[str, Viewer] = {}
        self._groups: dict[str, dict[str, Viewer]] = {}

    def connect(self, viewer_id: Optional[str] = None) -> Viewer:
        viewer_id = viewer_id or f"viewer-{uuid.uuid4().hex[:12]}"
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            viewer = Viewer(viewer_id)
            self._viewers[viewer_id] = viewer
        return viewer

    def disconnect(self, viewer_id: str) -> list[str]:
        """Forget a viewer and remove it from every group. Returns the tokens it left."""
        left = [token for token, members in self._groups.items() if viewer_id in members]
        for token in left:
            self.leave(token, viewer_id)
        self._viewers.pop(viewer_id, None)
        return left

    def join(self, session_token: str, viewer_id: str) -> bool:
        """Add the viewer to the session's group. Returns False if it was already a member."""
        viewer = self.connect(viewer_id)
        members = self._groups.setdefault(session_token, {})
        if viewer_id in members:
            return False
        members[viewer_id] = viewer
        logger.info(f"Viewer {viewer_id} joined {session_token}")
        return True

    def leave(self, session_token: str, viewer_id: str) -> bool:
        members = self._groups.get(session_token)
        if not members or viewer_id not in members:
            return False
        del members[viewer_id]
        if not members:
            del self._groups[session_token]
        logger.info(f"Viewer {viewer_id} left {session_token}")
        return True

    def members(self, session_token: str) -> list[str]:
        return list(self._groups.get(session_token, {}))

    def count(self, session_token: str) -> int:
        return len(self._groups.get(session_token, {}))

    def is_member(self, session_token: str, viewer_id: str) -> bool:
        return viewer_id in self._groups.get(session_token, {})

    def publish(self, session_token: str, event: str, data: Optional[dict[str, Any]] = None) -> int:
        """Deliver an event to the session's current members. Returns how many accepted it."""
        message = ViewerEvent(event=event, session_token=session_token, data=data or {})
        delivered = 0
        for viewer in list(self._groups.get(session_token, {}).values()):
            if viewer.deliver(message):
                delivered += 1
        return delivered

    def send(self, viewer_id: str, session_token: str, event: str, data: Optional[dict[str, Any]] = None) -> bool:
        """Deliver an event to one viewer only."""
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            return False
        return viewer.deliver(ViewerEvent(event=event, session_token=session_token, data=data or {}))

    def drop_group(self, session_token: str):
        self._groups.pop(session_token, None)
