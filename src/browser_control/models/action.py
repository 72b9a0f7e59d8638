"""Remote-control actions as a closed set of tagged variants."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class ActionKind(str, Enum):
    CLICK = "click"
    TYPE = "type"
    KEY = "key"
    CLEAR = "clear"
    NAVIGATE = "navigate"
    SCROLL = "scroll"
    SCREENSHOT = "screenshot"
    GET_URL = "getUrl"
    GET_TITLE = "getTitle"
    FOCUS = "focus"


class _PointOrSelector(BaseModel):
    selector: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.selector and (self.x is None or self.y is None):
            raise ValueError("selector or x/y coordinates are required")
        return self


class ClickAction(_PointOrSelector):
    action: Literal["click"] = "click"


class FocusAction(_PointOrSelector):
    action: Literal["focus"] = "focus"


class TypeAction(BaseModel):
    action: Literal["type"] = "type"
    text: str = Field(min_length=1)
    selector: Optional[str] = None  # None types into the focused element


class KeyAction(BaseModel):
    action: Literal["key"] = "key"
    key: str = Field(min_length=1)


class ClearAction(BaseModel):
    action: Literal["clear"] = "clear"
    selector: str = Field(min_length=1)


class NavigateAction(BaseModel):
    action: Literal["navigate"] = "navigate"
    url: str = Field(min_length=1)


class ScrollAction(BaseModel):
    action: Literal["scroll"] = "scroll"
    x: float = 0
    y: float = 100


class ScreenshotAction(BaseModel):
    action: Literal["screenshot"] = "screenshot"
    fast: bool = False


class GetUrlAction(BaseModel):
    action: Literal["getUrl"] = "getUrl"


class GetTitleAction(BaseModel):
    action: Literal["getTitle"] = "getTitle"


Action = Annotated[
    Union[
        ClickAction,
        TypeAction,
        KeyAction,
        ClearAction,
        NavigateAction,
        ScrollAction,
        ScreenshotAction,
        GetUrlAction,
        GetTitleAction,
        FocusAction,
    ],
    Field(discriminator="action"),
]

_action_adapter = TypeAdapter(Action)


def parse_action(name: str, params: Optional[dict[str, Any]] = None) -> Action:
    """Build a typed action from its wire name and parameters.

    Raises pydantic.ValidationError for unknown names or bad parameters.
    """
    payload = dict(params or {})
    payload["action"] = name
    return _action_adapter.validate_python(payload)


class ActionResult(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[dict[str, Any]] = None
