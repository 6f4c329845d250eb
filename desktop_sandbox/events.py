"""
Desktop events.

Session instances emit these to their listener (the manager), which
republishes them to the external broadcaster. Every event carries the
session id and a timestamp.
"""
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

from .models import ActionResult, ClickMarker, DesktopAction, DesktopSession, to_jsonable


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class SessionCreated:
    session_id: str
    session: DesktopSession
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_session_created"


@dataclass(frozen=True)
class SessionUpdated:
    session_id: str
    updates: dict
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_session_updated"


@dataclass(frozen=True)
class SessionClosed:
    session_id: str
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_session_closed"


@dataclass(frozen=True)
class ScreenshotCaptured:
    session_id: str
    screenshot: str
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_screenshot"


@dataclass(frozen=True)
class ActionStarted:
    session_id: str
    action_id: str
    action: DesktopAction
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_action_started"


@dataclass(frozen=True)
class ActionCompleted:
    session_id: str
    action_id: str
    action: DesktopAction
    result: ActionResult
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_action_completed"


@dataclass(frozen=True)
class ClickMarkerPlaced:
    session_id: str
    marker: ClickMarker
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_click_marker"


@dataclass(frozen=True)
class StatusChanged:
    """Internal notification from a session instance to its manager."""
    session_id: str
    status: str
    error: Optional[str] = None
    timestamp: float = field(default_factory=_now)
    type: str = "desktop_status_changed"


DesktopEvent = Union[
    SessionCreated,
    SessionUpdated,
    SessionClosed,
    ScreenshotCaptured,
    ActionStarted,
    ActionCompleted,
    ClickMarkerPlaced,
]


class Broadcaster(Protocol):
    def broadcast(self, event: DesktopEvent) -> None:
        ...


def event_to_dict(event) -> dict:
    return to_jsonable(event)
