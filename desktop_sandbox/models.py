"""
Data model for desktop sessions.

Configuration objects are frozen; snapshots handed to callers are built
fresh by the owning session instance on every read.
"""
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SandboxType(str, Enum):
    WINDOWS_SANDBOX = "windows-sandbox"
    HYPERV = "hyperv"
    VIRTUALBOX = "virtualbox"
    TART = "tart"


class DesktopPlatform(str, Enum):
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"


class SessionStatus(str, Enum):
    PROVISIONING = "provisioning"
    STARTING = "starting"
    ACTIVE = "active"
    BUSY = "busy"
    ERROR = "error"
    CLOSED = "closed"


CONNECTED_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.BUSY})


class ActionType(str, Enum):
    CLICK = "click"
    DOUBLE_CLICK = "double_click"
    RIGHT_CLICK = "right_click"
    MOVE = "move"
    DRAG = "drag"
    SCROLL = "scroll"
    TYPE = "type"
    KEY = "key"
    HOTKEY = "hotkey"
    WAIT = "wait"
    SCREENSHOT = "screenshot"


CLICK_ACTIONS = frozenset({ActionType.CLICK, ActionType.DOUBLE_CLICK, ActionType.RIGHT_CLICK})


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int


@dataclass(frozen=True)
class PixelFormat:
    bits_per_pixel: int = 32
    depth: int = 24
    big_endian: bool = False
    true_colour: bool = True
    red_max: int = 255
    green_max: int = 255
    blue_max: int = 255
    red_shift: int = 0
    green_shift: int = 8
    blue_shift: int = 16

    @property
    def bytes_per_pixel(self) -> int:
        return self.bits_per_pixel // 8


@dataclass(frozen=True)
class SandboxConfig:
    type: SandboxType = SandboxType.WINDOWS_SANDBOX
    platform: DesktopPlatform = DesktopPlatform.WINDOWS
    memory_mb: int = 4096
    cpus: int = 2
    enable_gpu: bool = True
    enable_network: bool = True
    # VM name for hypervisor backends, .wsb override for Windows Sandbox
    config_path: Optional[str] = None
    startup_script: Optional[str] = None


@dataclass(frozen=True)
class VNCConfig:
    host: str = "localhost"
    port: int = 5900
    password: str = "desktop"
    connect_timeout: float = 30.0


@dataclass(frozen=True)
class SessionConfig:
    """Request to provision a sandbox and attach a session to it.

    ``sandbox`` and ``vnc`` hold only the caller's overrides; anything left
    as ``None`` falls back to the manager defaults.
    """
    name: Optional[str] = None
    sandbox: Optional[dict] = None
    vnc: Optional[dict] = None
    viewport: Optional[Viewport] = None
    computer_use_provider: Optional[str] = None
    # seconds between background captures; None uses the manager default, 0 disables
    screenshot_interval: Optional[float] = None


@dataclass(frozen=True)
class ResumeConfig:
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    password: Optional[str] = None
    sandbox_type: Optional[SandboxType] = None
    computer_use_provider: Optional[str] = None
    screenshot_interval: Optional[float] = None


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int


@dataclass
class SandboxInfo:
    type: SandboxType
    platform: DesktopPlatform
    status: str = "starting"
    vnc_port: Optional[int] = None
    started_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ConnectionInfo:
    connected: bool
    host: str
    port: int
    width: int = 0
    height: int = 0
    pixel_format: Optional[PixelFormat] = None
    server_name: str = ""


@dataclass(frozen=True)
class DesktopSession:
    id: str
    name: str
    status: SessionStatus
    sandbox: SandboxInfo
    viewport: Viewport
    created_at: datetime
    vnc: Optional[ConnectionInfo] = None
    last_screenshot: Optional[str] = None
    last_screenshot_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self, include_screenshot: bool = False) -> dict:
        data = to_jsonable(self)
        if not include_screenshot:
            data.pop("last_screenshot", None)
        return data


@dataclass
class DesktopAction:
    type: ActionType
    x: Optional[int] = None
    y: Optional[int] = None
    text: Optional[str] = None
    key: Optional[str] = None
    keys: Optional[list[str]] = None
    direction: Optional[str] = None
    amount: Optional[int] = None
    end_x: Optional[int] = None
    end_y: Optional[int] = None
    # milliseconds
    duration: Optional[int] = None
    action_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "DesktopAction":
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        kwargs["type"] = ActionType(kwargs["type"])
        return cls(**kwargs)


@dataclass(frozen=True)
class ActionResult:
    success: bool
    action: DesktopAction
    screenshot: Optional[str] = None
    error: Optional[str] = None
    # milliseconds
    duration: Optional[int] = None


@dataclass(frozen=True)
class InstructionContext:
    conversation_id: Optional[str] = None
    continuation_tokens: Optional[dict] = None
    max_steps: int = 10


@dataclass(frozen=True)
class InstructionResult:
    success: bool
    steps: int
    actions: list = field(default_factory=list)
    result: Optional[str] = None
    error: Optional[str] = None
    final_screenshot: Optional[str] = None


@dataclass(frozen=True)
class ClickMarker:
    id: str
    x: int
    y: int
    type: str
    number: int
    timestamp: float


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-friendly values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
