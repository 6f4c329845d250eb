"""
Disposable desktop sandboxes driven over VNC.

The :class:`SessionManager` launches or locates a sandbox, connects an RFB
client to it and exposes screenshots, input actions and Computer Use
instruction loops per session.
"""
from .config import ManagerConfig
from .errors import (
    AuthenticationError,
    ConnectionTimeout,
    DesktopError,
    DiscoveryError,
    ProtocolError,
    ProvisioningCancelled,
    SandboxLaunchError,
    SessionNotFound,
    VNCConnectionError,
)
from .manager import SessionManager
from .models import (
    ActionResult,
    ActionType,
    DesktopAction,
    DesktopPlatform,
    DesktopSession,
    InstructionContext,
    InstructionResult,
    ResumeConfig,
    SandboxConfig,
    SandboxType,
    SessionConfig,
    SessionStatus,
    Viewport,
    VNCConfig,
)
from .rfb import RFBClient
from .session import DesktopSessionInstance

__version__ = "0.1.0"

__all__ = [
    "ActionResult",
    "ActionType",
    "AuthenticationError",
    "ConnectionTimeout",
    "DesktopAction",
    "DesktopError",
    "DesktopPlatform",
    "DesktopSession",
    "DesktopSessionInstance",
    "DiscoveryError",
    "InstructionContext",
    "InstructionResult",
    "ManagerConfig",
    "ProtocolError",
    "ProvisioningCancelled",
    "RFBClient",
    "ResumeConfig",
    "SandboxConfig",
    "SandboxLaunchError",
    "SandboxType",
    "SessionConfig",
    "SessionManager",
    "SessionNotFound",
    "SessionStatus",
    "VNCConfig",
    "Viewport",
]
