"""Exception types raised by the desktop sandbox package."""


class DesktopError(RuntimeError):
    """Base class for every error raised by this package."""


class VNCConnectionError(DesktopError):
    """The remote framebuffer connection could not be established or was lost."""


class ConnectionTimeout(VNCConnectionError):
    pass


class AuthenticationError(VNCConnectionError):
    """The server rejected the shared secret. Never retried."""


class ProtocolError(VNCConnectionError):
    pass


class SandboxLaunchError(DesktopError):
    pass


class DiscoveryError(DesktopError):
    pass


class ProvisioningCancelled(DesktopError):
    """Provisioning was cancelled because the session was closed."""


class SessionNotFound(DesktopError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id

