"""Session manager configuration."""
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from .models import SandboxConfig, SandboxType, Viewport, VNCConfig

ENV_PREFIX = "DESKTOP_SANDBOX_"


def _default_sessions_root() -> Path:
    return Path(tempfile.gettempdir()) / "desktop-sandbox" / "sessions"


@dataclass(frozen=True)
class ManagerConfig:
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    vnc: VNCConfig = field(default_factory=VNCConfig)
    viewport: Viewport = field(default_factory=lambda: Viewport(1024, 768))
    computer_use_provider: Optional[str] = None
    screenshot_interval: float = 1.0

    # Per-session working directories and discovery records
    sessions_root: Path = field(default_factory=_default_sessions_root)

    tcp_wait_timeout: float = 60.0
    tcp_probe_timeout: float = 2.0
    tcp_retry_interval: float = 2.0
    discovery_timeout: float = 120.0
    discovery_interval: float = 2.0
    handshake_attempts: int = 5
    handshake_retry_interval: float = 3.0
    close_timeout: float = 5.0

    # Hyper-V default switch range
    scan_network: str = "172.16.0.0/12"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ManagerConfig":
        """Defaults overlaid with ``DESKTOP_SANDBOX_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        config = cls()
        sandbox, vnc = config.sandbox, config.vnc
        if get("TYPE"):
            sandbox = replace(sandbox, type=SandboxType(get("TYPE")))
        if get("VM_NAME"):
            sandbox = replace(sandbox, config_path=get("VM_NAME"))
        if get("VNC_HOST"):
            vnc = replace(vnc, host=get("VNC_HOST"))
        if get("VNC_PORT"):
            vnc = replace(vnc, port=int(get("VNC_PORT")))
        if get("VNC_PASSWORD"):
            vnc = replace(vnc, password=get("VNC_PASSWORD"))

        overrides = {"sandbox": sandbox, "vnc": vnc}
        if get("SESSIONS_ROOT"):
            overrides["sessions_root"] = Path(get("SESSIONS_ROOT")).expanduser()
        if get("SCAN_NETWORK"):
            overrides["scan_network"] = get("SCAN_NETWORK")
        if get("PROVIDER"):
            overrides["computer_use_provider"] = get("PROVIDER")
        if get("SCREENSHOT_INTERVAL"):
            overrides["screenshot_interval"] = float(get("SCREENSHOT_INTERVAL"))
        return replace(config, **overrides)
