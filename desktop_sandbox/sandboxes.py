"""
Sandbox backend strategies.

Each backend knows how to start, detect, stop and locate one kind of
virtualized desktop. Launching is fire-and-forget: readiness is always
confirmed separately through discovery and probing.
"""
import json
import logging
import subprocess
import sys
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional

import anyio

from .cancel import CancelToken
from .discovery import MARKER_FILE, poll, read_marker
from .errors import SandboxLaunchError
from .models import Endpoint, SandboxConfig, SandboxType, VNCConfig

logger = logging.getLogger(__name__)

DEFAULT_VM_NAME = "Desktop-Sandbox"
GUEST_FOLDER = r"C:\Sandbox"

# Runs inside Windows Sandbox at logon. Placeholders are substituted by
# render_setup_script().
SETUP_SCRIPT = r"""$ErrorActionPreference = "Continue"
$shared = "__GUEST_FOLDER__"
$log = Join-Path $shared "setup.log"

function Write-Log($message) {
    "$(Get-Date -Format o) $message" | Add-Content -Path $log
}

Write-Log "Desktop sandbox setup starting"

$installer = Join-Path $shared "tightvnc.msi"
if (Test-Path $installer) {
    Write-Log "Installing VNC server"
    Start-Process msiexec.exe -Wait -ArgumentList @(
        "/i", "`"$installer`"", "/quiet", "/norestart", "ADDLOCAL=Server",
        "SET_USEVNCAUTHENTICATION=1", "VALUE_OF_USEVNCAUTHENTICATION=1",
        "SET_PASSWORD=1", "VALUE_OF_PASSWORD=__PASSWORD__",
        "SET_RFBPORT=1", "VALUE_OF_RFBPORT=__PORT__"
    )
}

__STARTUP_SCRIPT__

$ip = $null
for ($i = 0; $i -lt 30 -and -not $ip; $i++) {
    $ip = (Get-NetIPAddress -AddressFamily IPv4 |
        Where-Object { $_.IPAddress -ne "127.0.0.1" -and $_.PrefixOrigin -ne "WellKnown" } |
        Select-Object -First 1).IPAddress
    if (-not $ip) { Start-Sleep -Seconds 1 }
}

Write-Log "Guest address $ip"
@{ ip = $ip; port = __PORT__ } | ConvertTo-Json | Set-Content -Path (Join-Path $shared "__MARKER__") -Encoding UTF8
Write-Log "Desktop sandbox setup complete"
"""


def render_setup_script(vnc: VNCConfig, startup_script: Optional[str] = None) -> str:
    replacements = {
        "__GUEST_FOLDER__": GUEST_FOLDER,
        "__PASSWORD__": vnc.password,
        "__PORT__": str(vnc.port),
        "__MARKER__": MARKER_FILE,
        "__STARTUP_SCRIPT__": startup_script or "",
    }
    script = SETUP_SCRIPT
    for placeholder, value in replacements.items():
        script = script.replace(placeholder, value)
    return script


def render_manifest(workdir: Path, config: SandboxConfig) -> str:
    """Windows Sandbox .wsb manifest mapping ``workdir`` into the guest."""
    def toggle(enabled: bool) -> str:
        return "Enable" if enabled else "Disable"

    root = ET.Element("Configuration")
    ET.SubElement(root, "VGpu").text = toggle(config.enable_gpu)
    ET.SubElement(root, "Networking").text = toggle(config.enable_network)
    ET.SubElement(root, "MemoryInMB").text = str(config.memory_mb)
    folders = ET.SubElement(root, "MappedFolders")
    folder = ET.SubElement(folders, "MappedFolder")
    ET.SubElement(folder, "HostFolder").text = str(workdir.resolve())
    ET.SubElement(folder, "SandboxFolder").text = GUEST_FOLDER
    ET.SubElement(folder, "ReadOnly").text = "false"
    logon = ET.SubElement(root, "LogonCommand")
    ET.SubElement(logon, "Command").text = (
        f"powershell.exe -ExecutionPolicy Bypass -File {GUEST_FOLDER}\\setup.ps1"
    )
    ET.indent(root)
    return ET.tostring(root, encoding="unicode")


async def _run(command: list[str]) -> str:
    """Run a short-lived backend command, raising SandboxLaunchError on failure."""
    logger.debug(f"Running: {' '.join(command)}")
    try:
        result = await anyio.run_process(command)
    except FileNotFoundError:
        raise SandboxLaunchError(f"{command[0]} not found on this host") from None
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
        raise SandboxLaunchError(f"{command[0]} failed (exit {e.returncode}): {stderr}") from e
    return result.stdout.decode("utf-8", errors="replace")


async def _query(command: list[str]) -> Optional[str]:
    """Run a status query; None when the command is unavailable or fails."""
    try:
        return await _run(command)
    except SandboxLaunchError as e:
        logger.debug(f"Query failed: {e}")
        return None


def _spawn_detached(command: list[str], cwd: Optional[Path] = None) -> subprocess.Popen:
    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    try:
        return subprocess.Popen(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **kwargs,
        )
    except OSError as e:
        raise SandboxLaunchError(f"Failed to start {command[0]}: {e}") from e


def _ps(script: str) -> list[str]:
    return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class SandboxStrategy:
    """Common interface for the four sandbox backends."""

    type: SandboxType
    host_platform: Optional[str] = None

    def check_host(self) -> None:
        if self.host_platform and not sys.platform.startswith(self.host_platform):
            raise SandboxLaunchError(
                f"{self.type.value} sandboxes are not supported on {sys.platform}"
            )

    def vm_name(self, config: SandboxConfig) -> str:
        return config.config_path or DEFAULT_VM_NAME

    async def launch(self, session_id: str, config: SandboxConfig, token: CancelToken, *,
                     workdir: Path, vnc: VNCConfig) -> Optional[subprocess.Popen]:
        raise NotImplementedError

    async def is_running(self, config: SandboxConfig) -> bool:
        raise NotImplementedError

    async def stop(self, config: SandboxConfig, process: Optional[subprocess.Popen] = None) -> None:
        raise NotImplementedError

    async def query_address(self, config: SandboxConfig) -> Optional[str]:
        """Ask the hypervisor for the guest address, if it can tell."""
        return None

    async def discover(self, config: SandboxConfig, workdir: Path, *, default_port: int,
                       timeout: float, interval: float, token: CancelToken) -> Optional[Endpoint]:
        """Poll the guest's discovery file and the hypervisor until an address shows up."""
        marker = workdir / MARKER_FILE

        async def check() -> Optional[Endpoint]:
            data = read_marker(marker, default_port)
            if data is not None:
                return Endpoint(data["ip"], data["port"])
            address = await self.query_address(config)
            if address:
                return Endpoint(address, default_port)
            return None

        return await poll(check, timeout=timeout, interval=interval, token=token,
                          description=f"{self.type.value} guest address")


class WindowsSandboxStrategy(SandboxStrategy):
    type = SandboxType.WINDOWS_SANDBOX
    host_platform = "win32"
    process_names = ("WindowsSandbox.exe", "WindowsSandboxClient.exe", "WindowsSandboxRemoteSession.exe")

    async def launch(self, session_id, config, token, *, workdir, vnc):
        self.check_host()
        token.raise_if_cancelled()
        if config.config_path:
            manifest = Path(config.config_path)
            if not manifest.is_file():
                raise SandboxLaunchError(f"Sandbox config not found: {manifest}")
        else:
            (workdir / "setup.ps1").write_text(
                render_setup_script(vnc, config.startup_script), encoding="utf-8"
            )
            manifest = workdir / "sandbox.wsb"
            manifest.write_text(render_manifest(workdir, config), encoding="utf-8")

        logger.info(f"[{session_id[:8]}] Launching Windows Sandbox with {manifest}")
        return _spawn_detached(["WindowsSandbox.exe", str(manifest)], cwd=workdir)

    async def is_running(self, config):
        output = await _query(["tasklist", "/FO", "CSV", "/NH"])
        if not output:
            return False
        lowered = output.lower()
        return any(f'"{name.lower()}"' in lowered for name in self.process_names)

    async def stop(self, config, process=None):
        if process is not None and process.poll() is None:
            process.terminate()
        for name in self.process_names:
            await _query(["taskkill", "/F", "/IM", name])


class HyperVStrategy(SandboxStrategy):
    type = SandboxType.HYPERV
    host_platform = "win32"

    async def launch(self, session_id, config, token, *, workdir, vnc):
        self.check_host()
        name = self.vm_name(config)
        logger.info(f"[{session_id[:8]}] Starting Hyper-V VM '{name}'")
        await token.run(_run, _ps(f"Start-VM -Name {_ps_quote(name)}"))
        return None

    async def is_running(self, config):
        output = await _query(_ps(f"(Get-VM -Name {_ps_quote(self.vm_name(config))}).State"))
        return bool(output) and output.strip().lower() == "running"

    async def stop(self, config, process=None):
        await _run(_ps(f"Stop-VM -Name {_ps_quote(self.vm_name(config))} -Force"))

    async def query_address(self, config):
        output = await _query(_ps(
            f"(Get-VMNetworkAdapter -VMName {_ps_quote(self.vm_name(config))}).IPAddresses "
            "| Where-Object { $_ -match '^\\d+\\.\\d+\\.\\d+\\.\\d+$' } | Select-Object -First 1"
        ))
        address = (output or "").strip()
        return address or None


class VirtualBoxStrategy(SandboxStrategy):
    type = SandboxType.VIRTUALBOX

    async def launch(self, session_id, config, token, *, workdir, vnc):
        name = self.vm_name(config)
        logger.info(f"[{session_id[:8]}] Starting VirtualBox VM '{name}' headless")
        await token.run(_run, ["VBoxManage", "startvm", name, "--type", "headless"])
        return None

    async def is_running(self, config):
        output = await _query(["VBoxManage", "list", "runningvms"])
        return bool(output) and f'"{self.vm_name(config)}"' in output

    async def stop(self, config, process=None):
        await _run(["VBoxManage", "controlvm", self.vm_name(config), "poweroff"])

    async def query_address(self, config):
        output = await _query([
            "VBoxManage", "guestproperty", "get", self.vm_name(config),
            "/VirtualBox/GuestInfo/Net/0/V4/IP",
        ])
        if not output or not output.startswith("Value:"):
            return None
        return output.split(":", 1)[1].strip() or None


class TartStrategy(SandboxStrategy):
    type = SandboxType.TART
    host_platform = "darwin"

    def vm_name(self, config):
        return config.config_path or "desktop-macos"

    async def launch(self, session_id, config, token, *, workdir, vnc):
        self.check_host()
        name = self.vm_name(config)
        logger.info(f"[{session_id[:8]}] Starting Tart VM '{name}'")
        # --no-graphics keeps the VM headless; the guest's screen sharing serves VNC
        return _spawn_detached(["tart", "run", "--no-graphics", name], cwd=workdir)

    async def is_running(self, config):
        output = await _query(["tart", "list", "--format", "json"])
        if not output:
            return False
        try:
            vms = json.loads(output)
        except json.JSONDecodeError:
            return False
        name = self.vm_name(config)
        return any(vm.get("Name") == name and str(vm.get("State", "")).lower() == "running" for vm in vms)

    async def stop(self, config, process=None):
        await _run(["tart", "stop", self.vm_name(config)])
        if process is not None and process.poll() is None:
            process.terminate()

    async def query_address(self, config):
        output = await _query(["tart", "ip", self.vm_name(config)])
        address = (output or "").strip()
        return address or None


STRATEGIES: dict[SandboxType, type[SandboxStrategy]] = {
    SandboxType.WINDOWS_SANDBOX: WindowsSandboxStrategy,
    SandboxType.HYPERV: HyperVStrategy,
    SandboxType.VIRTUALBOX: VirtualBoxStrategy,
    SandboxType.TART: TartStrategy,
}


def default_strategies() -> dict[SandboxType, SandboxStrategy]:
    return {sandbox_type: cls() for sandbox_type, cls in STRATEGIES.items()}
