"""
Session manager.

Turns a declarative session request into a live desktop session: reuses or
launches a sandbox backend, discovers its address, waits for the VNC port
and connects, retrying the handshake while the guest finishes booting. Owns
every backend process handle and per-session directory, and republishes
session events to an optional broadcaster.
"""
import dataclasses
import logging
import shutil
import subprocess
from contextlib import AsyncExitStack
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import anyio
from anyio.abc import TaskGroup

from . import discovery
from .cancel import CancelToken
from .config import ManagerConfig
from .errors import (
    AuthenticationError,
    DesktopError,
    DiscoveryError,
    ProvisioningCancelled,
    SandboxLaunchError,
    SessionNotFound,
    VNCConnectionError,
)
from .events import Broadcaster, SessionClosed, SessionCreated, SessionUpdated, StatusChanged
from .models import (
    CONNECTED_STATUSES,
    ActionResult,
    DesktopAction,
    DesktopPlatform,
    DesktopSession,
    Endpoint,
    InstructionContext,
    InstructionResult,
    ResumeConfig,
    SandboxConfig,
    SandboxInfo,
    SandboxType,
    SessionConfig,
    SessionStatus,
    VNCConfig,
)
from .providers import ComputerUseProvider, load_provider
from .sandboxes import SandboxStrategy, default_strategies
from .session import DesktopSessionInstance

logger = logging.getLogger(__name__)


def _merge(base, overrides: Optional[dict]):
    """Apply non-None overrides to a frozen config dataclass, coercing enum fields."""
    if not overrides:
        return base
    fields = {f.name: f for f in dataclasses.fields(base)}
    changes = {}
    for key, value in overrides.items():
        if value is None or key not in fields:
            continue
        current = getattr(base, key)
        if isinstance(current, Enum) and not isinstance(value, Enum):
            value = type(current)(value)
        changes[key] = value
    return dataclasses.replace(base, **changes)


def _interval(requested: Optional[float], default: float) -> float:
    return default if requested is None else requested


class SessionManager:
    """
    Owner of all desktop sessions.

    Use as an async context manager; the task group it opens runs every
    session's background work, and leaving the block closes all sessions::

        async with SessionManager(ManagerConfig.from_env()) as manager:
            session = await manager.create_session()
    """

    def __init__(self, config: Optional[ManagerConfig] = None,
                 broadcaster: Optional[Broadcaster] = None,
                 strategies: Optional[dict[SandboxType, SandboxStrategy]] = None,
                 provider_factory: Optional[Callable[[str], Optional[ComputerUseProvider]]] = None):
        self.config = config or ManagerConfig()
        self._broadcaster = broadcaster
        self._strategies = strategies if strategies is not None else default_strategies()
        self._provider_factory = provider_factory or load_provider

        self._sessions: dict[str, DesktopSessionInstance] = {}
        self._processes: dict[str, Optional[subprocess.Popen]] = {}
        self._workdirs: dict[str, Path] = {}

        # Only sessions this manager launched or reused a backend for
        self._backends: dict[str, SandboxConfig] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._closing: set[str] = set()
        self._create_lock = anyio.Lock()
        self._exit_stack: Optional[AsyncExitStack] = None
        self._task_group: Optional[TaskGroup] = None

    async def __aenter__(self) -> "SessionManager":
        self._exit_stack = AsyncExitStack()
        self._task_group = await self._exit_stack.enter_async_context(anyio.create_task_group())
        return self

    async def __aexit__(self, exc_type, exc, tb):
        with anyio.CancelScope(shield=True):
            await self.close_all_sessions()
        self._task_group.cancel_scope.cancel()
        stack, self._exit_stack = self._exit_stack, None
        self._task_group = None
        return await stack.__aexit__(exc_type, exc, tb)

    # Queries

    def get_session(self, session_id: str) -> Optional[DesktopSession]:
        instance = self._sessions.get(session_id)
        return instance.snapshot() if instance else None

    def get_sessions(self) -> list[DesktopSession]:
        return [instance.snapshot() for instance in self._sessions.values()]

    # Events

    def _broadcast(self, event) -> None:
        if self._broadcaster is None:
            return
        try:
            self._broadcaster.broadcast(event)
        except Exception as e:
            logger.warning(f"Broadcaster failed on {event.type}: {e}")

    def _on_session_event(self, event) -> None:
        if isinstance(event, StatusChanged):
            # Closing is announced once, by close_session
            if event.status == SessionStatus.CLOSED.value:
                return
            updates = {"status": event.status}
            if event.error:
                updates["error"] = event.error
            self._broadcast(SessionUpdated(event.session_id, updates))
        else:
            self._broadcast(event)

    # Creation

    def _strategy(self, sandbox_type: SandboxType) -> SandboxStrategy:
        strategy = self._strategies.get(sandbox_type)
        if strategy is None:
            raise SandboxLaunchError(f"Unknown sandbox type: {sandbox_type}")
        return strategy

    def _provider_for(self, name: Optional[str]) -> Optional[ComputerUseProvider]:
        if not name:
            return None
        try:
            return self._provider_factory(name)
        except Exception as e:
            logger.warning(f"Failed to load Computer Use provider '{name}': {e}")
            return None

    def _register(self, session_config: SessionConfig, sandbox: SandboxInfo) -> tuple[DesktopSessionInstance, CancelToken, Path]:
        if self._task_group is None:
            raise RuntimeError("SessionManager must be used as an async context manager")
        instance = DesktopSessionInstance(
            session_config,
            sandbox,
            self._task_group,
            listener=self._on_session_event,
            provider=self._provider_for(session_config.computer_use_provider),
        )
        session_id = instance.id
        workdir = self.config.sessions_root / session_id
        workdir.mkdir(parents=True, exist_ok=True)
        token = CancelToken(session_id[:8])

        self._sessions[session_id] = instance
        self._processes[session_id] = None
        self._workdirs[session_id] = workdir
        self._tokens[session_id] = token
        self._broadcast(SessionCreated(session_id, instance.snapshot()))
        return instance, token, workdir

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._processes.pop(session_id, None)
        self._workdirs.pop(session_id, None)
        self._backends.pop(session_id, None)
        self._tokens.pop(session_id, None)

    async def create_session(self, config: Optional[SessionConfig] = None) -> DesktopSession:
        """Provision a sandbox and connect a new session to it.

        Calls are serialized so overlapping requests never launch the same
        backend twice.
        """
        config = config or SessionConfig()
        async with self._create_lock:
            sandbox_config = _merge(self.config.sandbox, config.sandbox)
            vnc_config = _merge(self.config.vnc, config.vnc)
            session_config = dataclasses.replace(
                config,
                viewport=config.viewport or self.config.viewport,
                computer_use_provider=config.computer_use_provider or self.config.computer_use_provider,
                screenshot_interval=_interval(config.screenshot_interval, self.config.screenshot_interval),
            )
            strategy = self._strategy(sandbox_config.type)

            instance, token, workdir = self._register(
                session_config, SandboxInfo(sandbox_config.type, sandbox_config.platform)
            )
            session_id = instance.id
            self._backends[session_id] = sandbox_config
            tag = f"[{session_id[:8]}]"
            logger.info(f"{tag} Creating {sandbox_config.type.value} session '{instance.name}'")

            try:
                endpoint = await self._obtain_endpoint(session_id, strategy, sandbox_config, vnc_config,
                                                       token, workdir)
                instance.update_sandbox(status="running", vnc_port=endpoint.port, started_at=datetime.now())
                await self._attach(instance, dataclasses.replace(vnc_config, host=endpoint.host, port=endpoint.port),
                                   token, workdir, sandbox_config.type)
            except ProvisioningCancelled:
                logger.info(f"{tag} Session creation cancelled")
                self._forget(session_id)
                raise
            except Exception as e:
                await self._fail(instance, token, e)
                raise
            return instance.snapshot()

    async def _obtain_endpoint(self, session_id: str, strategy: SandboxStrategy,
                               sandbox_config: SandboxConfig, vnc_config: VNCConfig,
                               token: CancelToken, workdir: Path) -> Endpoint:
        tag = f"[{session_id[:8]}]"
        cfg = self.config

        if await token.run(strategy.is_running, sandbox_config):
            endpoint = await token.run(self._recorded_endpoint, sandbox_config.type)
            if endpoint is not None:
                logger.info(f"{tag} Reusing running {sandbox_config.type.value} at {endpoint.host}:{endpoint.port}")
                return endpoint
            logger.info(f"{tag} Stopping stale {sandbox_config.type.value} instance")
            try:
                await token.run(strategy.stop, sandbox_config)
            except SandboxLaunchError as e:
                logger.warning(f"{tag} Could not stop stale instance: {e}")

        token.raise_if_cancelled()
        process = await strategy.launch(session_id, sandbox_config, token, workdir=workdir, vnc=vnc_config)
        if session_id in self._processes:
            self._processes[session_id] = process
        token.raise_if_cancelled()

        logger.info(f"{tag} Waiting up to {cfg.discovery_timeout}s for the sandbox address")
        endpoint = await strategy.discover(
            sandbox_config, workdir,
            default_port=vnc_config.port,
            timeout=cfg.discovery_timeout,
            interval=cfg.discovery_interval,
            token=token,
        )
        if endpoint is None:
            raise DiscoveryError(f"Sandbox did not report its address within {cfg.discovery_timeout}s")

        logger.info(f"{tag} Sandbox at {endpoint.host}:{endpoint.port}, waiting for VNC port")
        reachable = await discovery.wait_for_tcp(
            endpoint.host, endpoint.port,
            timeout=cfg.tcp_wait_timeout,
            interval=cfg.tcp_retry_interval,
            probe_timeout=cfg.tcp_probe_timeout,
            token=token,
        )
        if not reachable:
            raise DiscoveryError(
                f"VNC port {endpoint.host}:{endpoint.port} not reachable after {cfg.tcp_wait_timeout}s"
            )
        return endpoint

    async def _recorded_endpoint(self, sandbox_type: SandboxType) -> Optional[Endpoint]:
        for record in discovery.recorded_endpoints(self.config.sessions_root, self.config.vnc.port):
            if record.get("sandboxType") != sandbox_type.value:
                continue
            if await discovery.probe_tcp(record["ip"], record["port"], self.config.tcp_probe_timeout):
                return Endpoint(record["ip"], record["port"])
        return None

    async def _attach(self, instance: DesktopSessionInstance, vnc_config: VNCConfig,
                      token: CancelToken, workdir: Path, sandbox_type: SandboxType) -> None:
        """Connect with bounded handshake retries, then record the endpoint."""
        tag = f"[{instance.id[:8]}]"
        attempts = max(self.config.handshake_attempts, 1)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                await instance.initialize(vnc_config, token, mark_error=False)
                break
            except AuthenticationError:
                raise
            except VNCConnectionError as e:
                last_error = e
                logger.warning(f"{tag} VNC handshake attempt {attempt}/{attempts} failed: {e}")
                await instance.reset_for_retry()
                if attempt < attempts:
                    await token.sleep(self.config.handshake_retry_interval)
        else:
            raise VNCConnectionError(f"VNC handshake failed after {attempts} attempts: {last_error}")

        discovery.write_marker(
            workdir / discovery.MARKER_FILE,
            Endpoint(vnc_config.host, vnc_config.port),
            sandboxType=sandbox_type.value,
            sessionId=instance.id,
        )

    async def _fail(self, instance: DesktopSessionInstance, token: CancelToken, error: Exception) -> None:
        if token.cancelled:
            # Failures caused by a concurrent close are not errors
            logger.info(f"[{instance.id[:8]}] Provisioning stopped by close: {error}")
            self._forget(instance.id)
            return
        message = str(error) or type(error).__name__
        if isinstance(error, DesktopError):
            logger.error(f"[{instance.id[:8]}] Session setup failed: {message}")
        else:
            logger.error(f"[{instance.id[:8]}] Session setup failed: {message}", exc_info=True)
        instance.update_sandbox(status="error", error=message)
        with anyio.CancelScope(shield=True):
            await instance.fail(message)
        self._tokens.pop(instance.id, None)

    async def resume_session(self, config: Optional[ResumeConfig] = None) -> DesktopSession:
        """Attach to an already running sandbox without launching anything."""
        config = config or ResumeConfig()
        async with self._create_lock:
            cfg = self.config
            port = config.port or cfg.vnc.port
            vnc_config = dataclasses.replace(
                cfg.vnc, port=port, password=config.password or cfg.vnc.password,
            )
            sandbox_type = SandboxType(config.sandbox_type) if config.sandbox_type else cfg.sandbox.type

            if config.host:
                endpoint = Endpoint(config.host, port)
            else:
                endpoint = await self._discover_running(port)

            session_config = SessionConfig(
                name=config.name or f"Resumed {sandbox_type.value}",
                viewport=cfg.viewport,
                computer_use_provider=config.computer_use_provider or cfg.computer_use_provider,
                screenshot_interval=_interval(config.screenshot_interval, cfg.screenshot_interval),
            )
            platform = DesktopPlatform.MACOS if sandbox_type == SandboxType.TART else DesktopPlatform.WINDOWS
            sandbox = SandboxInfo(sandbox_type, platform, status="running",
                                  vnc_port=endpoint.port, started_at=datetime.now())
            instance, token, workdir = self._register(session_config, sandbox)
            logger.info(f"[{instance.id[:8]}] Resuming session at {endpoint.host}:{endpoint.port}")

            try:
                await self._attach(instance, dataclasses.replace(vnc_config, host=endpoint.host),
                                   token, workdir, sandbox_type)
            except ProvisioningCancelled:
                self._forget(instance.id)
                raise
            except Exception as e:
                await self._fail(instance, token, e)
                raise
            return instance.snapshot()

    async def _discover_running(self, port: int) -> Endpoint:
        cfg = self.config
        endpoint = await discovery.scan_recorded_endpoints(cfg.sessions_root, port, cfg.tcp_probe_timeout)
        if endpoint is not None:
            logger.info(f"Found recorded endpoint {endpoint.host}:{endpoint.port}")
            return endpoint

        logger.info(f"No recorded endpoint responded, scanning {cfg.scan_network}")
        endpoint = await discovery.scan_network(cfg.scan_network, port, cfg.tcp_probe_timeout)
        if endpoint is None:
            raise DiscoveryError(f"No running sandbox found on port {port}")
        logger.info(f"Found sandbox at {endpoint.host}:{endpoint.port} via network scan")
        return endpoint

    # Teardown

    async def close_session(self, session_id: str) -> None:
        instance = self._sessions.get(session_id)
        if instance is None:
            raise SessionNotFound(session_id)
        if session_id in self._closing:
            return
        self._closing.add(session_id)
        tag = f"[{session_id[:8]}]"

        try:
            # Unblock any provisioning wait before touching the session
            token = self._tokens.get(session_id)
            if token is not None:
                token.cancel()

            was_connected = instance.status in CONNECTED_STATUSES
            process = self._processes.get(session_id)
            workdir = self._workdirs.get(session_id)
            backend = self._backends.get(session_id)
            logger.info(f"{tag} Closing session (status {instance.status.value})")

            with anyio.move_on_after(self.config.close_timeout) as scope:
                try:
                    await instance.close()
                except Exception as e:
                    logger.warning(f"{tag} Error closing session: {e}")
            if scope.cancelled_caught:
                logger.warning(f"{tag} Session close timed out after {self.config.close_timeout}s")

            # Only a session that got connected may tear the backend down
            if was_connected and backend is not None:
                await self._stop_backend(session_id, backend, process)

            if workdir is not None:
                try:
                    shutil.rmtree(workdir)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"{tag} Failed to remove {workdir}: {e}")
        finally:
            self._forget(session_id)
            self._closing.discard(session_id)

        self._broadcast(SessionClosed(session_id))
        logger.info(f"{tag} Session closed")

    async def _stop_backend(self, session_id: str, backend: SandboxConfig,
                            process: Optional[subprocess.Popen]) -> None:
        tag = f"[{session_id[:8]}]"
        strategy = self._strategies.get(backend.type)
        if strategy is None:
            return
        with anyio.move_on_after(self.config.close_timeout) as scope:
            try:
                await strategy.stop(backend, process)
                logger.info(f"{tag} Stopped {backend.type.value} backend")
            except Exception as e:
                logger.warning(f"{tag} Failed to stop {backend.type.value} backend: {e}")
        if scope.cancelled_caught:
            logger.warning(f"{tag} Stopping {backend.type.value} backend timed out")

    async def close_all_sessions(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.close_session(session_id)
            except SessionNotFound:
                pass

    # Delegation

    async def execute_action(self, session_id: str, action: DesktopAction) -> ActionResult:
        instance = self._sessions.get(session_id)
        if instance is None:
            return ActionResult(False, action, error=f"Session not found: {session_id}")
        return await instance.execute_action(action)

    async def execute_instruction(self, session_id: str, instruction: str,
                                  context: Optional[InstructionContext] = None) -> InstructionResult:
        instance = self._sessions.get(session_id)
        if instance is None:
            return InstructionResult(False, 0, error=f"Session not found: {session_id}")
        return await instance.execute_instruction(instruction, context)

    async def capture_screenshot(self, session_id: str) -> str:
        instance = self._sessions.get(session_id)
        if instance is None:
            raise SessionNotFound(session_id)
        return await instance.capture_screenshot()
