"""
Session manager tests with a fake sandbox backend and fake VNC server.
"""
import json

import anyio
import pytest

from desktop_sandbox import discovery
from desktop_sandbox.config import ManagerConfig
from desktop_sandbox.errors import AuthenticationError, ProvisioningCancelled, SessionNotFound
from desktop_sandbox.events import SessionClosed, SessionCreated, SessionUpdated
from desktop_sandbox.manager import SessionManager
from desktop_sandbox.models import (
    ActionType,
    DesktopAction,
    ResumeConfig,
    SandboxConfig,
    SandboxType,
    SessionConfig,
    SessionStatus,
    VNCConfig,
)
from desktop_sandbox.sandboxes import SandboxStrategy

from fake_vnc import FakeVNCServer, wait_for


class FakeStrategy(SandboxStrategy):
    """Backend whose 'guest' reports the fake VNC server as its address."""

    type = SandboxType.HYPERV

    def __init__(self, server: FakeVNCServer, announce: bool = True):
        self.server = server
        self.announce = announce
        self.running = False
        self.launches = 0
        self.stops = 0

    async def launch(self, session_id, config, token, *, workdir, vnc):
        self.launches += 1
        self.running = True
        if self.announce:
            marker = workdir / discovery.MARKER_FILE
            marker.write_text(json.dumps({"ip": "127.0.0.1", "port": self.server.port}), encoding="utf-8-sig")
        return None

    async def is_running(self, config):
        return self.running

    async def stop(self, config, process=None):
        self.stops += 1
        self.running = False


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def broadcast(self, event):
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


class ExplodingBroadcaster:
    def broadcast(self, event):
        raise RuntimeError("transport down")


def _config(tmp_path, server: FakeVNCServer, **overrides) -> ManagerConfig:
    values = dict(
        sandbox=SandboxConfig(type=SandboxType.HYPERV),
        vnc=VNCConfig(host="127.0.0.1", port=server.port, password=server.password, connect_timeout=5.0),
        sessions_root=tmp_path / "sessions",
        screenshot_interval=0,
        discovery_timeout=10.0,
        discovery_interval=0.05,
        tcp_retry_interval=0.05,
        tcp_probe_timeout=1.0,
        handshake_retry_interval=0.05,
    )
    values.update(overrides)
    return ManagerConfig(**values)


def _error_updates(broadcaster: RecordingBroadcaster) -> list:
    return [e for e in broadcaster.of_type(SessionUpdated) if e.updates.get("status") == "error"]


def _sandbox_updates(broadcaster: RecordingBroadcaster) -> list:
    return [e.updates["sandbox"] for e in broadcaster.of_type(SessionUpdated) if "sandbox" in e.updates]


@pytest.mark.asyncio
async def test_create_session_launches_and_records_endpoint(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        broadcaster = RecordingBroadcaster()
        config = _config(tmp_path, server)
        async with SessionManager(config, broadcaster, {SandboxType.HYPERV: strategy}) as manager:
            session = await manager.create_session(SessionConfig(name="work", screenshot_interval=0))
            assert session.status == SessionStatus.ACTIVE
            assert session.name == "work"
            assert session.sandbox.status == "running"
            assert session.vnc.port == server.port
            assert strategy.launches == 1

            record = json.loads((config.sessions_root / session.id / "connection.json").read_text())
            assert record == {"ip": "127.0.0.1", "port": server.port,
                              "sandboxType": "hyperv", "sessionId": session.id}

            assert [e.session_id for e in broadcaster.of_type(SessionCreated)] == [session.id]
            assert [s.status for s in _sandbox_updates(broadcaster)] == ["running"]
            assert _sandbox_updates(broadcaster)[0].vnc_port == server.port
            assert manager.get_session(session.id).status == SessionStatus.ACTIVE
            assert len(manager.get_sessions()) == 1

            await manager.close_session(session.id)
            assert strategy.stops == 1
            assert not (config.sessions_root / session.id).exists()
            assert manager.get_session(session.id) is None
            assert len(broadcaster.of_type(SessionClosed)) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_launch_once(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        async with SessionManager(_config(tmp_path, server), strategies={SandboxType.HYPERV: strategy}) as manager:
            sessions = []

            async def create():
                sessions.append(await manager.create_session(SessionConfig(screenshot_interval=0)))

            async with anyio.create_task_group() as tg:
                tg.start_soon(create)
                tg.start_soon(create)

            assert strategy.launches == 1
            assert len(sessions) == 2
            assert all(s.status == SessionStatus.ACTIVE for s in sessions)
            assert sessions[0].id != sessions[1].id


@pytest.mark.asyncio
async def test_resume_with_explicit_endpoint_skips_launch(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        async with SessionManager(_config(tmp_path, server), strategies={SandboxType.HYPERV: strategy}) as manager:
            session = await manager.resume_session(
                ResumeConfig(host="127.0.0.1", port=server.port, password=server.password, screenshot_interval=0)
            )
            assert session.status == SessionStatus.ACTIVE
            assert session.vnc.host == "127.0.0.1"
            assert strategy.launches == 0

            await manager.close_session(session.id)
            # Resumed sessions never own the backend
            assert strategy.stops == 0


@pytest.mark.asyncio
async def test_resume_uses_recorded_endpoint(tmp_path):
    async with FakeVNCServer() as server:
        config = _config(tmp_path, server)
        old = config.sessions_root / "previous"
        old.mkdir(parents=True)
        (old / "connection.json").write_text(json.dumps({"ip": "127.0.0.1", "port": server.port}))

        async with SessionManager(config, strategies={}) as manager:
            session = await manager.resume_session(ResumeConfig(port=server.port, screenshot_interval=0))
            assert session.status == SessionStatus.ACTIVE
            assert (session.vnc.host, session.vnc.port) == ("127.0.0.1", server.port)


@pytest.mark.asyncio
async def test_resume_falls_back_to_network_scan(tmp_path, monkeypatch):
    async def neighbors():
        return ["192.168.1.1", "127.0.0.1", "not-an-ip"]

    monkeypatch.setattr(discovery, "read_neighbor_table", neighbors)

    async with FakeVNCServer() as server:
        config = _config(tmp_path, server, scan_network="127.0.0.0/8")
        async with SessionManager(config, strategies={}) as manager:
            session = await manager.resume_session(ResumeConfig(port=server.port, screenshot_interval=0))
            assert session.status == SessionStatus.ACTIVE
            assert session.vnc.host == "127.0.0.1"


@pytest.mark.asyncio
async def test_close_during_provisioning_is_silent(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server, announce=False)
        broadcaster = RecordingBroadcaster()
        config = _config(tmp_path, server, discovery_timeout=30.0)
        async with SessionManager(config, broadcaster, {SandboxType.HYPERV: strategy}) as manager:
            outcome = {}

            async def create():
                try:
                    await manager.create_session(SessionConfig(screenshot_interval=0))
                except ProvisioningCancelled as e:
                    outcome["error"] = e

            with anyio.fail_after(10):
                async with anyio.create_task_group() as tg:
                    tg.start_soon(create)
                    await wait_for(lambda: strategy.launches)
                    session_id = manager.get_sessions()[0].id
                    await manager.close_session(session_id)

            assert isinstance(outcome["error"], ProvisioningCancelled)
            assert _error_updates(broadcaster) == []
            assert [e.session_id for e in broadcaster.of_type(SessionClosed)] == [session_id]
            assert manager.get_sessions() == []
            assert manager._processes == {}
            assert manager._workdirs == {}
            assert strategy.stops == 0
            assert not (config.sessions_root / session_id).exists()


@pytest.mark.asyncio
async def test_wrong_password_is_not_retried(tmp_path):
    async with FakeVNCServer(password="secret") as server:
        strategy = FakeStrategy(server)
        broadcaster = RecordingBroadcaster()
        config = _config(tmp_path, server)
        async with SessionManager(config, broadcaster, {SandboxType.HYPERV: strategy}) as manager:
            with pytest.raises(AuthenticationError):
                await manager.create_session(SessionConfig(vnc={"password": "guess"}, screenshot_interval=0))
            assert server.handshakes == 1

            [session] = manager.get_sessions()
            assert session.status == SessionStatus.ERROR
            assert "wrong password" in session.error
            assert len(_error_updates(broadcaster)) == 1

            # An errored session never tears down a possibly shared backend
            await manager.close_session(session.id)
            assert strategy.stops == 0
            assert manager.get_sessions() == []


@pytest.mark.asyncio
async def test_failure_after_connect_drops_the_connection(tmp_path, monkeypatch):
    def unwritable(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(discovery, "write_marker", unwritable)

    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        broadcaster = RecordingBroadcaster()
        async with SessionManager(_config(tmp_path, server), broadcaster,
                                  {SandboxType.HYPERV: strategy}) as manager:
            with pytest.raises(OSError, match="disk full"):
                await manager.create_session(SessionConfig(screenshot_interval=0))

            [session] = manager.get_sessions()
            assert session.status == SessionStatus.ERROR
            assert session.sandbox.status == "error"
            assert [s.status for s in _sandbox_updates(broadcaster)] == ["running", "error"]
            assert not manager._sessions[session.id].is_connected

            result = await manager.execute_action(session.id, DesktopAction(ActionType.CLICK, x=2, y=2))
            assert not result.success
            assert manager.get_session(session.id).status == SessionStatus.ERROR

            await manager.close_session(session.id)
            assert strategy.stops == 0


@pytest.mark.asyncio
async def test_handshake_retried_while_guest_boots(tmp_path):
    async with FakeVNCServer(fail_first=2) as server:
        strategy = FakeStrategy(server)
        broadcaster = RecordingBroadcaster()
        async with SessionManager(_config(tmp_path, server), broadcaster,
                                  {SandboxType.HYPERV: strategy}) as manager:
            session = await manager.create_session(SessionConfig(screenshot_interval=0))
            assert session.status == SessionStatus.ACTIVE
            assert server.handshakes == 3
            assert _error_updates(broadcaster) == []


@pytest.mark.asyncio
async def test_broadcaster_failures_do_not_affect_sessions(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        async with SessionManager(_config(tmp_path, server), ExplodingBroadcaster(),
                                  {SandboxType.HYPERV: strategy}) as manager:
            session = await manager.create_session(SessionConfig(screenshot_interval=0))
            assert session.status == SessionStatus.ACTIVE
            result = await manager.execute_action(session.id, DesktopAction(ActionType.MOVE, x=1, y=1))
            assert result.success
            await manager.close_session(session.id)
            assert manager.get_sessions() == []


@pytest.mark.asyncio
async def test_delegation_to_sessions(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        async with SessionManager(_config(tmp_path, server), strategies={SandboxType.HYPERV: strategy}) as manager:
            session = await manager.create_session(SessionConfig(screenshot_interval=0))

            screenshot = await manager.capture_screenshot(session.id)
            assert screenshot

            result = await manager.execute_action(session.id, DesktopAction(ActionType.KEY, key="Enter"))
            assert result.success

            instruction = await manager.execute_instruction(session.id, "do something")
            assert not instruction.success
            assert instruction.error == "No Computer Use provider configured"

            missing = await manager.execute_action("missing", DesktopAction(ActionType.WAIT))
            assert not missing.success
            assert missing.error == "Session not found: missing"
            assert not (await manager.execute_instruction("missing", "x")).success
            with pytest.raises(SessionNotFound):
                await manager.capture_screenshot("missing")
            with pytest.raises(SessionNotFound):
                await manager.close_session("missing")


@pytest.mark.asyncio
async def test_leaving_context_closes_everything(tmp_path):
    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        broadcaster = RecordingBroadcaster()
        async with SessionManager(_config(tmp_path, server), broadcaster,
                                  {SandboxType.HYPERV: strategy}) as manager:
            await manager.create_session(SessionConfig(screenshot_interval=0))
            await manager.resume_session(ResumeConfig(host="127.0.0.1", port=server.port,
                                                      password=server.password, screenshot_interval=0))
        assert len(broadcaster.of_type(SessionClosed)) == 2
        assert manager.get_sessions() == []
        assert strategy.stops == 1


@pytest.mark.asyncio
async def test_provider_loaded_by_name(tmp_path):
    loaded = []

    class NullProvider:
        async def get_action(self, request):
            raise AssertionError("not called")

    def factory(name):
        loaded.append(name)
        return NullProvider()

    async with FakeVNCServer() as server:
        strategy = FakeStrategy(server)
        async with SessionManager(_config(tmp_path, server, computer_use_provider="scripted"),
                                  strategies={SandboxType.HYPERV: strategy},
                                  provider_factory=factory) as manager:
            await manager.create_session(SessionConfig(screenshot_interval=0))
            assert loaded == ["scripted"]


def test_config_from_env(tmp_path):
    config = ManagerConfig.from_env({
        "DESKTOP_SANDBOX_TYPE": "tart",
        "DESKTOP_SANDBOX_VM_NAME": "sonoma-base",
        "DESKTOP_SANDBOX_VNC_PORT": "5901",
        "DESKTOP_SANDBOX_VNC_PASSWORD": "hunter2",
        "DESKTOP_SANDBOX_SESSIONS_ROOT": str(tmp_path),
        "DESKTOP_SANDBOX_SCAN_NETWORK": "10.0.0.0/8",
        "DESKTOP_SANDBOX_SCREENSHOT_INTERVAL": "0",
    })
    assert config.sandbox.type == SandboxType.TART
    assert config.sandbox.config_path == "sonoma-base"
    assert config.vnc.port == 5901
    assert config.vnc.password == "hunter2"
    assert config.vnc.host == "localhost"
    assert config.sessions_root == tmp_path
    assert config.scan_network == "10.0.0.0/8"
    assert config.screenshot_interval == 0

    defaults = ManagerConfig.from_env({})
    assert defaults.sandbox.type == SandboxType.WINDOWS_SANDBOX
    assert defaults.vnc.port == 5900
    assert defaults.handshake_attempts == 5
