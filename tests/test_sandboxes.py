"""Tests for backend manifests and endpoint discovery helpers."""
import json
import sys
import xml.etree.ElementTree as ET

import anyio
import pytest

from desktop_sandbox import discovery, sandboxes
from desktop_sandbox.cancel import CancelToken
from desktop_sandbox.errors import ProvisioningCancelled, SandboxLaunchError
from desktop_sandbox.models import Endpoint, SandboxConfig, SandboxType, VNCConfig

from fake_vnc import FakeVNCServer


def test_manifest_maps_workdir_and_resources(tmp_path):
    config = SandboxConfig(memory_mb=8192, enable_gpu=False)
    root = ET.fromstring(sandboxes.render_manifest(tmp_path, config))
    assert root.findtext("VGpu") == "Disable"
    assert root.findtext("Networking") == "Enable"
    assert root.findtext("MemoryInMB") == "8192"
    assert root.findtext("MappedFolders/MappedFolder/HostFolder") == str(tmp_path.resolve())
    assert root.findtext("MappedFolders/MappedFolder/SandboxFolder") == sandboxes.GUEST_FOLDER
    assert "setup.ps1" in root.findtext("LogonCommand/Command")


def test_setup_script_substitutes_settings():
    script = sandboxes.render_setup_script(VNCConfig(port=5901, password="pa55"), "Write-Log 'custom'")
    assert "VALUE_OF_RFBPORT=5901" in script
    assert "VALUE_OF_PASSWORD=pa55" in script
    assert "port = 5901" in script
    assert "Write-Log 'custom'" in script
    assert "__" not in script


def test_strategy_registry_covers_every_type():
    strategies = sandboxes.default_strategies()
    assert set(strategies) == set(SandboxType)
    for sandbox_type, strategy in strategies.items():
        assert strategy.type == sandbox_type


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="host check passes on Windows")
async def test_windows_sandbox_requires_windows_host(tmp_path):
    strategy = sandboxes.WindowsSandboxStrategy()
    with pytest.raises(SandboxLaunchError):
        await strategy.launch("abc", SandboxConfig(), CancelToken(), workdir=tmp_path, vnc=VNCConfig())


@pytest.mark.asyncio
async def test_discover_reads_marker_written_later(tmp_path):
    strategy = sandboxes.VirtualBoxStrategy()

    async def no_address(config):
        return None

    strategy.query_address = no_address

    async def guest_boots():
        await anyio.sleep(0.1)
        (tmp_path / discovery.MARKER_FILE).write_text(
            json.dumps({"ip": "10.0.0.5", "vncPort": 5902}), encoding="utf-8-sig"
        )

    async with anyio.create_task_group() as tg:
        tg.start_soon(guest_boots)
        endpoint = await strategy.discover(SandboxConfig(), tmp_path, default_port=5900,
                                           timeout=5, interval=0.02, token=CancelToken())
    assert endpoint == Endpoint("10.0.0.5", 5902)


@pytest.mark.asyncio
async def test_discover_uses_hypervisor_address(tmp_path):
    strategy = sandboxes.HyperVStrategy()

    async def address(config):
        return "172.20.1.9"

    strategy.query_address = address
    endpoint = await strategy.discover(SandboxConfig(), tmp_path, default_port=5900,
                                       timeout=1, interval=0.02, token=CancelToken())
    assert endpoint == Endpoint("172.20.1.9", 5900)


def test_read_marker_tolerates_partial_files(tmp_path):
    marker = tmp_path / "connection.json"
    assert discovery.read_marker(marker) is None
    marker.write_text('{"ip": "10.0', encoding="utf-8")
    assert discovery.read_marker(marker) is None
    marker.write_text('{"port": 5900}', encoding="utf-8")
    assert discovery.read_marker(marker) is None
    marker.write_text('{"ip": "10.0.0.2"}', encoding="utf-8-sig")
    assert discovery.read_marker(marker, default_port=5999) == {"ip": "10.0.0.2", "port": 5999}


def test_filter_network():
    addresses = ["172.20.0.1", "172.31.255.255", "10.0.0.1", "garbage", "172.16.5.5"]
    assert discovery.filter_network(addresses, "172.16.0.0/12") == ["172.20.0.1", "172.16.5.5"]


@pytest.mark.asyncio
async def test_probe_and_poll():
    async with FakeVNCServer() as server:
        assert await discovery.probe_tcp("127.0.0.1", server.port, timeout=1)
        assert await discovery.wait_for_tcp("127.0.0.1", server.port, timeout=1, interval=0.05,
                                            probe_timeout=1)

    async def never():
        return None

    assert await discovery.poll(never, timeout=0.1, interval=0.02) is None


@pytest.mark.asyncio
async def test_poll_stops_on_cancel():
    token = CancelToken("test")

    async def never():
        return None

    async def cancel_soon():
        await anyio.sleep(0.1)
        token.cancel()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(cancel_soon)
            with pytest.raises(ProvisioningCancelled):
                await discovery.poll(never, timeout=60, interval=10, token=token)
