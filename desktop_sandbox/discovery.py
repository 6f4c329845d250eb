"""
Endpoint discovery helpers.

A freshly launched guest announces itself by writing ``connection.json``
into its session directory. When nothing was recorded, candidates are taken
from the host's neighbor (ARP) table, restricted to the backend's private
network range, and probed on the VNC port.
"""
import ipaddress
import json
import logging
import re
import sys
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import anyio

from .cancel import CancelToken
from .models import Endpoint

logger = logging.getLogger(__name__)

MARKER_FILE = "connection.json"

T = TypeVar("T")

_IPV4 = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")


def read_marker(path: Path, default_port: int = 5900) -> Optional[dict]:
    """Read a discovery file written by the guest.

    Returns None while the file is missing or still being written. The guest
    side PowerShell writes UTF-8 with a byte order mark.
    """
    try:
        text = path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    host = data.get("ip") or data.get("host")
    if not host:
        return None
    port = data.get("port") or data.get("vncPort") or default_port
    return {**data, "ip": host, "port": int(port)}


def write_marker(path: Path, endpoint: Endpoint, **extra) -> None:
    payload = {"ip": endpoint.host, "port": endpoint.port, **extra}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


async def probe_tcp(host: str, port: int, timeout: float = 2.0) -> bool:
    """Return True if a TCP connection to host:port succeeds within timeout."""
    with anyio.move_on_after(timeout):
        try:
            stream = await anyio.connect_tcp(host, port)
        except OSError:
            return False
        await stream.aclose()
        return True
    return False


async def poll(check: Callable[[], Awaitable[Optional[T]]], *, timeout: float,
               interval: float, token: Optional[CancelToken] = None,
               description: str = "condition") -> Optional[T]:
    """Call ``check`` at a fixed interval until it returns a value or time runs out."""
    token = token or CancelToken()
    deadline = anyio.current_time() + timeout
    attempt = 0
    while True:
        token.raise_if_cancelled()
        attempt += 1
        result = await token.run(check)
        if result is not None:
            return result
        remaining = deadline - anyio.current_time()
        if remaining <= 0:
            logger.warning(f"Timed out waiting for {description} after {attempt} attempts")
            return None
        if attempt % 5 == 0:
            logger.info(f"Still waiting for {description} ({int(remaining)}s left)")
        await token.sleep(min(interval, remaining))


async def wait_for_tcp(host: str, port: int, *, timeout: float, interval: float,
                       probe_timeout: float, token: Optional[CancelToken] = None) -> bool:
    """Retry bare TCP reachability at a fixed interval."""
    async def check() -> Optional[bool]:
        return True if await probe_tcp(host, port, probe_timeout) else None

    found = await poll(check, timeout=timeout, interval=interval, token=token,
                       description=f"TCP {host}:{port}")
    return bool(found)


def recorded_endpoints(sessions_root: Path, default_port: int = 5900) -> list[dict]:
    """All discovery records under the sessions root, newest first."""
    if not sessions_root.is_dir():
        return []
    records = []
    for marker in sessions_root.glob(f"*/{MARKER_FILE}"):
        data = read_marker(marker, default_port)
        if data is not None:
            records.append((marker.stat().st_mtime, data))
    records.sort(key=lambda item: item[0], reverse=True)
    return [data for _, data in records]


async def scan_recorded_endpoints(sessions_root: Path, default_port: int,
                                  probe_timeout: float) -> Optional[Endpoint]:
    for record in recorded_endpoints(sessions_root, default_port):
        host, port = record["ip"], record["port"]
        logger.info(f"Probing recorded endpoint {host}:{port}")
        if await probe_tcp(host, port, probe_timeout):
            return Endpoint(host, port)
    return None


async def read_neighbor_table() -> list[str]:
    """IPv4 addresses from the host's ARP / neighbor table."""
    if sys.platform == "win32":
        command = ["arp", "-a"]
    elif sys.platform == "darwin":
        command = ["arp", "-an"]
    else:
        command = ["ip", "-4", "neigh", "show"]
    try:
        result = await anyio.run_process(command, check=False)
    except OSError as e:
        logger.warning(f"Cannot read neighbor table with {command[0]}: {e}")
        return []
    output = result.stdout.decode("utf-8", errors="replace")
    seen: dict[str, None] = {}
    for match in _IPV4.findall(output):
        seen.setdefault(match)
    return list(seen)


def filter_network(addresses: Iterable[str], network: str) -> list[str]:
    net = ipaddress.ip_network(network, strict=False)
    selected = []
    for address in addresses:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            continue
        if ip in net and not ip.is_multicast and ip != net.broadcast_address:
            selected.append(address)
    return selected


async def scan_network(network: str, port: int, probe_timeout: float,
                       neighbors: Optional[list[str]] = None) -> Optional[Endpoint]:
    """Probe every neighbor inside ``network`` concurrently; first responder wins."""
    if neighbors is None:
        neighbors = await read_neighbor_table()
    candidates = filter_network(neighbors, network)
    if not candidates:
        logger.info(f"No neighbors found in {network}")
        return None
    logger.info(f"Probing {len(candidates)} candidates in {network} on port {port}")

    found: list[Endpoint] = []

    async with anyio.create_task_group() as tg:
        async def try_candidate(host: str) -> None:
            if await probe_tcp(host, port, probe_timeout):
                found.append(Endpoint(host, port))
                tg.cancel_scope.cancel()

        for host in candidates:
            tg.start_soon(try_candidate, host)

    return found[0] if found else None
