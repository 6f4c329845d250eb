"""
Remote framebuffer (RFB/VNC) protocol client.

Owns one TCP connection to a VNC server: version negotiation and
authentication, a continuously updated RGBA framebuffer, change-detected
screenshot encoding, and pointer/keyboard injection.
"""
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Optional

import anyio
from anyio.abc import SocketStream, TaskGroup
from anyio.streams.buffered import BufferedByteReceiveStream

from . import d3des, framebuffer, keysyms
from .errors import AuthenticationError, ConnectionTimeout, ProtocolError, VNCConnectionError
from .framebuffer import Framebuffer, ZRLEDecoder, decode_pixels, frame_hash, to_base64
from .models import ActionType, ConnectionInfo, DesktopAction, PixelFormat, VNCConfig

logger = logging.getLogger(__name__)

# Client -> server message types
MSG_SET_PIXEL_FORMAT = 0
MSG_SET_ENCODINGS = 2
MSG_FB_UPDATE_REQUEST = 3
MSG_KEY_EVENT = 4
MSG_POINTER_EVENT = 5

# Server -> client message types
MSG_FB_UPDATE = 0
MSG_SET_COLOUR_MAP = 1
MSG_BELL = 2
MSG_SERVER_CUT_TEXT = 3

ENCODING_RAW = 0
ENCODING_COPY_RECT = 1
ENCODING_ZRLE = 16
ENCODING_DESKTOP_SIZE = -223

SECURITY_INVALID = 0
SECURITY_NONE = 1
SECURITY_VNC_AUTH = 2

BUTTON_LEFT = 1
BUTTON_MIDDLE = 2
BUTTON_RIGHT = 4
WHEEL_UP = 8
WHEEL_DOWN = 16
WHEEL_LEFT = 32
WHEEL_RIGHT = 64

PREFERRED_PIXEL_FORMAT = PixelFormat()
PREFERRED_ENCODINGS = (ENCODING_COPY_RECT, ENCODING_ZRLE, ENCODING_RAW, ENCODING_DESKTOP_SIZE)

_PIXEL_FORMAT = struct.Struct(">BBBBHHHBBB3x")

_STREAM_ERRORS = (
    anyio.EndOfStream,
    anyio.IncompleteRead,
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    OSError,
)

_auth_response: Callable[[bytes, str], bytes] = d3des.vnc_auth_response


def install_auth_cipher(func: Callable[[bytes, str], bytes]) -> None:
    """Replace the function that answers VNC authentication challenges.

    Defaults to the pure Python DES in :mod:`desktop_sandbox.d3des`.
    """
    global _auth_response
    _auth_response = func


@dataclass(frozen=True)
class Screenshot:
    data: str
    changed: bool
    mime_type: str


class RFBClient:
    """
    Client for a single VNC server connection.

    ``on_disconnect`` is called with a reason when the connection drops
    without :meth:`disconnect` having been called.
    """

    def __init__(self, config: VNCConfig, *, fps: float = 5.0,
                 set_pixel_format: bool = True,
                 on_disconnect: Optional[Callable[[str], None]] = None,
                 on_clipboard: Optional[Callable[[str], None]] = None):
        self.config = config
        self.connected = False
        self.server_name = ""
        self.pixel_format: Optional[PixelFormat] = None
        self._fps = fps
        self._set_pixel_format = set_pixel_format
        self._on_disconnect = on_disconnect
        self._on_clipboard = on_clipboard

        self._stream: Optional[SocketStream] = None
        self._reader: Optional[BufferedByteReceiveStream] = None
        self._send_lock = anyio.Lock()
        self._reader_scope: Optional[anyio.CancelScope] = None
        self._closing = False
        self._version = (3, 8)
        self._fb: Optional[Framebuffer] = None
        self._zrle = ZRLEDecoder()

        # Change detection
        self._last_hash: Optional[int] = None
        self._last_key: Optional[tuple] = None
        self._last_screenshot: Optional[str] = None
        self._unchanged_count = 0

    @property
    def width(self) -> int:
        return self._fb.width if self._fb else 0

    @property
    def height(self) -> int:
        return self._fb.height if self._fb else 0

    @property
    def frame(self):
        """The current RGBA framebuffer as a (height, width, 4) array."""
        return self._fb.pixels if self._fb else None

    def connection_info(self) -> ConnectionInfo:
        return ConnectionInfo(
            connected=self.connected,
            host=self.config.host,
            port=self.config.port,
            width=self.width,
            height=self.height,
            pixel_format=self.pixel_format,
            server_name=self.server_name,
        )

    # Connection

    async def connect(self, task_group: TaskGroup) -> ConnectionInfo:
        """Connect, authenticate and wait for the first full frame.

        The background reader is started in ``task_group`` once the first
        frame has arrived.
        """
        timeout = self.config.connect_timeout
        logger.info(f"Connecting to VNC {self.config.host}:{self.config.port} (timeout {timeout}s)")
        started = time.monotonic()
        try:
            with anyio.fail_after(timeout):
                await self._handshake()
        except TimeoutError:
            await self._discard()
            raise ConnectionTimeout(f"Connection timeout after {timeout}s") from None
        except VNCConnectionError:
            await self._discard()
            raise
        except _STREAM_ERRORS as e:
            await self._discard()
            raise VNCConnectionError(
                f"Failed to connect to {self.config.host}:{self.config.port}: {e}"
            ) from e
        except BaseException:
            await self._discard()
            raise

        self.connected = True
        self._reader_scope = anyio.CancelScope()
        task_group.start_soon(self._read_loop, self._reader_scope)
        logger.info(
            f"VNC connected in {time.monotonic() - started:.2f}s: "
            f"{self.width}x{self.height}, server '{self.server_name}'"
        )
        return self.connection_info()

    async def disconnect(self) -> None:
        """Close the connection. Safe to call at any time, any number of times."""
        self._closing = True
        self.connected = False
        if self._reader_scope is not None:
            self._reader_scope.cancel()
        await self._discard()

    async def _discard(self) -> None:
        stream, self._stream = self._stream, None
        self._reader = None
        if stream is not None:
            with anyio.CancelScope(shield=True):
                try:
                    await stream.aclose()
                except OSError as e:
                    logger.debug(f"Error closing VNC socket: {e}")

    async def _handshake(self) -> None:
        self._stream = await anyio.connect_tcp(self.config.host, self.config.port)
        self._reader = BufferedByteReceiveStream(self._stream)

        await self._negotiate_version()
        await self._authenticate()

        # ClientInit: request a shared session so other viewers stay connected
        await self._send(b"\x01")
        width, height = struct.unpack(">HH", await self._recv(4))
        native = self._parse_pixel_format(await self._recv(16))
        (name_length,) = struct.unpack(">I", await self._recv(4))
        self.server_name = (await self._recv(name_length)).decode("utf-8", errors="replace")
        self._fb = Framebuffer(width, height)

        if self._set_pixel_format:
            self.pixel_format = PREFERRED_PIXEL_FORMAT
            await self._send(struct.pack(">B3x", MSG_SET_PIXEL_FORMAT) + self._pack_pixel_format(self.pixel_format))
        else:
            if not native.true_colour:
                raise ProtocolError("Server pixel format uses a colour map")
            self.pixel_format = native

        await self._send(
            struct.pack(">BxH", MSG_SET_ENCODINGS, len(PREFERRED_ENCODINGS))
            + b"".join(struct.pack(">i", e) for e in PREFERRED_ENCODINGS)
        )
        await self._request_update(incremental=False)
        while not await self._read_message():
            pass

    async def _negotiate_version(self) -> None:
        banner = await self._recv(12)
        if not banner.startswith(b"RFB "):
            raise ProtocolError(f"Not an RFB server: {banner!r}")
        try:
            major, minor = int(banner[4:7]), int(banner[8:11])
        except ValueError:
            raise ProtocolError(f"Malformed RFB version: {banner!r}") from None

        if major < 3:
            raise ProtocolError(f"Unsupported RFB version {major}.{minor}")
        if major > 3 or minor >= 8:
            self._version = (3, 8)
        elif minor == 7:
            self._version = (3, 7)
        else:
            self._version = (3, 3)
        await self._send(b"RFB %03d.%03d\n" % self._version)

    async def _authenticate(self) -> None:
        if self._version == (3, 3):
            (security,) = struct.unpack(">I", await self._recv(4))
            if security == SECURITY_INVALID:
                raise ProtocolError(f"Server refused connection: {await self._read_reason()}")
        else:
            (count,) = struct.unpack(">B", await self._recv(1))
            if count == 0:
                raise ProtocolError(f"Server refused connection: {await self._read_reason()}")
            offered = set(await self._recv(count))
            if SECURITY_VNC_AUTH in offered and (self.config.password or SECURITY_NONE not in offered):
                security = SECURITY_VNC_AUTH
            elif SECURITY_NONE in offered:
                security = SECURITY_NONE
            else:
                raise ProtocolError(f"No supported security type in {sorted(offered)}")
            await self._send(bytes([security]))

        if security == SECURITY_VNC_AUTH:
            challenge = await self._recv(16)
            await self._send(_auth_response(challenge, self.config.password or ""))
        elif security != SECURITY_NONE:
            raise ProtocolError(f"Unsupported security type {security}")
        elif self._version != (3, 8):
            # No SecurityResult for the None type before 3.8
            return

        (result,) = struct.unpack(">I", await self._recv(4))
        if result != 0:
            reason = ""
            if self._version == (3, 8):
                try:
                    reason = await self._read_reason()
                except _STREAM_ERRORS:
                    pass
            logger.error(f"VNC authentication rejected by {self.config.host}:{self.config.port} {reason}")
            raise AuthenticationError("VNC authentication failed - wrong password")

    async def _read_reason(self) -> str:
        (length,) = struct.unpack(">I", await self._recv(4))
        return (await self._recv(length)).decode("utf-8", errors="replace")

    @staticmethod
    def _parse_pixel_format(data: bytes) -> PixelFormat:
        bpp, depth, big_endian, true_colour, rmax, gmax, bmax, rshift, gshift, bshift = _PIXEL_FORMAT.unpack(data)
        return PixelFormat(
            bits_per_pixel=bpp, depth=depth, big_endian=bool(big_endian),
            true_colour=bool(true_colour), red_max=rmax, green_max=gmax, blue_max=bmax,
            red_shift=rshift, green_shift=gshift, blue_shift=bshift,
        )

    @staticmethod
    def _pack_pixel_format(fmt: PixelFormat) -> bytes:
        return _PIXEL_FORMAT.pack(
            fmt.bits_per_pixel, fmt.depth, int(fmt.big_endian), int(fmt.true_colour),
            fmt.red_max, fmt.green_max, fmt.blue_max,
            fmt.red_shift, fmt.green_shift, fmt.blue_shift,
        )

    # Wire helpers

    async def _recv(self, count: int) -> bytes:
        if self._reader is None:
            raise anyio.ClosedResourceError
        if count == 0:
            return b""
        return await self._reader.receive_exactly(count)

    async def _send(self, data: bytes) -> None:
        stream = self._stream
        if stream is None:
            raise VNCConnectionError("Not connected to VNC server")
        async with self._send_lock:
            try:
                await stream.send(data)
            except _STREAM_ERRORS as e:
                raise VNCConnectionError(f"VNC send failed: {e}") from e

    async def _request_update(self, incremental: bool) -> None:
        await self._send(struct.pack(
            ">BBHHHH", MSG_FB_UPDATE_REQUEST, int(incremental), 0, 0, self.width, self.height
        ))

    # Server messages

    async def _read_loop(self, scope: anyio.CancelScope) -> None:
        interval = 1.0 / self._fps if self._fps > 0 else 0.2
        with scope:
            try:
                while True:
                    await self._request_update(incremental=True)
                    while not await self._read_message():
                        pass
                    await anyio.sleep(interval)
            except (VNCConnectionError, *_STREAM_ERRORS) as e:
                if self._closing:
                    return
                reason = str(e) or type(e).__name__
                logger.warning(f"VNC connection to {self.config.host}:{self.config.port} lost: {reason}")
                await self._lost()
            except Exception as e:
                if self._closing:
                    return
                logger.error(f"VNC reader failed: {e}", exc_info=True)
                await self._lost()

    async def _lost(self) -> None:
        self.connected = False
        await self._discard()
        if self._on_disconnect:
            self._on_disconnect("VNC connection lost")

    async def _read_message(self) -> bool:
        """Process one server message. Returns True for a framebuffer update."""
        (msg_type,) = await self._recv(1)
        if msg_type == MSG_FB_UPDATE:
            await self._read_update()
            return True
        if msg_type == MSG_SET_COLOUR_MAP:
            _, _, count = struct.unpack(">BHH", await self._recv(5))
            await self._recv(6 * count)
        elif msg_type == MSG_BELL:
            pass
        elif msg_type == MSG_SERVER_CUT_TEXT:
            (length,) = struct.unpack(">3xI", await self._recv(7))
            text = (await self._recv(length)).decode("latin-1")
            if self._on_clipboard:
                self._on_clipboard(text)
        else:
            raise ProtocolError(f"Unknown server message type {msg_type}")
        return False

    async def _read_update(self) -> None:
        (count,) = struct.unpack(">xH", await self._recv(3))
        fmt = self.pixel_format
        for _ in range(count):
            x, y, w, h, encoding = struct.unpack(">HHHHi", await self._recv(12))
            if encoding == ENCODING_RAW:
                data = await self._recv(w * h * fmt.bytes_per_pixel)
                if w and h:
                    self._fb.put_rgba(x, y, w, h, decode_pixels(data, fmt))
            elif encoding == ENCODING_COPY_RECT:
                src_x, src_y = struct.unpack(">HH", await self._recv(4))
                self._fb.copy_rect(src_x, src_y, x, y, w, h)
            elif encoding == ENCODING_ZRLE:
                (length,) = struct.unpack(">I", await self._recv(4))
                data = await self._recv(length)
                self._zrle.decode(data, self._fb, fmt, x, y, w, h)
            elif encoding == ENCODING_DESKTOP_SIZE:
                logger.info(f"VNC desktop resized to {w}x{h}")
                self._fb.resize(w, h)
            else:
                raise ProtocolError(f"Unsupported encoding {encoding}")

    # Screenshots

    async def capture_screenshot_with_change_info(self, fmt: str = "jpeg", quality: int = 80,
                                                  force_capture: bool = False) -> Screenshot:
        """Encode the framebuffer, reusing the cached image if nothing changed."""
        if not self.connected or self._fb is None:
            raise VNCConnectionError("Not connected to VNC server")
        mime_type = "image/jpeg" if fmt == "jpeg" else "image/png"
        pixels = self._fb.pixels
        current = frame_hash(pixels)
        key = (fmt, quality)

        if (not force_capture and self._last_screenshot is not None
                and current == self._last_hash and key == self._last_key):
            self._unchanged_count += 1
            if self._unchanged_count % 10 == 0:
                logger.debug(f"Frame unchanged ({self._unchanged_count} captures), returning cached")
            return Screenshot(self._last_screenshot, False, mime_type)

        self._unchanged_count = 0
        started = time.monotonic()
        encoded = await anyio.to_thread.run_sync(framebuffer.encode_frame, pixels.copy(), fmt, quality)
        data = to_base64(encoded)
        self._last_hash = current
        self._last_key = key
        self._last_screenshot = data
        logger.debug(
            f"Encoded {self.width}x{self.height} {fmt.upper()} in "
            f"{(time.monotonic() - started) * 1000:.0f}ms ({len(data) / 1024:.1f}KB)"
        )
        return Screenshot(data, True, mime_type)

    async def capture_screenshot(self, fmt: str = "jpeg", quality: int = 80,
                                 force_capture: bool = False) -> str:
        result = await self.capture_screenshot_with_change_info(fmt, quality, force_capture)
        return result.data

    # Input

    def _clamp(self, x: float, y: float) -> tuple[int, int]:
        x, y = int(round(x)), int(round(y))
        if self._fb is not None:
            x = min(max(x, 0), self.width - 1)
            y = min(max(y, 0), self.height - 1)
        return max(x, 0), max(y, 0)

    async def send_pointer(self, x: float, y: float, buttons: int = 0) -> None:
        x, y = self._clamp(x, y)
        await self._send(struct.pack(">BBHH", MSG_POINTER_EVENT, buttons, x, y))

    async def send_key(self, keysym: int, down: bool) -> None:
        await self._send(struct.pack(">BBxxI", MSG_KEY_EVENT, int(down), keysym))

    async def move_mouse(self, x: float, y: float) -> None:
        await self.send_pointer(x, y)
        await anyio.sleep(0.01)

    async def click(self, x: float, y: float, button: int = BUTTON_LEFT) -> None:
        # Servers drop press/release pairs that arrive without any gap
        await self.send_pointer(x, y)
        await anyio.sleep(0.01)
        await self.send_pointer(x, y, button)
        await anyio.sleep(0.05)
        await self.send_pointer(x, y)

    async def double_click(self, x: float, y: float) -> None:
        await self.click(x, y)
        await anyio.sleep(0.1)
        await self.click(x, y)

    async def right_click(self, x: float, y: float) -> None:
        await self.click(x, y, BUTTON_RIGHT)

    async def drag(self, start_x: float, start_y: float, end_x: float, end_y: float,
                   steps: int = 10) -> None:
        await self.send_pointer(start_x, start_y)
        await anyio.sleep(0.01)
        await self.send_pointer(start_x, start_y, BUTTON_LEFT)
        await anyio.sleep(0.05)
        for i in range(1, steps + 1):
            x = start_x + (end_x - start_x) * i / steps
            y = start_y + (end_y - start_y) * i / steps
            await self.send_pointer(x, y, BUTTON_LEFT)
            await anyio.sleep(0.02)
        await self.send_pointer(end_x, end_y)

    async def scroll(self, direction: str, clicks: int = 3,
                     x: Optional[float] = None, y: Optional[float] = None) -> None:
        wheel = {"up": WHEEL_UP, "down": WHEEL_DOWN, "left": WHEEL_LEFT, "right": WHEEL_RIGHT}.get(direction)
        if wheel is None:
            raise ValueError(f"Invalid scroll direction: {direction}")
        x = self.width / 2 if x is None else x
        y = self.height / 2 if y is None else y
        await self.send_pointer(x, y)
        await anyio.sleep(0.01)
        for _ in range(clicks):
            await self.send_pointer(x, y, wheel)
            await anyio.sleep(0.05)
            await self.send_pointer(x, y)
            await anyio.sleep(0.05)

    async def type_text(self, text: str) -> None:
        for char in text:
            keysym = keysyms.char_to_keysym(char)
            shifted = keysyms.needs_shift(char)
            if shifted:
                await self.send_key(keysyms.SHIFT, True)
                await anyio.sleep(0.01)
            await self.send_key(keysym, True)
            await anyio.sleep(0.02)
            await self.send_key(keysym, False)
            if shifted:
                await anyio.sleep(0.01)
                await self.send_key(keysyms.SHIFT, False)
            await anyio.sleep(0.03)

    async def press_key(self, key: str) -> None:
        keysym = keysyms.key_to_keysym(key)
        await self.send_key(keysym, True)
        await anyio.sleep(0.05)
        await self.send_key(keysym, False)

    async def hotkey(self, keys: list[str]) -> None:
        """Press keys in order and release them in reverse order."""
        resolved = [keysyms.key_to_keysym(k) for k in keys]
        for keysym in resolved:
            await self.send_key(keysym, True)
            await anyio.sleep(0.02)
        for keysym in reversed(resolved):
            await self.send_key(keysym, False)
            await anyio.sleep(0.02)

    async def perform(self, action: DesktopAction) -> None:
        """Translate one desktop action into protocol messages."""
        if not self.connected:
            raise VNCConnectionError("Not connected to VNC server")
        kind = action.type

        if kind in (ActionType.CLICK, ActionType.DOUBLE_CLICK, ActionType.RIGHT_CLICK, ActionType.MOVE):
            x, y = _require_point(action)
            if kind == ActionType.CLICK:
                await self.click(x, y)
            elif kind == ActionType.DOUBLE_CLICK:
                await self.double_click(x, y)
            elif kind == ActionType.RIGHT_CLICK:
                await self.right_click(x, y)
            else:
                await self.move_mouse(x, y)
        elif kind == ActionType.DRAG:
            x, y = _require_point(action)
            if action.end_x is None or action.end_y is None:
                raise ValueError("drag requires end_x and end_y")
            await self.drag(x, y, action.end_x, action.end_y)
        elif kind == ActionType.SCROLL:
            await self.scroll(action.direction or "down", action.amount or 3, action.x, action.y)
        elif kind == ActionType.TYPE:
            if action.text is None:
                raise ValueError("type requires text")
            await self.type_text(action.text)
        elif kind == ActionType.KEY:
            if not action.key:
                raise ValueError("key requires key")
            await self.press_key(action.key)
        elif kind == ActionType.HOTKEY:
            if not action.keys:
                raise ValueError("hotkey requires keys")
            await self.hotkey(action.keys)
        elif kind == ActionType.WAIT:
            await anyio.sleep((action.duration or 1000) / 1000)
        elif kind == ActionType.SCREENSHOT:
            pass
        else:
            raise ValueError(f"Unknown action type: {kind}")


def _require_point(action: DesktopAction) -> tuple[int, int]:
    if action.x is None or action.y is None:
        raise ValueError(f"{action.type.value} requires x and y")
    return action.x, action.y
