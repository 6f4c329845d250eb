"""
Framebuffer storage, pixel decoding and raster encoding.

The framebuffer is always kept as an RGBA ``numpy`` array, whatever pixel
format the server sends. Rectangles are converted on arrival.
"""
import base64
import io
import zlib
from typing import Optional

import numpy as np
from PIL import Image

from .errors import ProtocolError
from .models import PixelFormat

ZRLE_TILE = 64
HASH_SAMPLE_STEP = 997


def cpixel_size(fmt: PixelFormat) -> int:
    """Size of a compressed pixel (ZRLE CPIXEL) for the given format."""
    if (
        fmt.true_colour
        and fmt.bits_per_pixel == 32
        and fmt.depth <= 24
        and (fmt.red_max << fmt.red_shift) < (1 << 24)
        and (fmt.green_max << fmt.green_shift) < (1 << 24)
        and (fmt.blue_max << fmt.blue_shift) < (1 << 24)
    ):
        return 3
    return fmt.bytes_per_pixel


def decode_pixels(data: bytes, fmt: PixelFormat, pixel_size: Optional[int] = None) -> np.ndarray:
    """Convert packed pixels into an (N, 4) uint8 RGBA array."""
    if not fmt.true_colour:
        raise ProtocolError("Colour-map pixel formats are not supported")
    size = pixel_size or fmt.bytes_per_pixel
    raw = np.frombuffer(data, dtype=np.uint8).reshape(-1, size).astype(np.uint32)
    values = np.zeros(raw.shape[0], dtype=np.uint32)
    for i in range(size):
        column = raw[:, size - 1 - i] if fmt.big_endian else raw[:, i]
        values |= column << np.uint32(8 * i)

    out = np.empty((raw.shape[0], 4), dtype=np.uint8)
    for channel, (shift, maximum) in enumerate((
        (fmt.red_shift, fmt.red_max),
        (fmt.green_shift, fmt.green_max),
        (fmt.blue_shift, fmt.blue_max),
    )):
        component = (values >> np.uint32(shift)) & np.uint32(maximum)
        if maximum != 255:
            component = component * 255 // max(maximum, 1)
        out[:, channel] = component
    out[:, 3] = 255
    return out


def frame_hash(pixels: np.ndarray) -> int:
    """Cheap sampled hash used to skip re-encoding unchanged frames."""
    flat = pixels.reshape(-1)
    return zlib.crc32(flat[::HASH_SAMPLE_STEP].tobytes()) ^ flat.size


def encode_frame(pixels: np.ndarray, fmt: str = "jpeg", quality: int = 80) -> bytes:
    """Encode an RGBA frame as JPEG or PNG bytes."""
    height, width = pixels.shape[:2]
    image = Image.frombuffer("RGBA", (width, height), pixels.tobytes(), "raw", "RGBA", 0, 1)
    buf = io.BytesIO()
    if fmt == "jpeg":
        image.convert("RGB").save(buf, format="JPEG", quality=quality, optimize=True)
    elif fmt == "png":
        image.save(buf, format="PNG", compress_level=6)
    else:
        raise ValueError(f"Unsupported screenshot format: {fmt}")
    return buf.getvalue()


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class Framebuffer:
    def __init__(self, width: int, height: int):
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self.pixels[:, :, 3] = 255

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def resize(self, width: int, height: int) -> None:
        resized = np.zeros((height, width, 4), dtype=np.uint8)
        resized[:, :, 3] = 255
        h = min(height, self.height)
        w = min(width, self.width)
        resized[:h, :w] = self.pixels[:h, :w]
        self.pixels = resized

    def _check_bounds(self, x: int, y: int, w: int, h: int) -> None:
        if x + w > self.width or y + h > self.height:
            raise ProtocolError(
                f"Rectangle {w}x{h}+{x}+{y} outside {self.width}x{self.height} framebuffer"
            )

    def put_rgba(self, x: int, y: int, w: int, h: int, rgba: np.ndarray) -> None:
        self._check_bounds(x, y, w, h)
        self.pixels[y:y + h, x:x + w] = rgba.reshape(h, w, 4)

    def fill(self, x: int, y: int, w: int, h: int, colour: np.ndarray) -> None:
        self._check_bounds(x, y, w, h)
        self.pixels[y:y + h, x:x + w] = colour

    def copy_rect(self, src_x: int, src_y: int, x: int, y: int, w: int, h: int) -> None:
        self._check_bounds(src_x, src_y, w, h)
        self._check_bounds(x, y, w, h)
        self.pixels[y:y + h, x:x + w] = self.pixels[src_y:src_y + h, src_x:src_x + w].copy()


class _Cursor:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, count: int) -> bytes:
        end = self.pos + count
        if end > len(self.data):
            raise ProtocolError("Truncated ZRLE data")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def run_length(self) -> int:
        length = 1
        while True:
            b = self.byte()
            length += b
            if b != 255:
                return length


class ZRLEDecoder:
    """
    Decoder for ZRLE rectangles.

    One zlib stream spans the whole connection, so a single decoder instance
    must be used for every ZRLE rectangle the server sends.
    """

    def __init__(self):
        self._inflater = zlib.decompressobj()

    def decode(self, compressed: bytes, fb: Framebuffer, fmt: PixelFormat,
               x: int, y: int, w: int, h: int) -> None:
        try:
            data = self._inflater.decompress(compressed)
        except zlib.error as e:
            raise ProtocolError(f"Corrupt ZRLE stream: {e}") from e
        cursor = _Cursor(data)
        size = cpixel_size(fmt)

        for ty in range(y, y + h, ZRLE_TILE):
            th = min(ZRLE_TILE, y + h - ty)
            for tx in range(x, x + w, ZRLE_TILE):
                tw = min(ZRLE_TILE, x + w - tx)
                self._decode_tile(cursor, fb, fmt, size, tx, ty, tw, th)

    def _decode_tile(self, cursor: _Cursor, fb: Framebuffer, fmt: PixelFormat,
                     size: int, tx: int, ty: int, tw: int, th: int) -> None:
        subencoding = cursor.byte()
        count = tw * th

        if subencoding == 0:
            pixels = decode_pixels(cursor.take(count * size), fmt, size)
            fb.put_rgba(tx, ty, tw, th, pixels)
        elif subencoding == 1:
            colour = decode_pixels(cursor.take(size), fmt, size)[0]
            fb.fill(tx, ty, tw, th, colour)
        elif 2 <= subencoding <= 16:
            palette = decode_pixels(cursor.take(subencoding * size), fmt, size)
            bits = 1 if subencoding == 2 else 2 if subencoding <= 4 else 4
            row_bytes = (tw * bits + 7) // 8
            packed = np.frombuffer(cursor.take(row_bytes * th), dtype=np.uint8).reshape(th, row_bytes)
            unpacked = np.unpackbits(packed, axis=1)
            if bits > 1:
                groups = unpacked[:, : (row_bytes * 8 // bits) * bits].reshape(th, -1, bits)
                weights = (1 << np.arange(bits - 1, -1, -1)).astype(np.uint8)
                indices = (groups * weights).sum(axis=2)
            else:
                indices = unpacked
            indices = indices[:, :tw]
            if indices.max(initial=0) >= len(palette):
                raise ProtocolError("ZRLE palette index out of range")
            fb.put_rgba(tx, ty, tw, th, palette[indices.reshape(-1)])
        elif subencoding == 128:
            out = np.empty((count, 4), dtype=np.uint8)
            filled = 0
            while filled < count:
                colour = decode_pixels(cursor.take(size), fmt, size)[0]
                run = cursor.run_length()
                if filled + run > count:
                    raise ProtocolError("ZRLE run overflows tile")
                out[filled:filled + run] = colour
                filled += run
            fb.put_rgba(tx, ty, tw, th, out)
        elif subencoding >= 130:
            palette = decode_pixels(cursor.take((subencoding - 128) * size), fmt, size)
            out = np.empty((count, 4), dtype=np.uint8)
            filled = 0
            while filled < count:
                index = cursor.byte()
                run = 1
                if index & 0x80:
                    index &= 0x7F
                    run = cursor.run_length()
                if index >= len(palette) or filled + run > count:
                    raise ProtocolError("Invalid ZRLE palette run")
                out[filled:filled + run] = palette[index]
                filled += run
            fb.put_rgba(tx, ty, tw, th, out)
        else:
            raise ProtocolError(f"Invalid ZRLE subencoding {subencoding}")
