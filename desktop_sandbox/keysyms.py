"""X11 keysym lookup for keyboard injection."""
import logging

logger = logging.getLogger(__name__)

KEY_CODES = {
    # Modifiers
    "shift": 0xFFE1,
    "ctrl": 0xFFE3,
    "control": 0xFFE3,
    "alt": 0xFFE9,
    "meta": 0xFFE7,
    "super": 0xFFEB,
    "win": 0xFFEB,
    "windows": 0xFFEB,
    "cmd": 0xFFEB,
    # Function keys
    "f1": 0xFFBE,
    "f2": 0xFFBF,
    "f3": 0xFFC0,
    "f4": 0xFFC1,
    "f5": 0xFFC2,
    "f6": 0xFFC3,
    "f7": 0xFFC4,
    "f8": 0xFFC5,
    "f9": 0xFFC6,
    "f10": 0xFFC7,
    "f11": 0xFFC8,
    "f12": 0xFFC9,
    # Navigation
    "escape": 0xFF1B,
    "esc": 0xFF1B,
    "tab": 0xFF09,
    "backspace": 0xFF08,
    "enter": 0xFF0D,
    "return": 0xFF0D,
    "insert": 0xFF63,
    "delete": 0xFFFF,
    "home": 0xFF50,
    "end": 0xFF57,
    "pageup": 0xFF55,
    "pagedown": 0xFF56,
    "up": 0xFF52,
    "down": 0xFF54,
    "left": 0xFF51,
    "right": 0xFF53,
    "arrowup": 0xFF52,
    "arrowdown": 0xFF54,
    "arrowleft": 0xFF51,
    "arrowright": 0xFF53,
    # Other
    "space": 0x0020,
    "capslock": 0xFFE5,
    "numlock": 0xFF7F,
    "scrolllock": 0xFF14,
    "printscreen": 0xFF61,
    "pause": 0xFF13,
}

SHIFT = KEY_CODES["shift"]

_SPECIAL_CHARS = {
    "\n": KEY_CODES["enter"],
    "\r": KEY_CODES["enter"],
    "\t": KEY_CODES["tab"],
    "\b": KEY_CODES["backspace"],
}

_SHIFT_SYMBOLS = set('~!@#$%^&*()_+{}|:"<>?')


def char_to_keysym(char: str) -> int:
    if char in _SPECIAL_CHARS:
        return _SPECIAL_CHARS[char]
    code = ord(char)
    # Latin-1 keysyms equal their code points; everything else uses the
    # unicode keysym range.
    if 0x20 <= code <= 0x7E or 0xA0 <= code <= 0xFF:
        return code
    return 0x01000000 | code


def needs_shift(char: str) -> bool:
    return "A" <= char <= "Z" or char in _SHIFT_SYMBOLS


def key_to_keysym(key: str) -> int:
    """Resolve a key name ('Enter', 'ctrl', 'a') to a keysym."""
    lowered = key.lower()
    if lowered in KEY_CODES:
        return KEY_CODES[lowered]
    if len(key) == 1:
        return char_to_keysym(key)
    logger.warning(f"Unknown key: {key}, using space")
    return KEY_CODES["space"]
