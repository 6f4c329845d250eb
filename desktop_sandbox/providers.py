"""
Computer Use provider interface.

A provider is an external vision/action model: given a screenshot and an
instruction it returns the next input action, or declares the instruction
complete. Concrete providers live outside this package and are registered
under the ``desktop_sandbox.providers`` entry-point group.
"""
import logging
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Optional, Protocol

from .models import Viewport

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "desktop_sandbox.providers"

# Providers that emit coordinates on a fixed 0-1000 grid instead of pixels
NORMALIZED_COORDINATE_SCALES = {
    "google": 1000,
}


@dataclass(frozen=True)
class ComputerUseAction:
    type: str
    x: Optional[int] = None
    y: Optional[int] = None
    text: Optional[str] = None
    key: Optional[str] = None
    keys: Optional[list[str]] = None
    direction: Optional[str] = None
    amount: Optional[int] = None
    start_x: Optional[int] = None
    start_y: Optional[int] = None
    end_x: Optional[int] = None
    end_y: Optional[int] = None
    duration: Optional[int] = None


@dataclass(frozen=True)
class ComputerUseRequest:
    screenshot: str
    instruction: str
    screen_size: Viewport
    screenshot_mime_type: str = "image/jpeg"
    history: list = field(default_factory=list)
    continuation_tokens: Optional[dict] = None
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class ComputerUseResponse:
    is_complete: bool
    action: Optional[ComputerUseAction] = None
    result: Optional[str] = None
    reasoning: Optional[str] = None
    continuation_tokens: Optional[dict] = None


class ComputerUseProvider(Protocol):
    async def get_action(self, request: ComputerUseRequest) -> ComputerUseResponse:
        ...


def coordinate_scale(provider_name: Optional[str]) -> Optional[int]:
    if not provider_name:
        return None
    return NORMALIZED_COORDINATE_SCALES.get(provider_name)


def load_provider(name: str) -> Optional[ComputerUseProvider]:
    """Instantiate the provider registered under ``name``, if installed."""
    for entry in entry_points(group=ENTRY_POINT_GROUP):
        if entry.name == name:
            factory = entry.load()
            return factory()
    logger.warning(f"Computer Use provider not available: {name}")
    return None
