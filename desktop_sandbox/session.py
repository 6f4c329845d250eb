"""
Desktop session instance.

Wraps one RFB connection and runs the observe/act instruction loop against
a Computer Use provider. Status changes, screenshots, actions and click
markers are reported to a single listener as typed events.
"""
import dataclasses
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

import anyio
from anyio.abc import TaskGroup

from .cancel import CancelToken
from .errors import ProvisioningCancelled, VNCConnectionError
from .events import (
    ActionCompleted,
    ActionStarted,
    ClickMarkerPlaced,
    ScreenshotCaptured,
    SessionUpdated,
    StatusChanged,
)
from .models import (
    CLICK_ACTIONS,
    CONNECTED_STATUSES,
    ActionResult,
    ActionType,
    ClickMarker,
    DesktopAction,
    DesktopSession,
    InstructionContext,
    InstructionResult,
    SandboxInfo,
    SessionConfig,
    SessionStatus,
    Viewport,
    VNCConfig,
)
from .providers import ComputerUseAction, ComputerUseProvider, ComputerUseRequest, coordinate_scale
from .rfb import RFBClient

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = Viewport(1024, 768)


class DesktopSessionInstance:
    """
    One desktop session: a live VNC connection plus its state machine.

    provisioning -> starting -> active <-> busy -> closed, with error
    reachable from every non-terminal state.
    """

    # Pause after an input action before capturing its result
    settle_delay = 0.1
    # Pause between instruction loop steps
    step_delay = 0.2

    def __init__(self, config: SessionConfig, sandbox: SandboxInfo, task_group: TaskGroup,
                 listener: Optional[Callable] = None,
                 provider: Optional[ComputerUseProvider] = None):
        self.id = str(uuid.uuid4())
        self.name = config.name or f"Desktop {self.id[:8]}"
        self.config = config
        self.sandbox = sandbox
        self.status = SessionStatus.PROVISIONING
        self.error: Optional[str] = None
        self.created_at = datetime.now()
        self.last_screenshot: Optional[str] = None
        self.last_screenshot_at: Optional[datetime] = None

        self._task_group = task_group
        self._listener = listener
        self._provider = provider
        self._client: Optional[RFBClient] = None
        self._capture_scope: Optional[anyio.CancelScope] = None
        self._busy = False
        self._click_markers = 0
        self._history: list[dict] = []

    # State

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def viewport(self) -> Viewport:
        if self._client is not None and self._client.width:
            return Viewport(self._client.width, self._client.height)
        return self.config.viewport or DEFAULT_VIEWPORT

    def snapshot(self) -> DesktopSession:
        vnc = None
        if self._client is not None:
            vnc = dataclasses.replace(
                self._client.connection_info(),
                connected=self.status in CONNECTED_STATUSES,
            )
        return DesktopSession(
            id=self.id,
            name=self.name,
            status=self.status,
            sandbox=dataclasses.replace(self.sandbox),
            viewport=self.viewport,
            created_at=self.created_at,
            vnc=vnc,
            last_screenshot=self.last_screenshot,
            last_screenshot_at=self.last_screenshot_at,
            error=self.error,
        )

    def update_sandbox(self, **changes) -> None:
        for key, value in changes.items():
            setattr(self.sandbox, key, value)
        self._emit(SessionUpdated(self.id, {"sandbox": dataclasses.replace(self.sandbox)}))

    async def fail(self, message: str) -> None:
        """Drop the connection and park the session in ``error``."""
        await self._teardown()
        self._set_status(SessionStatus.ERROR, message)

    def _set_status(self, status: SessionStatus, error: Optional[str] = None) -> None:
        if self.status == SessionStatus.CLOSED:
            return
        self.status = status
        self.error = error
        self._emit(StatusChanged(self.id, status.value, error))

    def _emit(self, event) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception as e:
            logger.warning(f"Session {self.id[:8]} event listener failed: {e}")

    # Lifecycle

    async def initialize(self, vnc: VNCConfig, token: Optional[CancelToken] = None,
                         mark_error: bool = True) -> None:
        """Connect to the VNC server and take the first screenshot.

        Cancellation through ``token`` leaves the status untouched so that
        an aborted provisioning never reports an error.
        """
        tag = f"[{self.id[:8]}]"
        token = token or CancelToken()
        self._set_status(SessionStatus.STARTING)
        try:
            token.raise_if_cancelled()
            self._client = RFBClient(vnc, on_disconnect=self._on_disconnect)
            await token.run(self._client.connect, self._task_group)
            token.raise_if_cancelled()

            interval = self.config.screenshot_interval
            if interval and interval > 0:
                logger.info(f"{tag} Starting periodic screenshots every {interval}s")
                self._start_periodic_capture(interval)

            await token.run(self.capture_screenshot)
            self._set_status(SessionStatus.ACTIVE)
            logger.info(f"{tag} Session is now active ({self.viewport.width}x{self.viewport.height})")
        except ProvisioningCancelled:
            logger.info(f"{tag} Initialization cancelled")
            await self._teardown()
            raise
        except Exception as e:
            logger.warning(f"{tag} Initialization failed: {e}")
            await self._teardown()
            if mark_error:
                self._set_status(SessionStatus.ERROR, str(e))
            raise

    async def reset_for_retry(self) -> None:
        """Drop a half-open connection so :meth:`initialize` can run again."""
        await self._teardown()
        if self.status != SessionStatus.CLOSED:
            self.status = SessionStatus.PROVISIONING
            self.error = None

    async def close(self) -> None:
        await self._teardown()
        self._set_status(SessionStatus.CLOSED)

    async def _teardown(self) -> None:
        self._stop_periodic_capture()
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()

    def _on_disconnect(self, reason: str) -> None:
        if self.status not in (SessionStatus.CLOSED, SessionStatus.ERROR):
            logger.warning(f"[{self.id[:8]}] {reason} (status was {self.status.value})")
            self._set_status(SessionStatus.ERROR, reason)

    # Screenshots

    async def capture_screenshot(self) -> str:
        """Capture the screen; emits an event only when the frame changed."""
        if not self.is_connected:
            raise VNCConnectionError("VNC not connected")
        shot = await self._client.capture_screenshot_with_change_info()
        self._remember(shot.data)
        if shot.changed:
            self._emit(ScreenshotCaptured(self.id, shot.data))
        return shot.data

    def _remember(self, screenshot: str) -> None:
        self.last_screenshot = screenshot
        self.last_screenshot_at = datetime.now()

    def _start_periodic_capture(self, interval: float) -> None:
        self._stop_periodic_capture()
        self._capture_scope = anyio.CancelScope()
        self._task_group.start_soon(self._capture_loop, interval, self._capture_scope)

    def _stop_periodic_capture(self) -> None:
        if self._capture_scope is not None:
            self._capture_scope.cancel()
            self._capture_scope = None

    async def _capture_loop(self, interval: float, scope: anyio.CancelScope) -> None:
        with scope:
            while True:
                await anyio.sleep(interval)
                # Never interleave with a caller's action
                if self._busy or not self.is_connected:
                    continue
                try:
                    await self.capture_screenshot()
                except Exception as e:
                    logger.warning(f"[{self.id[:8]}] Periodic screenshot failed: {e}")

    # Actions

    async def execute_action(self, action: DesktopAction) -> ActionResult:
        if self._busy:
            return ActionResult(False, action, error="Session is busy with another action")
        self._busy = True
        try:
            return await self._run_action(action)
        finally:
            self._busy = False
            self._settle()

    def _settle(self) -> None:
        if self.status == SessionStatus.BUSY:
            self._set_status(SessionStatus.ACTIVE)

    async def _run_action(self, action: DesktopAction) -> ActionResult:
        if not self.is_connected or self.status not in CONNECTED_STATUSES:
            return ActionResult(False, action, error="VNC not connected")

        action_id = action.action_id or str(uuid.uuid4())
        action.action_id = action_id
        self._emit(ActionStarted(self.id, action_id, action))
        if self.status != SessionStatus.BUSY:
            self._set_status(SessionStatus.BUSY)

        started = time.monotonic()
        try:
            await self._client.perform(action)
            await anyio.sleep(self.settle_delay)
            shot = await self._client.capture_screenshot_with_change_info()
            self._remember(shot.data)
            # Always show the outcome of an action, changed or not
            self._emit(ScreenshotCaptured(self.id, shot.data))
            result = ActionResult(True, action, screenshot=shot.data,
                                  duration=int((time.monotonic() - started) * 1000))
        except Exception as e:
            result = ActionResult(False, action, error=str(e) or type(e).__name__,
                                  duration=int((time.monotonic() - started) * 1000))

        if action.type in CLICK_ACTIONS and action.x is not None and action.y is not None:
            self._emit_click_marker(action.x, action.y, action.type.value)
        elif action.type == ActionType.DRAG and action.x is not None and action.y is not None:
            self._emit_click_marker(action.x, action.y, "drag_start")
            if action.end_x is not None and action.end_y is not None:
                self._emit_click_marker(action.end_x, action.end_y, "drag_end")

        self._emit(ActionCompleted(self.id, action_id, action, result))
        return result

    def _emit_click_marker(self, x: int, y: int, kind: str) -> None:
        self._click_markers += 1
        marker = ClickMarker(
            id=str(uuid.uuid4()), x=x, y=y, type=kind,
            number=self._click_markers, timestamp=time.time(),
        )
        self._emit(ClickMarkerPlaced(self.id, marker))

    async def execute_instruction(self, instruction: str,
                                  context: Optional[InstructionContext] = None) -> InstructionResult:
        """Let the Computer Use provider drive the desktop until it reports completion."""
        context = context or InstructionContext()
        if self._provider is None:
            return InstructionResult(False, 0, error="No Computer Use provider configured")
        if self._busy:
            return InstructionResult(False, 0, error="Session is busy with another instruction")
        if not self.is_connected or self.status not in CONNECTED_STATUSES:
            return InstructionResult(False, 0, error=f"VNC not connected (status {self.status.value})")

        self._busy = True
        self._set_status(SessionStatus.BUSY)
        tag = f"[{self.id[:8]}]"
        max_steps = context.max_steps or 10
        tokens = context.continuation_tokens
        executed: list[DesktopAction] = []
        steps = 0
        logger.info(f"{tag} Starting instruction (max {max_steps} steps): {instruction!r}")

        try:
            while steps < max_steps:
                steps += 1
                screenshot = await self.capture_screenshot()
                started = time.monotonic()
                response = await self._provider.get_action(ComputerUseRequest(
                    screenshot=screenshot,
                    instruction=instruction,
                    screen_size=self.viewport,
                    history=list(self._history),
                    continuation_tokens=tokens,
                    conversation_id=context.conversation_id,
                ))
                tokens = response.continuation_tokens
                logger.info(
                    f"{tag} Step {steps}/{max_steps}: model answered in "
                    f"{(time.monotonic() - started) * 1000:.0f}ms, complete={response.is_complete}"
                )
                if response.reasoning:
                    logger.info(f"{tag} Model reasoning: {response.reasoning}")

                if response.is_complete:
                    logger.info(f"{tag} Instruction complete after {steps} steps: {response.result}")
                    return InstructionResult(True, steps, executed, result=response.result,
                                             final_screenshot=screenshot)

                if response.action is None:
                    logger.warning(f"{tag} Model returned no action and did not complete")
                else:
                    try:
                        action = self._convert_action(response.action)
                    except ValueError as e:
                        logger.warning(f"{tag} Unusable action from model: {e}")
                        self._history.append({"action": response.action.type, "success": False, "error": str(e)})
                    else:
                        result = await self._run_action(action)
                        executed.append(action)
                        self._history.append({
                            "action": action.type.value,
                            "success": result.success,
                            "error": result.error,
                        })
                        # The model sees a failed step in the next screenshot
                        if not result.success:
                            logger.warning(f"{tag} Action {action.type.value} failed: {result.error}")

                await anyio.sleep(self.step_delay)

            return InstructionResult(
                False, steps, executed,
                error=f"Max steps ({max_steps}) reached without completion",
                final_screenshot=self.last_screenshot,
            )
        except VNCConnectionError as e:
            self._set_status(SessionStatus.ERROR, str(e))
            return InstructionResult(False, steps, executed, error=str(e))
        except Exception as e:
            logger.error(f"{tag} Instruction failed: {e}", exc_info=True)
            return InstructionResult(False, steps, executed, error=str(e) or type(e).__name__)
        finally:
            self._busy = False
            self._settle()

    def _convert_action(self, cu_action: ComputerUseAction) -> DesktopAction:
        try:
            kind = ActionType(cu_action.type)
        except ValueError:
            raise ValueError(f"Unknown action type: {cu_action.type}") from None

        x = cu_action.x if cu_action.x is not None else cu_action.start_x
        y = cu_action.y if cu_action.y is not None else cu_action.start_y
        end_x, end_y = cu_action.end_x, cu_action.end_y

        scale = coordinate_scale(self.config.computer_use_provider)
        if scale:
            viewport = self.viewport
            x, end_x = (_rescale(v, scale, viewport.width) for v in (x, end_x))
            y, end_y = (_rescale(v, scale, viewport.height) for v in (y, end_y))

        return DesktopAction(
            type=kind, x=x, y=y, text=cu_action.text, key=cu_action.key,
            keys=cu_action.keys, direction=cu_action.direction, amount=cu_action.amount,
            end_x=end_x, end_y=end_y, duration=cu_action.duration,
        )


def _rescale(value: Optional[int], scale: int, extent: int) -> Optional[int]:
    if value is None:
        return None
    return round(value / scale * extent)
