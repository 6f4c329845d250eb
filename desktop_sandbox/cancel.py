"""Cancellation tokens for provisioning sequences."""
from typing import Awaitable, Callable, TypeVar

import anyio

from .errors import ProvisioningCancelled

T = TypeVar("T")


class CancelToken:
    """
    Cancellation handle shared between a provisioning sequence and
    ``close_session``.

    Every wait in the provisioning path runs through :meth:`run` or
    :meth:`sleep`, which place it inside an anyio cancel scope owned by the
    token. :meth:`cancel` cancels all of those scopes at once, so a blocked
    probe or poll loop unblocks immediately instead of running to its timeout.
    """

    def __init__(self, label: str = ""):
        self.label = label
        self._cancelled = False
        self._scopes: set[anyio.CancelScope] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        for scope in list(self._scopes):
            scope.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ProvisioningCancelled(f"Session creation aborted {self.label}".strip())

    async def run(self, func: Callable[..., Awaitable[T]], *args) -> T:
        """Await ``func(*args)``, aborting with ProvisioningCancelled on cancel."""
        self.raise_if_cancelled()
        with anyio.CancelScope() as scope:
            self._scopes.add(scope)
            try:
                return await func(*args)
            finally:
                self._scopes.discard(scope)
        self.raise_if_cancelled()
        # The scope was cancelled from outside the token; let the caller see it
        raise ProvisioningCancelled("Session creation aborted")

    async def sleep(self, delay: float) -> None:
        await self.run(anyio.sleep, delay)
