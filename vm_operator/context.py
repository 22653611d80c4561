"""Per-pass reconcile context."""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Awaitable, TypeVar

from .credentials import CredentialCache
from .errors import DeadlineExceededError

T = TypeVar("T")


@dataclass
class ReconcileContext:
    """
    State scoped to exactly one reconcile pass.

    Carries the pass deadline and the credential cache. A new context is
    created for every pass and handed down the call chain explicitly.
    """

    deadline: float
    cache: CredentialCache = field(default_factory=CredentialCache)

    @classmethod
    def start(cls, timeout: float) -> "ReconcileContext":
        return cls(deadline=time.monotonic() + timeout)

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    async def call(self, awaitable: Awaitable[T]) -> T:
        """
        Await a remote call without outliving the pass deadline.

        Raises:
            DeadlineExceededError: If the deadline passed before or during the call
        """
        remaining = self.remaining()
        if remaining <= 0:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError("reconcile deadline exceeded")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise DeadlineExceededError("reconcile deadline exceeded") from None
