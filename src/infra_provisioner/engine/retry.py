"""Bounded retries for transient provider failures."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from infra_provisioner.engine.errors import ProviderError, TransientError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_factor: float = 0.5
    max_backoff_wait: float = 30.0
    backoff_jitter: float = 0.0

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (1-based)."""
        wait = min(self.max_backoff_wait, self.backoff_factor * (2 ** (attempt - 1)))
        if self.backoff_jitter:
            wait += random.uniform(0, self.backoff_jitter)
        return wait

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        description: str = "",
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> T:
        """Call *fn*, retrying on ``TransientError``.

        After ``max_attempts`` the last transient error is escalated to a
        ``ProviderError`` (chained via ``__cause__``). Any other exception
        propagates immediately.
        """
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except TransientError as exc:
                if attempt >= self.max_attempts:
                    raise ProviderError(
                        f"{description or 'operation'} failed after {attempt} attempts: {exc}"
                    ) from exc
                wait = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description or "operation",
                    attempt,
                    self.max_attempts,
                    wait,
                    exc,
                )
                sleep(wait)
                attempt += 1
