"""
Persistence of rotated upstream refresh credentials.

Some payment providers rotate their refresh credential on every use. Once
the provider has issued a new one the old one is dead, so failing to save
the new value locks the integration out until someone re-authorizes by
hand. Writes are retried with capped exponential backoff before giving up
loudly.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import CriticalPersistenceError, ValidationError
from .store import Store


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt."""
        return min(self.base_delay * (self.factor ** attempt), self.max_delay)


class RefreshCredentialStore:
    def __init__(
        self,
        store: Store,
        policy: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._sleep = sleep

    def persist(self, provider: str, refresh_token: str) -> int:
        """
        Save a rotated credential. Returns the number of attempts used.

        Raises CriticalPersistenceError once every attempt has failed.
        """
        if not provider or not refresh_token:
            raise ValidationError("provider and refresh_token are required")

        last_error: Optional[sqlite3.Error] = None
        for attempt in range(self.policy.max_attempts):
            try:
                self.store.save_refresh_token(provider, refresh_token, int(self._clock()))
            except sqlite3.Error as exc:
                last_error = exc
                if attempt + 1 < self.policy.max_attempts:
                    delay = self.policy.delay(attempt)
                    logger.warning(
                        "Persisting %s refresh credential failed (attempt %d/%d), retrying in %.1fs: %s",
                        provider,
                        attempt + 1,
                        self.policy.max_attempts,
                        delay,
                        exc,
                    )
                    self._sleep(delay)
                continue
            if attempt:
                logger.info("Persisted %s refresh credential after %d attempts", provider, attempt + 1)
            return attempt + 1

        logger.critical(
            "Could not persist rotated %s refresh credential after %d attempts; "
            "manual re-authorization required",
            provider,
            self.policy.max_attempts,
        )
        raise CriticalPersistenceError(provider, self.policy.max_attempts, last_error)

    def load(self, provider: str) -> Optional[str]:
        return self.store.get_refresh_token(provider)
