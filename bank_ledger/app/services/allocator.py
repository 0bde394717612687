from __future__ import annotations

import logging
import random
from typing import Callable, Optional

from ..core.errors import ResourceExhaustedError


logger = logging.getLogger(__name__)

ACCOUNT_SUFFIX_MIN = 10_000_000
ACCOUNT_SUFFIX_MAX = 99_999_999
# Signed 32-bit domain without its most-negative value, so abs() always fits.
TRANSACTION_ID_MAX = 2**31 - 1

IsTaken = Callable[[int], bool]


class IdentifierAllocator:
    """Draws account numbers and transaction ids, re-drawing on collision.

    The draws are random, so uniqueness is only guaranteed when the caller
    supplies an ``is_taken`` check backed by the store. Concurrent draws of the
    same value are caught later, at commit time, by the store itself.
    """

    def __init__(
        self,
        bank_code: str = "8705",
        max_attempts: int = 10,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not bank_code.isdigit() or bank_code.startswith("0"):
            raise ValueError(f"Bank code must be a positive digit string, got {bank_code!r}")
        self.bank_code = bank_code
        self.max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()

    def draw_account_number(self) -> int:
        suffix = self._rng.randint(ACCOUNT_SUFFIX_MIN, ACCOUNT_SUFFIX_MAX)
        return int(f"{self.bank_code}{suffix}")

    def draw_transaction_id(self) -> int:
        return abs(self._rng.randint(-TRANSACTION_ID_MAX, TRANSACTION_ID_MAX))

    def allocate_account_number(self, is_taken: Optional[IsTaken] = None) -> int:
        return self._allocate("account_number", self.draw_account_number, is_taken)

    def allocate_transaction_id(self, is_taken: Optional[IsTaken] = None) -> int:
        return self._allocate("transaction_id", self.draw_transaction_id, is_taken)

    def _allocate(
        self,
        label: str,
        draw: Callable[[], int],
        is_taken: Optional[IsTaken],
    ) -> int:
        for attempt in range(1, self.max_attempts + 1):
            candidate = draw()
            if is_taken is None or not is_taken(candidate):
                return candidate
            logger.warning(
                "identifier.collision",
                extra={"identifier": label, "value": candidate, "attempt": attempt},
            )
        raise ResourceExhaustedError(
            f"No free {label} found after {self.max_attempts} attempts"
        )
