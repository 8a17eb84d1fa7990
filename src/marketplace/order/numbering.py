"""Human-readable order numbers: ``PREFIX-YEAR-SEQ``, e.g. ``KAPC-2026-004217``.

The sequence part is random, so two orders can draw the same number. The
order repository rejects a duplicate and the caller asks for a new number;
nothing is ever overwritten.
"""

import random
import re
from datetime import UTC, datetime


class OrderNumberGenerator:
    def __init__(self, prefix: str = "KAPC", digits: int = 6, rng: random.Random | None = None) -> None:
        if digits < 1:
            raise ValueError("digits must be at least 1")
        self.prefix = prefix
        self.digits = digits
        self._rng = rng or random.SystemRandom()
        self._pattern = re.compile(rf"^{re.escape(prefix)}-\d{{4}}-\d{{{digits}}}$")

    def next(self, now: datetime | None = None) -> str:
        year = (now or datetime.now(UTC)).year
        sequence = self._rng.randint(1, 10**self.digits - 1)
        return f"{self.prefix}-{year}-{sequence:0{self.digits}d}"

    def is_valid(self, order_number: str) -> bool:
        return bool(self._pattern.match(order_number))
