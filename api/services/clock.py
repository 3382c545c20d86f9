"""Time and randomness provider for the OTP engine."""

import secrets
from datetime import datetime, timezone


class Clock:
    """Wall clock plus a cryptographically strong code source."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def random_code(self, digits: int = 6) -> str:
        return f"{secrets.randbelow(10 ** digits):0{digits}d}"


default_clock = Clock()
