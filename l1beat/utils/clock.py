"""Time helpers shared by services.

Services take a ``clock`` and a ``sleep`` callable so tests can drive time
without waiting on real pacing delays.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


async def pause(sleep: Sleeper, seconds: float) -> None:
    """Sleep for ``seconds`` unless the delay is disabled (<= 0)."""
    if seconds > 0:
        await sleep(seconds)


default_sleep: Sleeper = asyncio.sleep
