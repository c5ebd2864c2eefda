from __future__ import annotations

import asyncio
import datetime as dt
from typing import Awaitable, Callable


UtcNow = Callable[[], dt.datetime]
Sleep = Callable[[float], Awaitable[None]]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def get_utcnow() -> UtcNow:
    return utcnow


async def sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def get_sleep() -> Sleep:
    return sleep
