"""Join-all fan-out helpers.

Every multi-adapter operation (quoting, pair discovery, split sampling, split
leg execution) waits for all of its awaitables and then partitions the
outcomes. One failure never cancels or hides the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Settled(Generic[T]):
    """Outcome of one awaitable in a settled fan-out."""

    ok: bool
    value: Optional[T] = None
    error: Optional[Exception] = None


async def gather_settled(*aws: Awaitable[T]) -> list[Settled[T]]:
    """Run awaitables concurrently and return every outcome in input order.

    Exceptions raised by individual awaitables are captured, not propagated.
    Non-``Exception`` errors (cancellation, KeyboardInterrupt) still propagate.
    """
    if not aws:
        return []

    raw = await asyncio.gather(*aws, return_exceptions=True)

    results: list[Settled[T]] = []
    for item in raw:
        if isinstance(item, Exception):
            results.append(Settled(ok=False, error=item))
        elif isinstance(item, BaseException):
            raise item
        else:
            results.append(Settled(ok=True, value=item))
    return results


def partition(results: list[Settled[T]]) -> tuple[list[T], list[Exception]]:
    """Split settled results into (values, errors)."""
    values: list[Any] = [r.value for r in results if r.ok]
    errors = [r.error for r in results if not r.ok and r.error is not None]
    return values, errors
