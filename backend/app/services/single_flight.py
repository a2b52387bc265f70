"""
In-process single-flight gate.

Concurrent calls with the same key share one execution: the first caller
(leader) runs the coroutine, later callers await the leader's outcome,
result or exception. The gate is per process; separate workers may still
run the same key concurrently.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, TypeVar

from app.core.logging_config import logger

T = TypeVar("T")


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Leader failures with no followers must not log "exception never retrieved"
    if not future.cancelled():
        future.exception()


class SingleFlight:
    def __init__(self) -> None:
        self._calls: Dict[Hashable, "asyncio.Future[Any]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def run(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        existing = self._calls.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight call {key}")
            # Shield so a cancelled follower does not cancel the shared outcome
            return await asyncio.shield(existing)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._calls[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._calls.pop(key, None)


# Shared gate for verification calls, keyed by (user, vehicle, service, force_refresh)
verification_flights = SingleFlight()
