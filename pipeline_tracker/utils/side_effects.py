"""
Best-effort side effect runner.
Commit statuses and notifications go through here: bounded by a timeout,
failures logged as SideEffectFailure and swallowed. Cancellation still propagates.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional

from pipeline_tracker.core.errors import SideEffectFailure

logger = logging.getLogger(__name__)


async def best_effort(effect: str, awaitable: Awaitable[Any], timeout: float) -> Optional[Any]:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s", SideEffectFailure(effect, f"timed out after {timeout:g}s"))
    except Exception as e:
        logger.error("%s", SideEffectFailure(effect, str(e)))
    return None
