"""
Tagged outcomes for optional pipeline stages.

An optional stage either produces ``Ok(value)`` or ``Skipped(reason)``; the
orchestrator branches on the tag instead of catching exceptions inline.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..core.errors import Disabled
from ..util.logging import logger


@dataclass
class Ok:
    value: Any


@dataclass
class Skipped:
    reason: str
    error: Optional[BaseException] = None


StageOutcome = Union[Ok, Skipped]


async def run_stage(name: str, stage: Callable[[], Awaitable[Any]], timeout: float = None,
                    user_id: str = None) -> StageOutcome:
    """Run one optional stage and tag its outcome.

    ``Disabled``, timeouts and any other error become ``Skipped``; each is
    logged. Cancellation is never converted.
    """
    try:
        if timeout is not None:
            value = await asyncio.wait_for(stage(), timeout=timeout)
        else:
            value = await stage()
    except Disabled as e:
        logger.log_pipeline_stage(name, "disabled", user_id, {"reason": str(e)})
        return Skipped("disabled", e)
    except asyncio.TimeoutError as e:
        logger.log_pipeline_stage(name, "skipped", user_id, {"reason": "timeout", "timeout_sec": timeout})
        return Skipped("timeout", e)
    except Exception as e:
        logger.log_pipeline_stage(name, "skipped", user_id, {
            "reason": "error",
            "error_type": type(e).__name__,
            "error": str(e)
        })
        return Skipped("error", e)

    logger.log_pipeline_stage(name, "success", user_id)
    return Ok(value)
