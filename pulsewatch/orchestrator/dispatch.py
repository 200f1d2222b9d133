"""Pulsewatch — Dispatch Gateway.

Turns a created pulse into one worker invocation per playlist slot. All
invocations are fired concurrently and each one ends in exactly one
``DispatchOutcome``; a failure never rolls back the pulse, which is left to
complete with what arrives or to time out.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from pulsewatch.config import settings
from pulsewatch.connectors.worker.base import (
    WorkerAcknowledgementTimeout,
    WorkerInvocationError,
    WorkerInvoker,
)
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.dispatch")


class DispatchOutcome(str, Enum):
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    UNKNOWN = "unknown"  # Sent, not acknowledged; settled by the pulse timeout


class SlotRef(BaseModel):
    id: int
    device: str
    location: str


class DispatchJob(BaseModel):
    """Everything needed to fire a pulse's invocations after the request ends."""

    pulse_slug: str
    url: str
    account_id: str
    slots: List[SlotRef]
    invoke_url: Optional[str] = None
    """Target-specific worker endpoint; the configured one when unset."""


class DispatchResult(BaseModel):
    slot_id: int
    outcome: DispatchOutcome
    error: Optional[str] = None


def build_payload(job: DispatchJob, slot: SlotRef) -> Dict[str, Any]:
    """Invocation payload for one slot."""
    return {
        "pulse_slug": job.pulse_slug,
        "url": job.url,
        "slot_id": slot.id,
        "device": slot.device,
        "location": slot.location,
        "account_id": job.account_id,
        "is_beta": settings.is_beta,
        "features": list(settings.feature_flags),
        "heartbeat_path": f"/pulses/{job.pulse_slug}/heartbeats",
    }


async def _invoke_slot(
    invoker: WorkerInvoker, job: DispatchJob, slot: SlotRef
) -> DispatchResult:
    log_extra = {"pulse_slug": job.pulse_slug, "slot_id": slot.id}
    started = time.perf_counter()
    try:
        await invoker.invoke(build_payload(job, slot), invoke_url=job.invoke_url)
    except WorkerAcknowledgementTimeout as e:
        logger.warning(f"Invocation unacknowledged: {e}", extra=log_extra)
        return DispatchResult(slot_id=slot.id, outcome=DispatchOutcome.UNKNOWN, error=str(e))
    except WorkerInvocationError as e:
        logger.error(f"Invocation failed: {e}", extra=log_extra)
        return DispatchResult(
            slot_id=slot.id, outcome=DispatchOutcome.DISPATCH_FAILED, error=str(e)
        )
    except Exception as e:
        logger.exception("Invocation raised unexpectedly", extra=log_extra)
        return DispatchResult(
            slot_id=slot.id, outcome=DispatchOutcome.DISPATCH_FAILED, error=str(e)
        )

    duration_ms = round((time.perf_counter() - started) * 1000, 1)
    logger.info(
        "Worker invoked", extra={**log_extra, "duration_ms": duration_ms}
    )
    return DispatchResult(slot_id=slot.id, outcome=DispatchOutcome.DISPATCHED)


async def dispatch(job: DispatchJob, invoker: WorkerInvoker) -> List[DispatchResult]:
    """Fire every slot of the job. Never raises."""
    results = await asyncio.gather(
        *(_invoke_slot(invoker, job, slot) for slot in job.slots)
    )
    failed = sum(1 for r in results if r.outcome != DispatchOutcome.DISPATCHED)
    logger.info(
        f"Dispatched {len(results) - failed}/{len(results)} slots",
        extra={"pulse_slug": job.pulse_slug},
    )
    return list(results)
