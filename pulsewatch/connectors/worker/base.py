"""Pulsewatch — Abstract Worker Invoker."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class WorkerInvocationError(Exception):
    """Raised when a worker invocation was refused or never left this process."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class WorkerAcknowledgementTimeout(Exception):
    """Raised when an invocation was sent but never acknowledged.

    The worker may still be running; only the pulse timeout settles it.
    """


class WorkerInvoker(ABC):
    """Starts one external assessment worker.

    Implementations must return as soon as the worker platform has accepted
    the invocation. They never wait for the assessment itself.
    """

    @abstractmethod
    async def invoke(
        self, payload: Dict[str, Any], invoke_url: Optional[str] = None
    ) -> None:
        """Fire one invocation, at ``invoke_url`` when the target names its own.

        Raises:
            WorkerInvocationError: the invocation was not accepted.
            WorkerAcknowledgementTimeout: the outcome is unknown.
        """
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None
