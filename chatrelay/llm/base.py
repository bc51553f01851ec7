"""Provider adapter interface.

Architectural role:
    Every backend is wrapped in one `ProviderAdapter`. The fallback orchestrator
    only sees `invoke()` (complete payload) and, for streaming-capable backends,
    `stream()` (ordered async chunk sequence). Backend request/response schemas
    stay inside the concrete adapters.

Asynchronous job backends:
    `PollingProviderAdapter` implements submit -> poll-until-terminal with a
    bounded number of polls and a fixed delay. Exceeding the ceiling raises
    `ProviderTimeout`, which the orchestrator records as one `timeout` attempt.
    Cancellation or ceiling exhaustion asks the backend to drop the job.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from chatrelay.core.errors import ProviderTimeout


logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """Invoke capability for one backend."""

    provider_id: str = "provider"
    supports_streaming: bool = False

    @abstractmethod
    async def invoke(self, request: Any) -> Any:
        """Run one request to completion and return the final payload."""

    def stream(self, request: Any) -> AsyncIterator[str]:
        """Return the backend's incremental text output."""
        raise NotImplementedError(f"{self.provider_id} does not support streaming")


class PollingProviderAdapter(ProviderAdapter):
    """Adapter for submit-then-poll backends.

    Subclasses implement `submit`, `poll`, and `collect`; `cancel_job` is
    optional. `poll` returns `None` while the job is still running and a
    terminal status payload once it is done.
    """

    def __init__(self, max_polls: int = 30, poll_interval: float = 2.0):
        self.max_polls = max_polls
        self.poll_interval = poll_interval

    @abstractmethod
    async def submit(self, request: Any) -> str:
        """Start a job and return its id."""

    @abstractmethod
    async def poll(self, job_id: str) -> Optional[Any]:
        """Return the terminal status payload, or `None` while pending."""

    @abstractmethod
    async def collect(self, status: Any, request: Any) -> Any:
        """Turn a terminal status payload into the adapter's result."""

    async def cancel_job(self, job_id: str) -> None:
        return None

    async def invoke(self, request: Any) -> Any:
        job_id = await self.submit(request)
        logger.info("%s job submitted: id=%s", self.provider_id, job_id)

        status = None
        try:
            for attempt in range(1, self.max_polls + 1):
                status = await self.poll(job_id)
                if status is not None:
                    logger.info(
                        "%s job finished: id=%s polls=%d", self.provider_id, job_id, attempt
                    )
                    break
                if attempt < self.max_polls:
                    await asyncio.sleep(self.poll_interval)
        except (asyncio.CancelledError, Exception):
            await self._drop_job(job_id)
            raise

        if status is not None:
            return await self.collect(status, request)

        await self._drop_job(job_id)
        raise ProviderTimeout(
            f"{self.provider_id} job {job_id} timeout after {self.max_polls} polls",
            provider_id=self.provider_id,
        )

    async def _drop_job(self, job_id: str) -> None:
        try:
            await self.cancel_job(job_id)
        except Exception:
            logger.warning(
                "Failed to cancel %s job %s", self.provider_id, job_id, exc_info=True
            )
