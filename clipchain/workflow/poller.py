"""
Operation Poller
================

Submit / poll / wait over asynchronous remote generation operations.

The poller is a bounded-retry state machine that returns tagged
``OperationResult`` values. It memoises terminal results per handle, keeps at
most one status check in flight per handle, and never waits longer than
``interval * max_attempts`` (plus the duration of the last status check).
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from ..api.base import (
    BaseGenerationService,
    GenerationRequest,
    OperationHandle,
    OperationResult,
    OperationStatus,
    RemoteStatus,
)
from ..core.exceptions import (
    OperationTimeoutError,
    QuotaExceededError,
    ServiceError,
    TransientPollError,
    ValidationError,
)

logger = logging.getLogger(__name__)


DEFAULT_POLL_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


class OperationPoller:
    """
    Drives remote operations of one generation service to a terminal state.

    Args:
        service: Service that submits requests and reads operation status
        poll_retries: How many times a transient status-check failure is
            retried before ``TransientPollError`` is raised
        retry_delay: Seconds between those retries
        sleep: Awaitable sleep function (``asyncio.sleep`` by default)
        clock: Monotonic clock in seconds (``time.monotonic`` by default)
    """

    def __init__(
        self,
        service: BaseGenerationService,
        poll_retries: int = DEFAULT_POLL_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.service = service
        self.poll_retries = poll_retries
        self.retry_delay = retry_delay
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self._terminal: Dict[Tuple[str, str], OperationResult] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @staticmethod
    def _key(handle: OperationHandle) -> Tuple[str, str]:
        return (handle.service, handle.id)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """
        Validate and submit a request.

        Raises:
            SubmissionError: malformed request or immediate remote rejection
            QuotaExceededError: quota exhausted at submit time
        """
        request.validate()
        return await self.service.submit(request)

    async def poll(self, handle: OperationHandle) -> OperationResult:
        """
        Single status check.

        A handle that already reached a terminal state returns the memoised
        result without calling the service again.

        Raises:
            TransientPollError: transport failures outlasted the retry budget
            QuotaExceededError: the service rate-limited the status check
        """
        key = self._key(handle)
        cached = self._terminal.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have resolved it while we waited on the lock
            cached = self._terminal.get(key)
            if cached is not None:
                return cached

            remote = await self._fetch_with_retry(handle)
            result = OperationResult.from_remote(handle, remote)

            if result.is_terminal:
                self._terminal[key] = result
                self._locks.pop(key, None)
                logger.info(f"Operation {handle.id} finished: {result.status.value}")

            return result

    async def wait(
        self,
        handle: OperationHandle,
        interval: float,
        max_attempts: int,
    ) -> OperationResult:
        """
        Poll at a fixed interval until DONE/FAILED or attempts are exhausted.

        Args:
            handle: Operation to wait for
            interval: Seconds between status checks
            max_attempts: Maximum number of status checks

        Returns:
            The terminal result, or a ``TIMED_OUT`` result carrying an
            ``OperationTimeoutError``.
        """
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1", field="max_attempts", value=max_attempts)
        if interval < 0:
            raise ValidationError("interval must be >= 0", field="interval", value=interval)

        start = self._clock()
        deadline = start + interval * max_attempts
        attempts = 0

        while attempts < max_attempts:
            attempts += 1
            result = await self.poll(handle)
            if result.is_terminal:
                return result

            if attempts >= max_attempts:
                break

            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            logger.debug(f"Operation {handle.id} pending (attempt {attempts}/{max_attempts})")
            await self._sleep(min(interval, remaining))

        elapsed = self._clock() - start
        error = OperationTimeoutError(
            f"Operation {handle.id} still pending after {attempts} checks ({elapsed:.1f}s)",
            operation=handle.id,
            attempts=attempts,
            timeout_seconds=interval * max_attempts,
        )
        logger.warning(error.message)
        return OperationResult(
            status=OperationStatus.TIMED_OUT,
            handle=handle,
            reason=error.message,
            error_code="TIMEOUT",
            error=error,
            attempts=attempts,
        )

    async def download(self, result: OperationResult, output_path: Union[str, Path]) -> Path:
        """Durably write the artifact of a DONE result."""
        return await self.service.download_artifact(result, output_path)

    def forget(self, handle: OperationHandle) -> None:
        """
        Drop the memoised result of ``handle`` once its caller has consumed it.

        Memoised results can hold inline artifact bytes, so long-running
        processes must release them; a later ``poll`` asks the service again.
        """
        key = self._key(handle)
        self._terminal.pop(key, None)
        self._locks.pop(key, None)

    @property
    def memoised(self) -> int:
        """Number of terminal results currently held."""
        return len(self._terminal)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _fetch_with_retry(self, handle: OperationHandle) -> RemoteStatus:
        failures = 0
        while True:
            try:
                return await self.service.fetch_operation(handle)
            except QuotaExceededError:
                # Retrying a rate-limited call only makes it worse
                raise
            except ServiceError as e:
                if not e.recoverable:
                    # The service rejected the status check itself, e.g. an
                    # unknown operation; that is a remote failure
                    return RemoteStatus(
                        done=True,
                        error_code=str(e.status_code or e.code),
                        error_message=e.message,
                    )

                failures += 1
                if failures > self.poll_retries:
                    raise TransientPollError(
                        f"Status check for {handle.id} failed {failures} times: {e.message}",
                        service=handle.service,
                        attempts=failures,
                    ) from e

                logger.warning(
                    f"Transient poll error for {handle.id} ({failures}/{self.poll_retries}): {e.message}"
                )
                await self._sleep(self.retry_delay)
