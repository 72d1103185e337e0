"""
Sink Writer

Batches samples and writes them to InfluxDB over HTTP.

Robustness Guarantees:
1. Memory is bounded: past max_buffer the oldest samples are dropped and counted
2. A failed batch is retried with bounded backoff, then dropped and counted
3. Non-retryable failures (bad credentials, malformed request) drop at once
4. Every dropped sample is counted; nothing is lost silently
"""

import asyncio
from dataclasses import dataclass

import httpx

from modbus_influx.common.config import InfluxSettings, SinkSettings
from modbus_influx.common.exceptions import SinkError
from modbus_influx.common.logging_setup import get_service_logger, log_flush
from modbus_influx.common.sample import Sample
from .line_protocol import format_batch, is_writable

logger = get_service_logger("sink.writer")

# Statuses worth retrying: request timeout, rate limiting, server side errors
RETRYABLE_STATUS = frozenset({408, 429})


@dataclass
class FlushResult:
    """Result of writing one batch."""
    success: bool
    samples: int
    attempts: int
    error: str | None = None


def classify_status(status_code: int) -> bool:
    """Return True if a failed write with this status should be retried."""
    return status_code in RETRYABLE_STATUS or status_code >= 500


class SinkWriter:
    """
    Buffers samples from many producers and flushes them from one consumer.

    Features:
    - Size-bounded batches, flushed when full or every flush_interval
    - Retry with backoff (one attempt per retry_backoff entry, plus the first)
    - Drop counters for retries exhausted, non-retryable errors and overflow
    """

    def __init__(
        self,
        influx: InfluxSettings,
        policy: SinkSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.influx = influx
        self.policy = policy or SinkSettings()
        self._transport = transport

        self._buffer: list[Sample] = []
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task | None = None
        self._running = False

        self.written_samples = 0
        self.written_batches = 0
        self.dropped_samples = 0
        self.dropped_batches = 0
        self.overflow_dropped_samples = 0
        self.invalid_samples = 0
        self.retry_count = 0
        self.last_error: str | None = None
        self._auth_failure_logged = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def start(self) -> None:
        """Open the HTTP client and start the flush loop"""
        self._client = self._make_client()
        self._running = True
        self._task = asyncio.create_task(self._flush_loop(), name="sink-flush")
        logger.info(f"Sink writer started ({self.influx.api.value} at {self.influx.write_url})")

    async def stop(self) -> None:
        """Stop the flush loop, flush what is left and close the client"""
        self._running = False
        self._wakeup.set()
        if self._task:
            # Not cancelled: a batch in flight would be lost uncounted
            await self._task
            self._task = None

        await self.flush()

        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Sink writer stopped", extra=self.get_stats())

    async def enqueue(self, samples: list[Sample]) -> None:
        """Add samples to the buffer (safe for many concurrent producers)"""
        writable = [s for s in samples if is_writable(s)]
        invalid = len(samples) - len(writable)
        if invalid:
            self.invalid_samples += invalid
            logger.debug(f"Discarded {invalid} non-finite samples")

        async with self._lock:
            self._buffer.extend(writable)

            overflow = len(self._buffer) - self.policy.max_buffer
            if overflow > 0:
                del self._buffer[:overflow]
                self.overflow_dropped_samples += overflow
                logger.warning(
                    f"Sink buffer full, dropped {overflow} oldest samples",
                    extra={"overflow_dropped_samples": self.overflow_dropped_samples},
                )

            if len(self._buffer) >= self.policy.batch_size:
                self._wakeup.set()

    async def flush(self) -> int:
        """
        Write everything currently buffered.

        Batches are taken off the buffer one at a time, so samples arriving
        during a slow write still count against max_buffer. Samples enqueued
        after the flush began are left for the next flush.

        Returns:
            Number of samples written successfully
        """
        async with self._flush_lock:
            async with self._lock:
                remaining = len(self._buffer)

            written = 0
            while remaining > 0:
                async with self._lock:
                    size = min(self.policy.batch_size, remaining, len(self._buffer))
                    batch = self._buffer[:size]
                    del self._buffer[:size]
                if not batch:
                    break
                remaining -= len(batch)

                result = await self.write_batch(batch)
                if result.success:
                    written += result.samples
            return written

    async def write_batch(self, batch: list[Sample]) -> FlushResult:
        """
        Write one batch with retry logic.

        A transient failure is retried after each retry_backoff delay; once
        the list is exhausted, or on a non-retryable failure, the batch is
        dropped and dropped_samples grows by exactly len(batch).
        """
        if not batch:
            return FlushResult(success=True, samples=0, attempts=0)

        body = format_batch(batch)
        last_error: SinkError | None = None
        attempts = 0

        for attempt, delay in enumerate(list(self.policy.retry_backoff) + [0]):
            attempts = attempt + 1
            try:
                await self._post(body)
                self.written_samples += len(batch)
                self.written_batches += 1
                self._auth_failure_logged = False
                log_flush(logger, len(batch), attempts, success=True)
                return FlushResult(success=True, samples=len(batch), attempts=attempts)

            except SinkError as e:
                last_error = e
                self.last_error = str(e)

                if not e.retryable:
                    self._report_non_retryable(e)
                    break

                if attempt < len(self.policy.retry_backoff):
                    self.retry_count += 1
                    logger.warning(
                        f"Sink write failed (attempt {attempts}/{len(self.policy.retry_backoff) + 1}): {e}"
                    )

            if delay > 0:
                await asyncio.sleep(delay)

        self.dropped_samples += len(batch)
        self.dropped_batches += 1
        log_flush(logger, len(batch), attempts, success=False, error=str(last_error))
        return FlushResult(
            success=False,
            samples=len(batch),
            attempts=attempts,
            error=str(last_error),
        )

    async def _post(self, body: str) -> None:
        if self._client is None:
            self._client = self._make_client()

        try:
            response = await self._client.post(
                self.influx.write_url,
                params=self.influx.write_params(),
                headers=self.influx.headers(),
                content=body.encode("utf-8"),
            )
        except httpx.TimeoutException as e:
            raise SinkError(f"timeout: {e.__class__.__name__}", retryable=True) from e
        except httpx.HTTPError as e:
            raise SinkError(f"{e.__class__.__name__}: {e}", retryable=True) from e

        if response.is_success:
            return

        try:
            error_body = response.text[:500]
        except Exception:
            error_body = "Could not read response body"

        raise SinkError(
            f"HTTP {response.status_code}: {error_body}",
            retryable=classify_status(response.status_code),
            status_code=response.status_code,
        )

    def _report_non_retryable(self, error: SinkError) -> None:
        # Bad credentials recur on every flush: shout once, then stay quieter
        if error.status_code in (401, 403):
            if not self._auth_failure_logged:
                logger.critical(
                    f"Sink rejected credentials, samples will be dropped until fixed: {error}"
                )
                self._auth_failure_logged = True
            else:
                logger.error(f"Sink rejected credentials: {error}")
        else:
            logger.critical(f"Sink rejected batch (not retryable): {error}")

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.policy.timeout, transport=self._transport)

    async def _flush_loop(self) -> None:
        """Flush when a batch is full or every flush_interval"""
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.policy.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Error in sink flush loop: {e}")

    def get_stats(self) -> dict:
        return {
            "pending_samples": self.pending,
            "written_samples": self.written_samples,
            "written_batches": self.written_batches,
            "dropped_samples": self.dropped_samples,
            "dropped_batches": self.dropped_batches,
            "overflow_dropped_samples": self.overflow_dropped_samples,
            "invalid_samples": self.invalid_samples,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }
