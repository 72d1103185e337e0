"""
Register Reader

Reads the register map of one poll target and builds its samples.

A poll attempt holds the endpoint lock for all of the target's read blocks,
so every field derives from one consistent response buffer, and all samples
of the attempt share one capture timestamp.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass

from modbus_influx.common.config import PollTarget
from modbus_influx.common.exceptions import DecodeError, TransportError
from modbus_influx.common.logging_setup import get_service_logger, log_device_read
from modbus_influx.common.sample import Sample
from .connection_pool import ConnectionPool
from .decoder import decode

logger = get_service_logger("device.reader")


@dataclass
class TargetPollState:
    """Communication health of one poll target"""
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_error: str = ""
    last_success_ns: int | None = None

    @property
    def is_online(self) -> bool:
        return self.success_count > 0 and self.consecutive_failures == 0


def build_samples(
    target: PollTarget,
    buffer: dict[int, int],
    timestamp_ns: int,
) -> tuple[list[Sample], int]:
    """
    Decode every field of a target from one response buffer.

    Args:
        target: Poll target whose register map is decoded
        buffer: Register address -> raw word for the whole read
        timestamp_ns: Capture time shared by all samples

    Returns:
        Tuple of (samples, number of fields skipped on decode errors)
    """
    template = target.template
    samples: list[Sample] = []
    skipped = 0

    for register in template.fields:
        try:
            words = [buffer[address] for address in range(register.address, register.end_address + 1)]
            value = decode(words, register.data_type, template.word_order)
        except (KeyError, DecodeError) as e:
            skipped += 1
            logger.warning(
                f"Skipping {target.name}.{register.name}: cannot decode ({e})",
                extra={"target": target.name, "field": register.name},
            )
            continue

        samples.append(Sample(
            measurement=register.name,
            value=value,
            timestamp_ns=timestamp_ns,
            tags=target.sample_tags(register),
        ))

    return samples, skipped


class RegisterReader:
    """
    Polls targets through the connection pool.

    Features:
    - One request per read block, serialized on the endpoint lock
    - No inline retry: a failed attempt waits for the next tick
    - Per-target success/failure bookkeeping, offline/online transitions logged once
    """

    def __init__(self, connection_pool: ConnectionPool):
        self._pool = connection_pool
        self._states: dict[str, TargetPollState] = {}
        self.decode_errors = 0

    def state_for(self, target: PollTarget) -> TargetPollState:
        state = self._states.get(target.name)
        if state is None:
            state = self._states[target.name] = TargetPollState()
        return state

    async def poll_target(
        self,
        target: PollTarget,
        in_flight: asyncio.Semaphore | None = None,
    ) -> list[Sample]:
        """
        Run one poll attempt against a target.

        Args:
            target: Poll target to read
            in_flight: Optional limit on concurrent requests, acquired only
                once the endpoint lock is held

        Returns:
            Samples of the attempt, empty when the transport failed
        """
        state = self.state_for(target)
        client, lock = await self._pool.get_connection(target.endpoint)
        slot = in_flight if in_flight is not None else contextlib.nullcontext()
        started = time.monotonic()

        try:
            buffer: dict[int, int] = {}
            async with lock, slot:
                for block in target.template.read_blocks:
                    words = await client.read_input_registers(
                        address=block.address,
                        count=block.count,
                        unit_id=target.unit_id,
                    )
                    for offset, word in enumerate(words):
                        buffer[block.address + offset] = word
            timestamp_ns = time.time_ns()
        except TransportError as e:
            self._record_failure(target, state, e)
            return []

        samples, skipped = build_samples(target, buffer, timestamp_ns)
        self.decode_errors += skipped

        if state.consecutive_failures:
            logger.info(
                f"Target {target.name} back online after {state.consecutive_failures} failed attempt(s)",
                extra={"target": target.name},
            )
        state.success_count += 1
        state.consecutive_failures = 0
        state.last_error = ""
        state.last_success_ns = timestamp_ns

        log_device_read(
            logger,
            target.name,
            len(samples),
            (time.monotonic() - started) * 1000,
            success=True,
        )
        return samples

    def _record_failure(self, target: PollTarget, state: TargetPollState, error: TransportError) -> None:
        state.failure_count += 1
        state.consecutive_failures += 1
        state.last_error = str(error)

        # Warn on the first failure only, a dead device fails on every tick
        if state.consecutive_failures == 1:
            log_device_read(
                logger,
                target.name,
                0,
                0,
                success=False,
                error=f"{error} [endpoint={error.endpoint}, phase={error.phase}]",
            )
        else:
            logger.debug(
                f"Target {target.name} still unreachable "
                f"({state.consecutive_failures} consecutive failures): {error}"
            )

    def get_stats(self) -> dict:
        return {
            "decode_errors": self.decode_errors,
            "targets": {
                name: {
                    "online": state.is_online,
                    "success_count": state.success_count,
                    "failure_count": state.failure_count,
                    "consecutive_failures": state.consecutive_failures,
                    "last_error": state.last_error or None,
                }
                for name, state in self._states.items()
            },
        }
