"""Tests for sink batching, retry and drop accounting."""

import asyncio
import math

import httpx

from modbus_influx.common.config import InfluxSettings, SinkApi, SinkSettings
from modbus_influx.common.sample import Sample
from modbus_influx.services.sink.writer import SinkWriter, classify_status

V2 = InfluxSettings(
    api=SinkApi.V2,
    hostname="http://influx:8086/api/v2",
    organization="testorg",
    bucket="testbucket",
    auth_token="secret-token",
)

V1 = InfluxSettings(
    api=SinkApi.V1,
    hostname="http://influx:8086",
    database="plant",
    username="writer",
    password="pw",
)

NO_WAIT = SinkSettings(batch_size=100, flush_interval=0.05, retry_backoff=(0.0, 0.0, 0.0))


def _samples(count: int, start: int = 0) -> list[Sample]:
    return [Sample("pressure", float(i), 1000 + i, {"phase": "L1"}) for i in range(start, start + count)]


class Recorder:
    """MockTransport handler replaying a list of status codes (last one repeats)"""

    def __init__(self, *statuses: int | Exception):
        self.statuses = list(statuses) or [204]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.statuses)) - 1
        status = self.statuses[index]
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, text="" if status < 300 else "error body")

    @property
    def bodies(self) -> list[list[str]]:
        return [r.content.decode().split("\n") for r in self.requests]


def _run(writer: SinkWriter, samples: list[Sample]):
    async def scenario():
        await writer.enqueue(samples)
        written = await writer.flush()
        await writer.stop()
        return written

    return asyncio.run(scenario())


def test_classify_status() -> None:
    assert classify_status(500)
    assert classify_status(503)
    assert classify_status(429)
    assert classify_status(408)
    assert not classify_status(400)
    assert not classify_status(401)
    assert not classify_status(404)


def test_v2_write_request() -> None:
    recorder = Recorder(204)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(3))

    assert written == 3
    (request,) = recorder.requests
    assert request.method == "POST"
    assert request.url.path == "/api/v2/write"
    assert dict(request.url.params) == {"org": "testorg", "bucket": "testbucket", "precision": "ns"}
    assert request.headers["Authorization"] == "Token secret-token"
    assert recorder.bodies[0] == [
        "pressure,phase=L1 value=0.0 1000",
        "pressure,phase=L1 value=1.0 1001",
        "pressure,phase=L1 value=2.0 1002",
    ]
    assert writer.written_samples == 3
    assert writer.dropped_samples == 0


def test_v1_write_request() -> None:
    recorder = Recorder(204)
    writer = SinkWriter(V1, NO_WAIT, transport=httpx.MockTransport(recorder))

    _run(writer, _samples(1))

    (request,) = recorder.requests
    assert request.url.path == "/write"
    assert dict(request.url.params) == {"db": "plant", "precision": "ns", "u": "writer", "p": "pw"}
    assert "Authorization" not in request.headers


def test_batches_split_by_batch_size() -> None:
    recorder = Recorder(204)
    policy = SinkSettings(batch_size=3, retry_backoff=())
    writer = SinkWriter(V2, policy, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(7))

    assert written == 7
    assert [len(body) for body in recorder.bodies] == [3, 3, 1]
    assert writer.written_batches == 3


def test_failure_beyond_retry_ceiling_drops_exact_batch() -> None:
    recorder = Recorder(503)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(7))

    assert written == 0
    assert len(recorder.requests) == 4
    assert writer.retry_count == 3
    assert writer.dropped_samples == 7
    assert writer.dropped_batches == 1
    assert writer.last_error.startswith("Sink Error: HTTP 503")


def test_transient_failure_then_success() -> None:
    recorder = Recorder(500, 429, 204)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(5))

    assert written == 5
    assert len(recorder.requests) == 3
    assert writer.dropped_samples == 0
    assert writer.retry_count == 2


def test_transport_errors_are_retried() -> None:
    recorder = Recorder(httpx.ConnectError("connection refused"), httpx.ReadTimeout("slow"), 204)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(2))

    assert written == 2
    assert len(recorder.requests) == 3


def test_non_retryable_failure_drops_immediately() -> None:
    recorder = Recorder(401)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, _samples(4))

    assert written == 0
    assert len(recorder.requests) == 1
    assert writer.retry_count == 0
    assert writer.dropped_samples == 4


def test_bad_request_not_retried() -> None:
    recorder = Recorder(400)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    _run(writer, _samples(2))

    assert len(recorder.requests) == 1
    assert writer.dropped_batches == 1


def test_overflow_drops_oldest() -> None:
    recorder = Recorder(204)
    policy = SinkSettings(batch_size=5, max_buffer=5, retry_backoff=())
    writer = SinkWriter(V2, policy, transport=httpx.MockTransport(recorder))

    async def scenario():
        await writer.enqueue(_samples(3))
        await writer.enqueue(_samples(5, start=3))
        pending = writer.pending
        await writer.flush()
        await writer.stop()
        return pending

    pending = asyncio.run(scenario())

    assert pending == 5
    assert writer.overflow_dropped_samples == 3
    assert recorder.bodies[0][0] == "pressure,phase=L1 value=3.0 1003"
    assert recorder.bodies[0][-1] == "pressure,phase=L1 value=7.0 1007"


def test_buffer_stays_bounded_while_batch_in_flight() -> None:
    policy = SinkSettings(batch_size=2, max_buffer=4, retry_backoff=())
    seen: list[tuple[int, int]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        # Producers keep enqueueing while a batch is on the wire
        if not seen:
            await writer.enqueue(_samples(4, start=100))
        seen.append((writer.pending, writer.overflow_dropped_samples))
        return httpx.Response(204)

    writer = SinkWriter(V2, policy, transport=httpx.MockTransport(handler))

    async def scenario():
        await writer.enqueue(_samples(4))
        written = await writer.flush()
        pending = writer.pending
        await writer.stop()
        return written, pending

    written, pending = asyncio.run(scenario())

    # 2 in flight + 4 buffered; the 2 oldest buffered samples were dropped
    assert seen[0] == (4, 2)
    assert max(p for p, _ in seen) <= policy.max_buffer
    assert written == 4
    assert pending == 2
    assert writer.written_samples == 6


def test_non_finite_samples_discarded() -> None:
    recorder = Recorder(204)
    writer = SinkWriter(V2, NO_WAIT, transport=httpx.MockTransport(recorder))

    written = _run(writer, [Sample("m", math.nan, 1), Sample("m", 1.0, 2), Sample("m", math.inf, 3)])

    assert written == 1
    assert writer.invalid_samples == 2
    assert recorder.bodies == [["m value=1.0 2"]]


def test_flush_loop_and_final_flush_on_stop() -> None:
    recorder = Recorder(204)
    policy = SinkSettings(batch_size=2, flush_interval=60.0, retry_backoff=())
    writer = SinkWriter(V2, policy, transport=httpx.MockTransport(recorder))

    async def scenario():
        await writer.start()
        # A full batch wakes the flush loop without waiting for the interval
        await writer.enqueue(_samples(2))
        for _ in range(50):
            if recorder.requests:
                break
            await asyncio.sleep(0.01)
        requests_before_stop = len(recorder.requests)

        # Below batch_size: only the final flush on stop writes it
        await writer.enqueue(_samples(1, start=2))
        await writer.stop()
        return requests_before_stop

    requests_before_stop = asyncio.run(scenario())

    assert requests_before_stop == 1
    assert len(recorder.requests) == 2
    assert writer.written_samples == 3
    assert writer.get_stats()["pending_samples"] == 0
