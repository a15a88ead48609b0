"""
Unit tests for the ConnectionSupervisor.

Each test serves scripted chunked responses from an in-process aiohttp app.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import orjson
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from fxclient.stream.config import StreamConfig
from fxclient.stream.connection import ConnectionSupervisor
from fxclient.stream.errors import ApiError, StreamConnectionError
from fxclient.stream.request import RequestTemplate
from fxclient.stream.types import ConnectionState, StreamMessage

HEARTBEAT = b'{"heartbeat":{"time":"1456149472000000"}}\n'
DISCONNECT = b'{"disconnect":{"code":64,"message":"bye","moreInfo":""}}\n'


def tick(instrument: str = "EUR_USD", bid: float = 1.1) -> bytes:
    body = {"instrument": instrument, "time": "1456149472000000", "bid": bid, "ask": bid + 0.0002}
    return orjson.dumps({"tick": body}) + b"\n"


@dataclass
class Script:
    """One response: a status and body chunks, optionally held open afterwards."""

    chunks: list[bytes] = field(default_factory=list)
    status: int = 200
    delay_s: float = 0.0  # Between chunks
    hold: bool = True


class ScriptedServer:
    """Serves one script per connection; the last script repeats."""

    def __init__(self, scripts: list[Script]) -> None:
        self.scripts = scripts
        self.connections = 0
        self.release = asyncio.Event()

    async def handle(self, request: web.Request) -> web.StreamResponse:
        script = self.scripts[min(self.connections, len(self.scripts) - 1)]
        self.connections += 1

        if script.status != 200:
            return web.Response(status=script.status, body=b"".join(script.chunks))

        resp = web.StreamResponse()
        resp.content_type = "application/json"
        await resp.prepare(request)
        for i, chunk in enumerate(script.chunks):
            if i and script.delay_s:
                await asyncio.sleep(script.delay_s)
            await resp.write(chunk)

        # Keep the stream open until the client goes away
        while script.hold and not self.release.is_set():
            if request.transport is None or request.transport.is_closing():
                break
            await asyncio.sleep(0.01)
        return resp


@contextlib.asynccontextmanager
async def serve(*scripts: Script) -> AsyncIterator[tuple[ScriptedServer, RequestTemplate]]:
    scripted = ScriptedServer(list(scripts))
    app = web.Application()
    app.router.add_get("/v1/prices", scripted.handle)
    server = TestServer(app)
    await server.start_server()
    try:
        yield scripted, RequestTemplate("GET", str(server.make_url("/v1/prices")), {})
    finally:
        scripted.release.set()
        await server.close()


class FakeSleep:
    """Records backoff delays without waiting; optionally stops after a number of them."""

    def __init__(self, stop_after: Optional[int] = None) -> None:
        self.delays: list[float] = []
        self.stop_after = stop_after
        self.supervisor: Optional[ConnectionSupervisor] = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.supervisor and self.stop_after and len(self.delays) >= self.stop_after:
            self.supervisor.stop()


async def collect(
    supervisor: ConnectionSupervisor, stop_after: Optional[int] = None
) -> list[StreamMessage]:
    received: list[StreamMessage] = []
    async for msg in supervisor.frames():
        received.append(msg)
        if stop_after is not None and len(received) >= stop_after:
            supervisor.stop()
    return received


FAST = StreamConfig(stall_timeout_s=2.0, base_reconnect_delay_s=0.01, max_reconnect_delay_s=0.05)


class TestConnectionSupervisor:
    """Tests for ConnectionSupervisor."""

    @pytest.mark.asyncio
    async def test_yields_data_and_heartbeats(self) -> None:
        """Test data and heartbeat frames reach the caller."""
        async with serve(Script([HEARTBEAT + tick()])) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            received = await asyncio.wait_for(collect(supervisor, stop_after=2), 5.0)

        assert [m.kind for m in received] == ["heartbeat", "tick"]
        assert scripted.connections == 1
        assert supervisor.state == ConnectionState.STOPPED
        assert supervisor.stopped_by_caller
        assert supervisor.metrics.frames_received >= 2

    @pytest.mark.asyncio
    async def test_disconnect_frame_reconnects(self) -> None:
        """Test a planned disconnect is hidden from the caller and reconnects."""
        async with serve(
            Script([tick(bid=1.1) + DISCONNECT]),
            Script([tick(bid=1.2)]),
        ) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            received = await asyncio.wait_for(collect(supervisor, stop_after=2), 5.0)

        assert [orjson.loads(m.payload)["bid"] for m in received] == [1.1, 1.2]
        assert scripted.connections == 2
        assert supervisor.metrics.disconnects == 1
        assert supervisor.metrics.reconnections == 1

    @pytest.mark.asyncio
    async def test_backoff_delays_double(self) -> None:
        """Test consecutive connect failures wait base, 2*base, then the cap."""
        sleep = FakeSleep()
        config = StreamConfig(base_reconnect_delay_s=0.5, max_reconnect_delay_s=1.0)
        async with serve(
            Script([b"busy"], status=503),
            Script([b"busy"], status=503),
            Script([b"busy"], status=503),
            Script([tick()]),
        ) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config, sleep=sleep)
            received = await asyncio.wait_for(collect(supervisor, stop_after=1), 5.0)

        assert len(received) == 1
        assert sleep.delays == [0.5, 1.0, 1.0]
        assert scripted.connections == 4
        assert supervisor.metrics.connect_failures == 3
        assert supervisor.backoff.failures == 0

    @pytest.mark.asyncio
    async def test_backoff_resets_after_healthy_connection(self) -> None:
        """Test fail, fail, success, fail: the failure after a success waits base again."""
        sleep = FakeSleep(stop_after=3)
        config = StreamConfig(base_reconnect_delay_s=0.5, max_reconnect_delay_s=4.0)
        async with serve(
            Script([b"busy"], status=503),
            Script([b"busy"], status=503),
            Script([tick()], hold=False),
            Script([b"busy"], status=503),
        ) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config, sleep=sleep)
            sleep.supervisor = supervisor
            received = await asyncio.wait_for(collect(supervisor), 5.0)

        assert [m.kind for m in received] == ["tick"]
        assert sleep.delays == [0.5, 1.0, 0.5]
        assert sleep.delays[-1] == config.base_reconnect_delay_s

    @pytest.mark.asyncio
    async def test_garbage_bodies_back_off(self) -> None:
        """Test a server answering 200 with garbage is retried with growing delays."""
        sleep = FakeSleep(stop_after=4)
        config = StreamConfig(base_reconnect_delay_s=1.0)
        async with serve(Script([b"garbage\n"], hold=False)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config, sleep=sleep)
            sleep.supervisor = supervisor
            received = await asyncio.wait_for(collect(supervisor), 5.0)

        assert received == []
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert scripted.connections == 4
        assert supervisor.metrics.connects == 4
        assert supervisor.metrics.errors == 4

    @pytest.mark.asyncio
    async def test_empty_bodies_back_off(self) -> None:
        """Test a server closing every stream at once is not hammered."""
        sleep = FakeSleep(stop_after=3)
        config = StreamConfig(base_reconnect_delay_s=1.0)
        async with serve(Script([], hold=False)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config, sleep=sleep)
            sleep.supervisor = supervisor
            await asyncio.wait_for(collect(supervisor), 5.0)

        assert sleep.delays == [1.0, 2.0, 4.0]
        assert scripted.connections == 3

    @pytest.mark.asyncio
    async def test_disconnect_frame_skips_backoff(self) -> None:
        """Test a planned disconnect reconnects without sleeping."""
        sleep = FakeSleep()
        async with serve(Script([DISCONNECT]), Script([tick()])) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST, sleep=sleep)
            received = await asyncio.wait_for(collect(supervisor, stop_after=1), 5.0)

        assert [m.kind for m in received] == ["tick"]
        assert sleep.delays == []
        assert scripted.connections == 2

    @pytest.mark.asyncio
    async def test_max_reconnect_attempts(self) -> None:
        """Test a bounded retry budget ends in StreamConnectionError."""
        sleep = FakeSleep()
        config = StreamConfig(max_reconnect_attempts=2)
        async with serve(Script([b"busy"], status=503)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config, sleep=sleep)
            with pytest.raises(StreamConnectionError) as exc_info:
                await asyncio.wait_for(collect(supervisor), 5.0)

        assert scripted.connections == 3
        assert exc_info.value.reconnect_attempt == 3
        assert sleep.delays == [1.0, 2.0]
        assert supervisor.state == ConnectionState.STOPPED

    @pytest.mark.asyncio
    async def test_error_body_is_fatal(self) -> None:
        """Test a rejected request with an error body is not retried."""
        body = orjson.dumps({"code": 46, "message": "Invalid accountId", "moreInfo": ""})
        async with serve(Script([body], status=400)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            with pytest.raises(ApiError) as exc_info:
                await asyncio.wait_for(collect(supervisor), 5.0)

        assert exc_info.value.code == 46
        assert exc_info.value.message == "Invalid accountId"
        assert scripted.connections == 1
        assert supervisor.state == ConnectionState.STOPPED
        assert not supervisor.stopped_by_caller

    @pytest.mark.asyncio
    async def test_error_frame_first_is_fatal(self) -> None:
        """Test an error frame as the first frame stops without reconnecting."""
        async with serve(
            Script([b'{"code":1,"message":"Invalid instrument","moreInfo":""}\n'])
        ) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            with pytest.raises(ApiError) as exc_info:
                await asyncio.wait_for(collect(supervisor), 5.0)

        assert exc_info.value.code == 1
        assert scripted.connections == 1

    @pytest.mark.asyncio
    async def test_error_frame_mid_stream(self) -> None:
        """Test frames before an error frame are delivered, then the error surfaces."""
        received: list[StreamMessage] = []
        async with serve(Script([tick(), b'{"code":5,"message":"gone"}'], delay_s=0.05)) as (
            scripted,
            request,
        ):
            supervisor = ConnectionSupervisor(request, FAST)
            with pytest.raises(ApiError):
                async for msg in supervisor.frames():
                    received.append(msg)

        assert [m.kind for m in received] == ["tick"]
        assert scripted.connections == 1

    @pytest.mark.asyncio
    async def test_stall_reconnects(self) -> None:
        """Test a silent connection is closed and replaced after the stall timeout."""
        config = StreamConfig(stall_timeout_s=0.3, base_reconnect_delay_s=0.01)
        async with serve(Script([tick(bid=1.1)]), Script([tick(bid=1.2)])) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config)
            received = await asyncio.wait_for(collect(supervisor, stop_after=2), 5.0)

        assert len(received) == 2
        assert supervisor.metrics.stalls == 1
        assert scripted.connections == 2

    @pytest.mark.asyncio
    async def test_frames_reset_stall_clock(self) -> None:
        """Test frames arriving faster than the stall timeout keep the connection."""
        config = StreamConfig(stall_timeout_s=0.3)
        chunks = [HEARTBEAT] * 5 + [tick()]
        async with serve(Script(chunks, delay_s=0.1)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config)
            received = await asyncio.wait_for(collect(supervisor, stop_after=6), 5.0)

        assert received[-1].kind == "tick"
        assert supervisor.metrics.stalls == 0
        assert scripted.connections == 1

    @pytest.mark.asyncio
    async def test_truncated_body_reconnects(self) -> None:
        """Test a body cut off inside a frame is a transient failure."""
        async with serve(
            Script([b'{"tick":{"instrument":"EUR'], hold=False),
            Script([tick()]),
        ) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            received = await asyncio.wait_for(collect(supervisor, stop_after=1), 5.0)

        assert [m.kind for m in received] == ["tick"]
        assert scripted.connections == 2
        health = supervisor.get_health()
        assert health.error_count == 1
        assert health.last_error is not None and "inside a frame" in health.last_error

    @pytest.mark.asyncio
    async def test_stop_interrupts_backoff_sleep(self) -> None:
        """Test stop() ends a long backoff wait promptly."""
        config = StreamConfig(base_reconnect_delay_s=30.0, max_reconnect_delay_s=60.0)
        async with serve(Script([b"busy"], status=503)) as (scripted, request):
            supervisor = ConnectionSupervisor(request, config)
            asyncio.get_running_loop().call_later(0.2, supervisor.stop)
            received = await asyncio.wait_for(collect(supervisor), 5.0)

        assert received == []
        assert scripted.connections == 1
        assert supervisor.state == ConnectionState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_interrupts_read(self) -> None:
        """Test stop() unblocks a read on a silent connection."""
        async with serve(Script([])) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            asyncio.get_running_loop().call_later(0.2, supervisor.stop)
            received = await asyncio.wait_for(collect(supervisor), 5.0)

        assert received == []
        assert supervisor.metrics.connects == 1
        assert supervisor.metrics.stalls == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self) -> None:
        async with serve(Script([tick()])) as (scripted, request):
            supervisor = ConnectionSupervisor(request, FAST)
            supervisor.stop()
            supervisor.stop()
            received = await collect(supervisor)

        assert received == []
        assert scripted.connections == 0
        assert supervisor.state == ConnectionState.STOPPED
