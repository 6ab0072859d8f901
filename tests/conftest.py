import asyncio
import socket
import struct
from typing import List

import pytest
import pytest_asyncio
from starlette.websockets import WebSocketState

from car_gateway.message import StatusEvent
from car_gateway.vehicle_link import VehicleLink


class FakeCar:
    """Local TCP server standing in for the car firmware."""

    def __init__(self):
        self.received = bytearray()
        self.connections = 0
        self.port = None
        self._server = None
        self._writers: List[asyncio.StreamWriter] = []

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                self.received.extend(data)
        except ConnectionError:
            pass
        finally:
            writer.close()

    def lines(self) -> List[bytes]:
        return [line + b"\n" for line in bytes(self.received).split(b"\n") if line]

    async def wait_for_lines(self, count: int, timeout: float = 2.0) -> List[bytes]:
        await wait_until(lambda: len(self.lines()) >= count, timeout)
        return self.lines()

    async def drop_clients(self) -> None:
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    async def reset_clients(self) -> None:
        """Abort every connection with a TCP RST instead of a FIN."""
        for writer in self._writers:
            sock = writer.get_extra_info("socket")
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            writer.transport.abort()
        self._writers.clear()

    async def stop(self) -> None:
        await self.drop_clients()
        self._server.close()
        await self._server.wait_closed()


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class FakeWebSocket:
    """Enough of starlette's WebSocket for registry and gateway tests."""

    def __init__(self, fail: bool = False, stall: bool = False):
        self.sent: List[str] = []
        self.fail = fail
        self.stall = stall
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket gone")
        if self.stall:
            # Peer stopped reading; the send never completes
            await asyncio.Event().wait()
        self.sent.append(data)

    def close(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.DISCONNECTED


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def car():
    fake = FakeCar()
    await fake.start()
    yield fake
    await fake.stop()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def statuses():
    return []


@pytest_asyncio.fixture
async def link(car, clock, statuses):
    async def record(status: StatusEvent) -> None:
        statuses.append(status)

    vehicle = VehicleLink(
        host="127.0.0.1",
        port=car.port,
        on_status=record,
        heartbeat_interval=60.0,
        connect_timeout=1.0,
        clock=clock,
    )
    await vehicle.start()
    yield vehicle
    await vehicle.shutdown()


async def connect_link(link, statuses, car) -> None:
    await link.connect()
    await wait_until(lambda: bool(statuses) and statuses[-1].is_connected)
    await car.wait_for_lines(1)
