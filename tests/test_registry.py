"""Tests for ClientRegistry broadcasting."""

import asyncio
import json

import pytest

from car_gateway.registry import ClientRegistry, ClientSession

from conftest import FakeWebSocket


def _session(client_id: str, **kwargs) -> ClientSession:
    return ClientSession(client_id=client_id, websocket=FakeWebSocket(**kwargs))


@pytest.mark.asyncio
async def test_broadcast_reaches_every_open_session():
    registry = ClientRegistry()
    a, b = _session("a"), _session("b")
    await registry.register(a)
    await registry.register(b)

    delivered = await registry.broadcast({"type": "status", "isConnected": True})

    assert delivered == 2
    for session in (a, b):
        assert [json.loads(m) for m in session.websocket.sent] == [
            {"type": "status", "isConnected": True}
        ]


@pytest.mark.asyncio
async def test_register_is_idempotent():
    registry = ClientRegistry()
    a = _session("a")
    await registry.register(a)
    await registry.register(a)

    assert len(registry) == 1
    await registry.broadcast({"type": "status", "isConnected": False})
    assert len(a.websocket.sent) == 1


@pytest.mark.asyncio
async def test_closed_sessions_are_skipped():
    registry = ClientRegistry()
    open_session, closed_session = _session("open"), _session("closed")
    closed_session.websocket.close()
    await registry.register(open_session)
    await registry.register(closed_session)

    assert await registry.broadcast({"type": "status", "isConnected": False}) == 1
    assert closed_session.websocket.sent == []


@pytest.mark.asyncio
async def test_failing_session_does_not_affect_others():
    registry = ClientRegistry()
    broken, healthy = _session("broken", fail=True), _session("healthy")
    await registry.register(broken)
    await registry.register(healthy)

    assert await registry.broadcast({"type": "status", "isConnected": False}) == 1
    assert len(healthy.websocket.sent) == 1


@pytest.mark.asyncio
async def test_unregister():
    registry = ClientRegistry()
    a = _session("a")
    await registry.register(a)

    assert a in registry
    assert await registry.unregister(a) is True
    assert await registry.unregister(a) is False
    assert a not in registry
    assert await registry.broadcast({"type": "status", "isConnected": False}) == 0


@pytest.mark.asyncio
async def test_stalled_session_send_is_bounded():
    registry = ClientRegistry(send_timeout=0.05)
    stalled, healthy = _session("stalled", stall=True), _session("healthy")
    await registry.register(stalled)
    await registry.register(healthy)

    delivered = await asyncio.wait_for(
        registry.broadcast({"type": "status", "isConnected": True}), timeout=1.0
    )

    assert delivered == 1
    assert len(healthy.websocket.sent) == 1
    assert stalled.websocket.sent == []
