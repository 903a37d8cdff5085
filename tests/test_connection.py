"""
Transport tests

The websocket is replaced by an in-memory fake handed out by the connector.
"""

import asyncio

import pytest

from script_agent.connection import (
    Closed,
    ConnectionState,
    Errored,
    FrameReceived,
    Opened,
    Transport,
    build_headers,
)
from script_agent.errors import TransportFailure


class FakeWebSocket:
    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.close_code = None
        self.close_reason = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self):
        if self.close_code is None:
            self.close_code = 1000
            self.close_reason = "bye"
        self.incoming.put_nowait(None)

    def remote_close(self, code, reason):
        self.close_code = code
        self.close_reason = reason
        self.incoming.put_nowait(None)


class Connector:
    def __init__(self, fail=None):
        self.fail = fail
        self.ws = FakeWebSocket()
        self.calls = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.fail is not None:
            raise self.fail
        return self.ws


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestBuildHeaders:
    """Handshake headers"""

    def test_with_token(self):
        assert build_headers("dev-1", "abc") == {"Device-ID": "dev-1", "Authorization": "Bearer abc"}

    def test_without_token(self):
        assert build_headers("dev-1", None) == {"Device-ID": "dev-1"}


class TestTransport:
    """Single connection lifecycle"""

    @pytest.mark.asyncio
    async def test_open_passes_credential_and_emits_opened(self):
        events = asyncio.Queue()
        connector = Connector()
        transport = Transport(events, connector=connector)

        await transport.open("ws://ctl/ws", "dev-1", "tok")

        assert transport.is_open
        url, kwargs = connector.calls[0]
        assert url == "ws://ctl/ws"
        assert kwargs["additional_headers"]["Authorization"] == "Bearer tok"
        assert drain(events) == [Opened(transport)]
        await transport.close()

    @pytest.mark.asyncio
    async def test_failed_handshake_reports_error_then_close(self):
        events = asyncio.Queue()
        transport = Transport(events, connector=Connector(fail=OSError("refused")))

        await transport.open("ws://ctl/ws", "dev-1")

        emitted = drain(events)
        assert isinstance(emitted[0], Errored)
        assert isinstance(emitted[0].error, TransportFailure)
        assert emitted[1] == Closed(transport, 1006, "refused")
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_frames_in_and_out(self):
        events = asyncio.Queue()
        connector = Connector()
        async with Transport(events, connector=connector) as transport:
            await transport.open("ws://ctl/ws", "dev-1")
            drain(events)

            connector.ws.incoming.put_nowait('{"type": "HEARTBEAT_ACK"}')
            event = await asyncio.wait_for(events.get(), 1)
            assert event == FrameReceived(transport, '{"type": "HEARTBEAT_ACK"}')

            assert transport.send("hello")
            await asyncio.sleep(0.01)
            assert connector.ws.sent == ["hello"]

    @pytest.mark.asyncio
    async def test_remote_close_emits_closed_once(self):
        events = asyncio.Queue()
        connector = Connector()
        transport = Transport(events, connector=connector)
        await transport.open("ws://ctl/ws", "dev-1")
        drain(events)

        connector.ws.remote_close(4001, "going away")
        event = await asyncio.wait_for(events.get(), 1)
        assert event == Closed(transport, 4001, "going away")

        await transport.close()
        assert drain(events) == []
        assert not transport.send("late")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        events = asyncio.Queue()
        transport = Transport(events, connector=Connector())
        await transport.open("ws://ctl/ws", "dev-1")
        drain(events)

        await transport.close()
        await transport.close()

        closes = [e for e in drain(events) if isinstance(e, Closed)]
        assert len(closes) == 1
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_single_use(self):
        events = asyncio.Queue()
        transport = Transport(events, connector=Connector(fail=OSError("refused")))
        await transport.open("ws://ctl/ws", "dev-1")
        with pytest.raises(RuntimeError):
            await transport.open("ws://ctl/ws", "dev-1")

    @pytest.mark.asyncio
    async def test_close_sends_queued_frames_first(self):
        events = asyncio.Queue()
        connector = Connector()
        transport = Transport(events, connector=connector)
        await transport.open("ws://ctl/ws", "dev-1")

        assert transport.send('{"type": "LOG", "logs": []}')
        assert transport.send('{"type": "HEARTBEAT"}')
        await transport.close()

        assert connector.ws.sent == ['{"type": "LOG", "logs": []}', '{"type": "HEARTBEAT"}']

    @pytest.mark.asyncio
    async def test_close_gives_up_on_a_stuck_writer(self):
        events = asyncio.Queue()
        connector = Connector()

        async def never_sends(frame):
            await asyncio.Event().wait()

        connector.ws.send = never_sends
        transport = Transport(events, open_timeout=0.05, connector=connector)
        await transport.open("ws://ctl/ws", "dev-1")
        transport.send("stuck")

        await asyncio.wait_for(transport.close(), 1)

        assert transport.state == ConnectionState.DISCONNECTED
        assert [e for e in drain(events) if isinstance(e, Closed)]
