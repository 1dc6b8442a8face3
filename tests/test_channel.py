"""
Tests for PeerChannel outbound queueing.
"""

import asyncio
import json

import pytest
from fastapi.websockets import WebSocketState

from channel import PeerChannel


class StubWebSocket:
    def __init__(self, fail_sends: bool = False, block_sends: bool = False):
        self.sent = []
        self.close_codes = []
        self.fail_sends = fail_sends
        self.block_sends = block_sends
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data):
        if self.block_sends:
            await asyncio.Event().wait()
        if self.fail_sends:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=None):
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED


class TestPeerChannel:

    @pytest.mark.asyncio
    async def test_messages_sent_in_order(self):
        ws = StubWebSocket()
        channel = PeerChannel(ws, "conn-1")
        channel.start()

        for i in range(5):
            assert channel.deliver({"type": "n", "i": i})
        await channel.close()

        assert [m["i"] for m in ws.sent] == [0, 1, 2, 3, 4]
        assert channel.sent_count == 5

    @pytest.mark.asyncio
    async def test_deliver_after_close_reports_gone(self):
        channel = PeerChannel(StubWebSocket(), "conn-1")
        channel.start()
        await channel.close()

        assert channel.closed
        assert channel.deliver({"type": "late"}) is False

    @pytest.mark.asyncio
    async def test_send_failure_marks_channel_closed(self):
        ws = StubWebSocket(fail_sends=True)
        channel = PeerChannel(ws, "conn-1")
        channel.start()

        assert channel.deliver({"type": "first"})
        await asyncio.sleep(0.01)

        assert channel.closed
        assert channel.deliver({"type": "second"}) is False
        await channel.close()

    @pytest.mark.asyncio
    async def test_overflow_drops_peer_and_closes_socket(self):
        ws = StubWebSocket(block_sends=True)
        channel = PeerChannel(ws, "conn-1", max_queue=2)
        channel.start()

        assert channel.deliver({"type": "a"})
        await asyncio.sleep(0.01)  # writer picks up "a" and stalls
        assert channel.deliver({"type": "b"})
        assert channel.deliver({"type": "c"})
        assert channel.deliver({"type": "d"}) is False
        await asyncio.sleep(0.01)

        assert channel.closed
        assert ws.close_codes == [1013]
        await channel.close()

    @pytest.mark.asyncio
    async def test_overflow_close_task_is_kept_until_done(self):
        ws = StubWebSocket(block_sends=True)
        channel = PeerChannel(ws, "conn-1", max_queue=1)
        channel.start()
        channel.deliver({"type": "a"})
        await asyncio.sleep(0.01)
        channel.deliver({"type": "b"})

        assert channel.deliver({"type": "c"}) is False
        assert channel._closer is not None
        await asyncio.wait_for(channel._closer, timeout=1.0)

        assert ws.close_codes == [1013]
        await channel.close()

    @pytest.mark.asyncio
    async def test_close_does_not_hang_on_stalled_writer(self):
        channel = PeerChannel(StubWebSocket(block_sends=True), "conn-1")
        channel.start()
        channel.deliver({"type": "a"})
        await asyncio.sleep(0.01)

        await asyncio.wait_for(channel.close(timeout=0.05), timeout=1.0)
        assert channel.closed
