"""Tests for the transport session state machine and delivery."""

import asyncio

import pytest

from peripage.errors import ConfigError, ConnectionError, TransportError, TransportErrorKind
from peripage.protocol import ACK, NAK, AckPolicy, Commands, DeviceQuery, Packet
from peripage.session import MIN_MTU, SessionConfig, SessionState, TransportSession

from conftest import (
    BATTERY_REPLY,
    FULL_REPLY,
    FakeChannel,
    default_reply,
    fast_config,
    nak_writes,
    scripted,
)

ADDRESS = "AA:BB:CC:DD:EE:FF"


def data_packet(index: int, ack: AckPolicy = AckPolicy.SINGLE_BYTE) -> Packet:
    return Packet(index=index, payload=bytes([index]) * 10, ack=ack)


async def open_session(channel: FakeChannel, **overrides) -> TransportSession:
    session = TransportSession(channel, fast_config(**overrides))
    await session.connect(ADDRESS)
    return session


class TestSessionConfig:
    """Test configuration validation."""

    @pytest.mark.parametrize("kwargs", [
        {"mtu": MIN_MTU - 1},
        {"window": 0},
        {"attempts": 0},
        {"backoff": -1},
        {"packet_timeout": 0},
        {"reply_quiet": 0},
        {"busy_policy": "drop"},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigError):
            TransportSession(FakeChannel(), SessionConfig(**kwargs))

    def test_mtu_capped_by_channel(self):
        session = TransportSession(FakeChannel(mtu=100), SessionConfig(mtu=182))
        assert session.mtu == 100


class TestConnect:
    """Test connection and handshake."""

    @pytest.mark.asyncio
    async def test_state_history(self, channel):
        session = await open_session(channel)
        assert session.history == [
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
            SessionState.HANDSHAKING,
            SessionState.STREAMING,
        ]

    @pytest.mark.asyncio
    async def test_handshake_sends_reset_first(self, channel):
        """The first bytes on the wire are always the reset command."""
        await open_session(channel)
        assert channel.payloads[0] == Commands.reset()

    @pytest.mark.asyncio
    async def test_refused_connection_faults(self):
        channel = FakeChannel(refuse=True)
        session = TransportSession(channel, fast_config())

        with pytest.raises(ConnectionError):
            await session.connect(ADDRESS)

        assert session.state == SessionState.FAULTED
        assert SessionState.HANDSHAKING not in session.history
        assert channel.writes == []

    @pytest.mark.asyncio
    async def test_handshake_nak_faults(self):
        channel = FakeChannel(responder=nak_writes(1))
        session = TransportSession(channel, fast_config())

        with pytest.raises(ConnectionError, match="Handshake"):
            await session.connect(ADDRESS)

        assert session.state == SessionState.FAULTED
        assert channel.close_calls == 1

    @pytest.mark.asyncio
    async def test_handshake_timeout_faults(self):
        channel = FakeChannel(responder=scripted(silent={1}))
        session = TransportSession(channel, fast_config(handshake_timeout=0.05))

        with pytest.raises(ConnectionError):
            await session.connect(ADDRESS)

        assert session.state == SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, channel):
        session = await open_session(channel)
        with pytest.raises(ConnectionError):
            await session.connect(ADDRESS)

    @pytest.mark.asyncio
    async def test_open_classmethod(self, channel):
        session = await TransportSession.open(ADDRESS, channel, fast_config())
        assert session.state == SessionState.STREAMING
        assert session.address == ADDRESS


class TestClose:
    """Test terminal states."""

    @pytest.mark.asyncio
    async def test_close_from_streaming(self, channel):
        session = await open_session(channel)
        await session.close()
        assert session.state == SessionState.CLOSED
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, channel):
        session = await open_session(channel)
        await session.close()
        await session.close()
        assert session.history.count(SessionState.CLOSED) == 1

    @pytest.mark.asyncio
    async def test_faulted_stays_faulted(self):
        session = TransportSession(FakeChannel(refuse=True), fast_config())
        with pytest.raises(ConnectionError):
            await session.connect(ADDRESS)
        await session.close()
        assert session.state == SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, channel):
        async with await open_session(channel) as session:
            pass
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_send_after_close_fails(self, channel):
        session = await open_session(channel)
        await session.close()
        with pytest.raises(TransportError):
            await session.send(data_packet(0))


class TestSend:
    """Test acknowledged delivery."""

    @pytest.mark.asyncio
    async def test_send_confirms_packet(self, session, channel):
        confirmed = await session.send(data_packet(0))
        assert confirmed == [data_packet(0)]
        assert session.in_flight == 0

    @pytest.mark.asyncio
    async def test_unacknowledged_packet_released_on_write(self, session, channel):
        acked = []
        await session.send(data_packet(0, AckPolicy.NONE), on_ack=acked.append)
        assert acked == [data_packet(0, AckPolicy.NONE)]
        assert session.in_flight == 0

    @pytest.mark.asyncio
    async def test_window_blocks_until_ack(self):
        """With window K, the K-th outstanding packet blocks until one ack arrives."""
        channel = FakeChannel(responder=scripted(silent={2, 3}))
        session = await open_session(channel, window=2, packet_timeout=1.0)

        await session.send(data_packet(0))
        assert session.in_flight == 1

        pending = asyncio.ensure_future(session.send(data_packet(1)))
        await asyncio.sleep(0.02)
        assert not pending.done()
        assert session.in_flight == 2

        channel.push(bytes([ACK]))
        confirmed = await asyncio.wait_for(pending, 0.5)

        assert confirmed == [data_packet(0)]
        assert session.in_flight == 1

    @pytest.mark.asyncio
    async def test_packets_written_in_order(self, session, channel):
        for i in range(5):
            await session.send(data_packet(i))
        assert [p.index for p in channel.packets[1:]] == [0, 1, 2, 3, 4]


class TestRetry:
    """Test NAK and timeout recovery."""

    @pytest.mark.asyncio
    async def test_nak_then_ack_delivers_once(self):
        """attempts - 1 NAKs are recovered; the packet is confirmed exactly once."""
        channel = FakeChannel(responder=nak_writes(2))
        session = await open_session(channel, attempts=2)
        acked = []

        await session.send(data_packet(0), on_ack=acked.append)

        assert acked == [data_packet(0)]
        assert len(channel.writes) == 3  # handshake, packet, re-send
        assert channel.writes[1] == channel.writes[2]
        assert session.state == SessionState.STREAMING

    @pytest.mark.asyncio
    async def test_naks_exhaust_attempts(self):
        channel = FakeChannel(responder=nak_writes(2, 3))
        session = await open_session(channel, attempts=2)
        acked = []

        with pytest.raises(TransportError) as exc_info:
            await session.send(data_packet(0), on_ack=acked.append)

        assert exc_info.value.kind == TransportErrorKind.NACK
        assert exc_info.value.packet_index == 0
        assert acked == []
        # A rejected packet does not kill the link
        assert session.state == SessionState.STREAMING
        assert session.in_flight == 0

    @pytest.mark.asyncio
    async def test_timeout_then_ack(self):
        channel = FakeChannel(responder=scripted(silent={2}))
        session = await open_session(channel, packet_timeout=0.05)

        confirmed = await session.send(data_packet(0))
        assert confirmed == [data_packet(0)]
        assert len(channel.writes) == 3

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_attempts(self):
        channel = FakeChannel(responder=scripted(silent={2, 3}))
        session = await open_session(channel, packet_timeout=0.05)

        with pytest.raises(TransportError) as exc_info:
            await session.send(data_packet(0))

        assert exc_info.value.kind == TransportErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_unexpected_reply_counts_as_nack(self):
        channel = FakeChannel(responder=scripted(naks={2: 0x42, 3: 0x42}))
        session = await open_session(channel)

        with pytest.raises(TransportError) as exc_info:
            await session.send(data_packet(0))

        assert exc_info.value.kind == TransportErrorKind.NACK
        assert "0x42" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rejected_head_resends_only_itself(self):
        """Packets the printer already accepted are not written again."""
        channel = FakeChannel(responder=nak_writes(2))
        session = await open_session(channel, window=2)
        acked = []

        await session.send(data_packet(0), on_ack=acked.append)
        await session.send(data_packet(1), on_ack=acked.append)

        assert [p.index for p in channel.packets[1:]] == [0, 1, 0]
        assert [p.index for p in acked] == [0, 1]
        assert session.in_flight == 0

    @pytest.mark.asyncio
    async def test_trailing_replies_not_shifted(self):
        """Later acks stay matched to their own packets after a retry."""
        # p0 NAK, p1 ACK, p0 again ACK, p2 silent, p3 NAK, then all ACK
        channel = FakeChannel(responder=scripted(naks={2: NAK, 6: NAK}, silent={5}))
        session = await open_session(channel, window=2, packet_timeout=0.05)
        acked = []

        for i in range(4):
            await session.send(data_packet(i), on_ack=acked.append)
        await session.drain(on_ack=acked.append)

        indices = [p.index for p in channel.packets[1:-1]]
        assert indices == [0, 1, 0, 2, 3, 2, 3]
        assert indices.count(1) == 1
        assert [p.index for p in acked] == [0, 1, 2, 3]
        assert session.state == SessionState.STREAMING

    @pytest.mark.asyncio
    async def test_zero_timeout_is_honoured(self):
        channel = FakeChannel(responder=scripted(silent={2, 3}))
        session = await open_session(channel, packet_timeout=5.0)

        with pytest.raises(TransportError) as exc_info:
            await asyncio.wait_for(session.send(data_packet(0), timeout=0), 1.0)

        assert exc_info.value.kind == TransportErrorKind.TIMEOUT


class TestLinkDrop:
    """Test link failure handling."""

    @pytest.mark.asyncio
    async def test_dropped_link_faults_session(self):
        channel = FakeChannel(drop_at_write=3)
        session = await open_session(channel)
        await session.send(data_packet(0))

        with pytest.raises(TransportError) as exc_info:
            await session.send(data_packet(1))

        assert exc_info.value.kind == TransportErrorKind.LINK_DROPPED
        assert session.state == SessionState.FAULTED
        assert session.is_terminal


class TestDrainAndQuery:
    """Test draining and status queries."""

    @pytest.mark.asyncio
    async def test_drain_returns_to_streaming(self, session, channel):
        await session.send(data_packet(0))
        await session.drain()

        assert session.history[-2:] == [SessionState.DRAINING, SessionState.STREAMING]
        assert channel.payloads[-1] == DeviceQuery.BATTERY.value
        assert session.last_reply == b"\x00\x40"

    @pytest.mark.asyncio
    async def test_drain_flushes_window(self):
        channel = FakeChannel()
        session = await open_session(channel, window=4)
        acked = []

        for i in range(3):
            await session.send(data_packet(i), on_ack=acked.append)
        assert session.in_flight == 3

        await session.drain(on_ack=acked.append)
        assert [p.index for p in acked] == [0, 1, 2]
        assert session.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_failure_faults(self):
        channel = FakeChannel(responder=scripted(silent={2, 3}))
        session = await open_session(channel, drain_timeout=0.05)

        with pytest.raises(TransportError):
            await session.drain()

        assert session.state == SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_query_returns_reply(self, session):
        assert await session.query(DeviceQuery.BATTERY) == b"\x00\x40"
        assert await session.query(DeviceQuery.NAME) == b"PeriPage+DF7A\x00"

    @pytest.mark.asyncio
    async def test_fragmented_reply_read_whole(self):
        """A text reply split over several reads is returned in one piece."""
        channel = FakeChannel()
        head, rest = FULL_REPLY[:20], FULL_REPLY[20:]

        def respond(write_number, packet):
            if packet.payload == DeviceQuery.FULL.value:
                asyncio.get_running_loop().call_later(0.01, channel.push, rest)
                return head
            return default_reply(packet)

        channel.responder = respond
        session = await open_session(channel, reply_quiet=0.1)

        assert await session.query(DeviceQuery.FULL) == FULL_REPLY
        # Nothing of the reply is left to be mistaken for an ack
        assert await session.query(DeviceQuery.BATTERY) == BATTERY_REPLY
        assert await session.send(data_packet(0)) == [data_packet(0)]

    @pytest.mark.asyncio
    async def test_battery_reply_read_exactly(self, session, channel):
        channel.responder = lambda n, packet: (
            BATTERY_REPLY + bytes([ACK]) if packet.payload == DeviceQuery.BATTERY.value
            else default_reply(packet)
        )
        assert await session.query(DeviceQuery.BATTERY) == BATTERY_REPLY
        # The surplus byte stays buffered for the next packet
        assert await session.send(data_packet(0), timeout=0.01) == [data_packet(0)]


class TestSettle:
    """Test collecting outstanding acks without sending."""

    @pytest.mark.asyncio
    async def test_settle_collects_window(self):
        channel = FakeChannel()
        session = await open_session(channel, window=4)
        acked = []

        for i in range(3):
            await session.send(data_packet(i))
        written = len(channel.writes)

        await session.settle(on_ack=acked.append)

        assert [p.index for p in acked] == [0, 1, 2]
        assert session.in_flight == 0
        assert len(channel.writes) == written
        assert session.state == SessionState.STREAMING
