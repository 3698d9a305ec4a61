"""
Transport Session for Peripage Printers.

Owns one radio channel and drives it through

    DISCONNECTED -> CONNECTING -> HANDSHAKING -> STREAMING <-> DRAINING

ending in CLOSED (explicit close) or FAULTED (failed connect, failed
handshake, dropped link or failed drain). Both end states are terminal:
a new session is needed to talk to the printer again.

Packets are pipelined up to ``window`` unacknowledged packets. The printer
answers packets in order, one reply byte each. When the oldest outstanding
packet is rejected (NAK or no ack), the replies already owed for the
packets behind it are read first, then only the rejected packet is written
again. Packets the printer accepted are never written twice.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .channel import RadioChannel
from .errors import ConfigError, ConnectionError, TransportError, TransportErrorKind
from .protocol import (
    ACK,
    NAK,
    PACKET_HEADER_SIZE,
    AckPolicy,
    Commands,
    DeviceQuery,
    Packet,
)

AckCallback = Callable[[Packet], None]

# Reset command plus packet header must fit in one packet
MIN_MTU = PACKET_HEADER_SIZE + len(Commands.RESET)

BUSY_POLICIES = ("queue", "fail")

# [0, level]
BATTERY_REPLY_LENGTH = 2


class SessionState(Enum):
    """Lifecycle of a transport session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"
    FAULTED = "faulted"


TERMINAL_STATES = (SessionState.CLOSED, SessionState.FAULTED)


@dataclass
class SessionConfig:
    """
    Link and retry settings.

    Attributes:
        mtu: Largest packet to send (capped by the channel MTU)
        window: Maximum unacknowledged packets in flight
        attempts: Total send attempts per packet before giving up
        backoff: Base delay before a re-send, doubled per attempt (seconds)
        packet_timeout: Wait for a packet ack (seconds)
        connect_timeout: Wait for the channel to open (seconds)
        handshake_timeout: Wait for the init ack (seconds)
        drain_timeout: Wait for outstanding acks and the status reply (seconds)
        reply_quiet: A variable-length status reply is complete once the
            link has been silent this long (seconds)
        settle_delay: Pause between opening the channel and the handshake
        inter_packet_delay: Pause after each packet write (seconds)
        busy_policy: "queue" jobs on a busy session or "fail" fast
    """
    mtu: int = 182
    window: int = 1
    attempts: int = 2
    backoff: float = 0.05
    packet_timeout: float = 2.0
    connect_timeout: float = 10.0
    handshake_timeout: float = 2.0
    drain_timeout: float = 5.0
    reply_quiet: float = 0.25
    settle_delay: float = 0.25
    inter_packet_delay: float = 0.0
    busy_policy: str = "queue"

    def validate(self):
        """Raise ConfigError if any setting is unusable."""
        if self.mtu < MIN_MTU:
            raise ConfigError(f"MTU must be at least {MIN_MTU} bytes, got {self.mtu}")
        if self.window < 1:
            raise ConfigError(f"Window must be at least 1, got {self.window}")
        if self.attempts < 1:
            raise ConfigError(f"Attempts must be at least 1, got {self.attempts}")
        for name in ("backoff", "settle_delay", "inter_packet_delay"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        for name in ("packet_timeout", "connect_timeout", "handshake_timeout",
                     "drain_timeout", "reply_quiet"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.busy_policy not in BUSY_POLICIES:
            raise ConfigError(
                f"Busy policy must be one of {BUSY_POLICIES}, got {self.busy_policy!r}"
            )


@dataclass
class _InFlight:
    packet: Packet
    attempts: int = 1
    # Fixed status reply size; None reads until the link goes quiet
    reply_length: Optional[int] = None
    # Reply already read while an older packet was being retried:
    # None (not read yet), True (ACK) or False (rejected)
    accepted: Optional[bool] = None
    kind: Optional[TransportErrorKind] = None
    reason: str = ""


class TransportSession:
    """Connection-oriented session with one printer."""

    def __init__(self, channel: RadioChannel, config: SessionConfig = None):
        self.config = config or SessionConfig()
        self.config.validate()
        self.channel = channel
        self.address: Optional[str] = None
        self.state = SessionState.DISCONNECTED
        self.history: list[SessionState] = [SessionState.DISCONNECTED]
        self.last_reply: Optional[bytes] = None
        self.packets_written = 0
        self._in_flight: deque[_InFlight] = deque()
        self._rx = bytearray()
        self._job_lock = asyncio.Lock()
        self._debug = False

    def set_debug(self, enabled: bool):
        """Enable/disable debug output (also on the channel)."""
        self._debug = enabled
        self.channel.set_debug(enabled)

    def _log(self, message: str):
        """Print debug message if enabled."""
        if self._debug:
            print(f"[Peripage] {message}")

    @classmethod
    async def open(cls, address: str, channel: RadioChannel,
                   config: SessionConfig = None) -> "TransportSession":
        """Create a session and connect it. Raises ConnectionError on failure."""
        session = cls(channel, config)
        await session.connect(address)
        return session

    @property
    def mtu(self) -> int:
        """Negotiated MTU: the smaller of the configured and channel MTU."""
        return min(self.config.mtu, self.channel.mtu)

    @property
    def in_flight(self) -> int:
        """Number of packets written but not yet acknowledged."""
        return len(self._in_flight)

    @property
    def job_lock(self) -> asyncio.Lock:
        """Serializes print jobs on this session (FIFO)."""
        return self._job_lock

    @property
    def is_busy(self) -> bool:
        return self._job_lock.locked()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, state: SessionState):
        self._log(f"Session {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    # ---- Connection ----

    async def connect(self, address: str):
        """
        Open the channel and perform the init handshake.

        Ends in STREAMING, or in FAULTED with ConnectionError raised.
        """
        if self.state != SessionState.DISCONNECTED:
            raise ConnectionError(f"Session is {self.state.value}, create a new one to reconnect")

        self.address = address
        self._transition(SessionState.CONNECTING)

        try:
            await asyncio.wait_for(
                self.channel.open(address),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            await self._fault()
            raise ConnectionError(
                f"Timed out connecting to {address} after {self.config.connect_timeout}s"
            ) from None
        except ConnectionError:
            await self._fault()
            raise

        self._transition(SessionState.HANDSHAKING)

        try:
            await self._handshake()
        except TransportError as e:
            await self._fault()
            raise ConnectionError(f"Handshake with {address} failed: {e}") from e

        self._transition(SessionState.STREAMING)
        self._log(f"Connected to {address}, MTU {self.mtu}, window {self.config.window}")

    async def _handshake(self):
        """Send the reset command and wait for the init ack."""
        if self.config.settle_delay > 0:
            await asyncio.sleep(self.config.settle_delay)

        packet = Packet(index=0, payload=Commands.reset(), ack=AckPolicy.SINGLE_BYTE)
        await self.channel.write(packet.encode())
        reply = await self._read_exact(1, self.config.handshake_timeout)

        if reply[0] != ACK:
            raise TransportError(
                TransportErrorKind.NACK,
                f"Malformed init ack 0x{reply[0]:02x}",
                packet_index=0,
            )

    async def close(self):
        """Release the channel. Idempotent; a faulted session stays FAULTED."""
        if not self.is_terminal:
            self._transition(SessionState.CLOSED)
        self._in_flight.clear()
        self._rx.clear()
        await self.channel.close()

    async def _fault(self):
        if self.state != SessionState.FAULTED:
            self._transition(SessionState.FAULTED)
        self._in_flight.clear()
        self._rx.clear()
        await self.channel.close()

    async def __aenter__(self) -> "TransportSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ---- Streaming ----

    def _ensure_streaming(self):
        if self.state != SessionState.STREAMING:
            raise TransportError(
                TransportErrorKind.LINK_DROPPED,
                f"Session is {self.state.value}, not streaming",
            )

    async def send(self, packet: Packet, timeout: Optional[float] = None,
                   on_ack: Optional[AckCallback] = None) -> list[Packet]:
        """
        Send one packet, respecting the flow-control window.

        Blocks while ``window`` packets are unacknowledged, so that after
        return at most ``window - 1`` remain outstanding.

        Args:
            packet: Next packet in index order
            timeout: Ack wait in seconds (default: config.packet_timeout)
            on_ack: Called with each packet as its ack is confirmed

        Returns:
            Packets confirmed during this call, oldest first

        Raises:
            TransportError: NACK/TIMEOUT after all attempts (session stays
                streaming), LINK_DROPPED (session becomes FAULTED)
        """
        self._ensure_streaming()
        if timeout is None:
            timeout = self.config.packet_timeout
        confirmed: list[Packet] = []

        def confirm(p: Packet):
            confirmed.append(p)
            if on_ack:
                on_ack(p)

        try:
            await self._transmit(packet)
            self._in_flight.append(_InFlight(packet))
            self._release_settled(confirm)

            while len(self._in_flight) >= self.config.window:
                await self._await_head(timeout, confirm)
        except TransportError as e:
            await self._handle_failure(e)
            raise

        return confirmed

    async def drain(self, timeout: Optional[float] = None,
                    on_ack: Optional[AckCallback] = None) -> list[Packet]:
        """
        Wait for all outstanding acks, then confirm with a status query.

        The session returns to STREAMING, ready for the next job. Any
        failure while draining faults the session.
        """
        self._ensure_streaming()
        if timeout is None:
            timeout = self.config.drain_timeout
        confirmed: list[Packet] = []

        def confirm(p: Packet):
            confirmed.append(p)
            if on_ack:
                on_ack(p)

        self._transition(SessionState.DRAINING)
        try:
            while self._in_flight:
                await self._await_head(timeout, confirm)
            await self._ask(DeviceQuery.BATTERY, timeout)
        except TransportError:
            await self._fault()
            raise

        self._transition(SessionState.STREAMING)
        return confirmed

    async def settle(self, timeout: Optional[float] = None,
                     on_ack: Optional[AckCallback] = None) -> list[Packet]:
        """
        Collect the acks still owed for written packets, sending nothing new.

        Used when a job stops early so that its outstanding packets are
        accounted to it and not to the next job on the session.
        """
        self._ensure_streaming()
        if timeout is None:
            timeout = self.config.packet_timeout
        confirmed: list[Packet] = []

        def confirm(p: Packet):
            confirmed.append(p)
            if on_ack:
                on_ack(p)

        try:
            while self._in_flight:
                await self._await_head(timeout, confirm)
        except TransportError as e:
            await self._handle_failure(e)
            raise

        return confirmed

    async def query(self, query: DeviceQuery, timeout: Optional[float] = None) -> bytes:
        """
        Ask the printer for information outside of a print job.

        Waits for any running job to finish first.
        """
        if timeout is None:
            timeout = self.config.drain_timeout
        async with self._job_lock:
            self._ensure_streaming()
            try:
                while self._in_flight:
                    await self._await_head(timeout, lambda p: None)
                return await self._ask(query, timeout)
            except TransportError as e:
                await self._handle_failure(e)
                raise

    async def _ask(self, query: DeviceQuery, timeout: float) -> bytes:
        packet = Packet(index=0, payload=Commands.query(query), ack=AckPolicy.STATUS_REPLY)
        await self._transmit(packet)
        reply_length = BATTERY_REPLY_LENGTH if query == DeviceQuery.BATTERY else None
        self._in_flight.append(_InFlight(packet, reply_length=reply_length))
        await self._await_head(timeout, lambda p: None)
        return self.last_reply

    async def _handle_failure(self, error: TransportError):
        if error.kind == TransportErrorKind.LINK_DROPPED:
            self._log(f"Link dropped: {error}")
            await self._fault()
        else:
            # Printer state for the abandoned packets is unknown
            self._in_flight.clear()
            self._rx.clear()

    async def _transmit(self, packet: Packet):
        await self.channel.write(packet.encode())
        self.packets_written += 1
        if self.config.inter_packet_delay > 0:
            await asyncio.sleep(self.config.inter_packet_delay)

    def _release_settled(self, confirm: AckCallback):
        """Confirm leading packets that need no further reply."""
        while self._in_flight:
            entry = self._in_flight[0]
            if entry.packet.ack != AckPolicy.NONE and not entry.accepted:
                break
            confirm(self._in_flight.popleft().packet)

    async def _read_ack(self, entry: _InFlight, timeout: float):
        """Read the single-byte reply for ``entry`` into its outcome fields."""
        try:
            reply = (await self._read_exact(1, timeout))[0]
        except TransportError as e:
            if e.kind != TransportErrorKind.TIMEOUT:
                raise
            entry.accepted = False
            entry.kind = TransportErrorKind.TIMEOUT
            entry.reason = f"no ack within {timeout}s"
            return

        entry.accepted = reply == ACK
        if not entry.accepted:
            entry.kind = TransportErrorKind.NACK
            entry.reason = "NAK" if reply == NAK else f"unexpected byte 0x{reply:02x}"

    async def _collect_trailing(self, timeout: float):
        """Read the replies owed for packets written after the head."""
        for entry in list(self._in_flight)[1:]:
            if entry.accepted is not None or entry.packet.ack == AckPolicy.NONE:
                continue
            await self._read_ack(entry, timeout)

    async def _await_head(self, timeout: float, confirm: AckCallback):
        """Resolve the oldest outstanding packet, re-sending it on NAK/timeout."""
        entry = self._in_flight[0]
        packet = entry.packet

        while True:
            if packet.ack == AckPolicy.STATUS_REPLY:
                try:
                    self.last_reply = await self._read_reply(entry.reply_length, timeout)
                    entry.accepted = True
                except TransportError as e:
                    if e.kind != TransportErrorKind.TIMEOUT:
                        raise
                    entry.accepted = False
                    entry.kind = TransportErrorKind.TIMEOUT
                    entry.reason = f"no reply within {timeout}s"
            elif entry.accepted is None:
                await self._read_ack(entry, timeout)

            if entry.accepted:
                self._in_flight.popleft()
                confirm(packet)
                self._release_settled(confirm)
                return

            if entry.attempts >= self.config.attempts:
                raise TransportError(
                    entry.kind,
                    f"Packet {packet.index} failed after {entry.attempts} attempt(s): "
                    f"{entry.reason}",
                    packet_index=packet.index,
                )

            # Replies for later packets are already on their way; match them
            # before the re-sent packet's reply joins the stream
            await self._collect_trailing(timeout)

            delay = self.config.backoff * 2 ** (entry.attempts - 1)
            entry.attempts += 1
            self._log(
                f"Packet {packet.index} {entry.reason}, re-sending "
                f"(attempt {entry.attempts}/{self.config.attempts}) in {delay:.2f}s"
            )
            if delay > 0:
                await asyncio.sleep(delay)

            entry.accepted = None
            await self._transmit(packet)

    async def _fill(self, count: int, timeout: float):
        """Read from the channel until ``count`` bytes are buffered."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while len(self._rx) < count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError(TransportErrorKind.TIMEOUT, f"No data within {timeout}s")
            self._rx += await self.channel.read(remaining)

    async def _read_exact(self, count: int, timeout: float) -> bytes:
        """Read exactly ``count`` bytes, keeping any surplus buffered."""
        await self._fill(count, timeout)
        data = bytes(self._rx[:count])
        del self._rx[:count]
        return data

    async def _read_reply(self, length: Optional[int], timeout: float) -> bytes:
        """
        Read a status reply.

        Replies of known size are read exactly. Text replies arrive in
        several reads on both radios, so they are complete only once the
        link has been quiet for ``config.reply_quiet`` seconds.
        """
        if length is not None:
            return await self._read_exact(length, timeout)

        await self._fill(1, timeout)
        while True:
            try:
                self._rx += await self.channel.read(self.config.reply_quiet)
            except TransportError as e:
                if e.kind != TransportErrorKind.TIMEOUT:
                    raise
                break

        data = bytes(self._rx)
        self._rx.clear()
        return data

    def __repr__(self) -> str:
        return f"TransportSession({self.address}, {self.state.value}, in_flight={self.in_flight})"
