"""
Frame Chunker.

Splits the command stream of a job into packets that fit the link MTU.
Frames are concatenated and cut at fixed payload boundaries, so every
packet except the last carries exactly ``mtu - PACKET_HEADER_SIZE`` bytes.
"""

from typing import Iterable, Iterator, Sequence

from .errors import ConfigError
from .protocol import (
    MAX_PAYLOAD_SIZE,
    PACKET_HEADER_SIZE,
    AckPolicy,
    CommandFrame,
    Packet,
)


class FrameChunker:
    """
    Re-iterable packet stream over a fixed sequence of frames.

    Each call to ``iter()`` restarts from the first frame, so the same
    chunker can be replayed (for example after a failed attempt).
    """

    def __init__(self, frames: Sequence[CommandFrame], mtu: int):
        """
        Args:
            frames: Command frames in send order
            mtu: Largest packet on the link, header included

        Raises:
            ConfigError: If the MTU leaves no room for payload
        """
        if mtu <= PACKET_HEADER_SIZE:
            raise ConfigError(
                f"MTU {mtu} must exceed the {PACKET_HEADER_SIZE}-byte packet header"
            )
        if mtu - PACKET_HEADER_SIZE > MAX_PAYLOAD_SIZE:
            raise ConfigError(f"MTU {mtu} exceeds the maximum packet size")

        self.frames = tuple(frames)
        self.mtu = mtu
        self.payload_size = mtu - PACKET_HEADER_SIZE

    @property
    def total_bytes(self) -> int:
        """Sum of all frame payload lengths."""
        return sum(len(frame) for frame in self.frames)

    def __len__(self) -> int:
        return (self.total_bytes + self.payload_size - 1) // self.payload_size

    def __iter__(self) -> Iterator[Packet]:
        index = 0
        buffer = bytearray()
        needs_ack = False
        ends_query = False

        for frame in self.frames:
            data = frame.payload
            offset = 0

            while offset < len(data):
                take = min(self.payload_size - len(buffer), len(data) - offset)
                buffer += data[offset:offset + take]
                offset += take

                if frame.ack == AckPolicy.SINGLE_BYTE:
                    needs_ack = True
                if offset == len(data) and frame.ack == AckPolicy.STATUS_REPLY:
                    ends_query = True

                if len(buffer) == self.payload_size:
                    yield self._packet(index, buffer, needs_ack, ends_query)
                    index += 1
                    buffer = bytearray()
                    needs_ack = False
                    ends_query = False

        if buffer:
            yield self._packet(index, buffer, needs_ack, ends_query)

    @staticmethod
    def _packet(index: int, payload: bytearray, needs_ack: bool, ends_query: bool) -> Packet:
        if ends_query:
            ack = AckPolicy.STATUS_REPLY
        elif needs_ack:
            ack = AckPolicy.SINGLE_BYTE
        else:
            ack = AckPolicy.NONE
        return Packet(index=index, payload=bytes(payload), ack=ack)


def chunk(frames: Sequence[CommandFrame], mtu: int) -> FrameChunker:
    """Split frames into MTU-sized packets (lazy, re-iterable)."""
    return FrameChunker(frames, mtu)


def reassemble(packets: Iterable[Packet]) -> bytes:
    """Join packet payloads in index order."""
    return b"".join(p.payload for p in sorted(packets, key=lambda p: p.index))
