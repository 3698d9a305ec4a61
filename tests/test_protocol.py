"""Tests for command bytes, frames and link packets."""

import pytest

from peripage.protocol import (
    MAX_PAYLOAD_SIZE,
    PACKET_HEADER_SIZE,
    AckPolicy,
    BandEncoding,
    CommandFrame,
    Commands,
    DeviceQuery,
    FrameKind,
    Packet,
)


class TestCommands:
    """Test raw command builders."""

    def test_reset_is_sixteen_bytes(self):
        assert Commands.reset() == bytes.fromhex("10fffe01") + bytes(12)
        assert len(Commands.reset()) == 16

    @pytest.mark.parametrize("level,expected", [(0, 0), (1, 1), (2, 2), (-3, 0), (9, 2)])
    def test_concentration_clamped(self, level, expected):
        """Concentration is clamped to 0-2."""
        assert Commands.concentration(level) == bytes.fromhex("10ff1000") + bytes([expected])

    @pytest.mark.parametrize("dots,expected", [(0, 1), (30, 30), (255, 255), (1000, 255)])
    def test_feed_clamped(self, dots, expected):
        """Feed distance is clamped to 1-255."""
        assert Commands.feed(dots) == bytes([0x1B, 0x4A, expected])

    def test_raster_header_little_endian(self):
        """Row bytes and height are little-endian 16-bit."""
        header = Commands.raster_header(0x0123, 0x0208)
        assert header == bytes.fromhex("1d7630") + bytes([0x00, 0x23, 0x01, 0x08, 0x02])

    def test_rle_header_carries_length(self):
        header = Commands.raster_header(72, 24, BandEncoding.RLE, 300)
        assert header[3] == 0x80
        assert header[-2:] == bytes([300 & 0xFF, 300 >> 8])

    def test_rle_header_requires_length(self):
        with pytest.raises(ValueError):
            Commands.raster_header(72, 24, BandEncoding.RLE)

    def test_query_bytes(self):
        assert Commands.query(DeviceQuery.BATTERY) == bytes.fromhex("10ff50f1")
        assert Commands.query(DeviceQuery.FULL) == bytes.fromhex("10ff70f100")


class TestCommandFrame:
    """Test frame constructors."""

    def test_init_frame(self):
        frame = CommandFrame.init(2)
        assert frame.kind == FrameKind.INIT
        assert frame.payload == Commands.reset() + Commands.concentration(2)
        assert frame.ack == AckPolicy.SINGLE_BYTE

    def test_status_query_expects_reply(self):
        frame = CommandFrame.status_query()
        assert frame.kind == FrameKind.STATUS_QUERY
        assert frame.ack == AckPolicy.STATUS_REPLY

    def test_len_is_payload_length(self):
        assert len(CommandFrame.feed(30)) == 3


class TestPacket:
    """Test packet framing."""

    def test_encode_header(self):
        """Header is index, length (LE) and XOR checksum."""
        packet = Packet(index=3, payload=b"\x01\x02\x04")
        data = packet.encode()
        assert data[:PACKET_HEADER_SIZE] == bytes([3, 3, 0, 0x07])
        assert data[PACKET_HEADER_SIZE:] == b"\x01\x02\x04"

    def test_index_wraps_to_low_byte(self):
        assert Packet(index=0x1FF, payload=b"x").encode()[0] == 0xFF

    def test_decode_encoded_packet(self):
        packet = Packet(index=5, payload=b"hello")
        decoded = Packet.decode(packet.encode())
        assert decoded.index == 5
        assert decoded.payload == b"hello"

    def test_decode_with_full_index(self):
        packet = Packet(index=300, payload=b"abc")
        assert Packet.decode(packet.encode(), index=300).index == 300
        assert Packet.decode(packet.encode(), index=301) is None

    def test_decode_rejects_short_data(self):
        assert Packet.decode(b"\x00\x01") is None

    def test_decode_rejects_length_mismatch(self):
        data = Packet(index=0, payload=b"abcd").encode()
        assert Packet.decode(data[:-1]) is None

    def test_decode_rejects_bad_checksum(self):
        data = bytearray(Packet(index=0, payload=b"abcd").encode())
        data[3] ^= 0xFF
        assert Packet.decode(bytes(data)) is None

    def test_max_payload_fits_length_field(self):
        assert MAX_PAYLOAD_SIZE == 0xFFFF
