"""
RTP Packetizer Tests
====================

Single NAL unit packets, FU-A fragmentation and header fields.
"""

import pytest

from camrelay.transport.rtp import FU_A_TYPE, RtpPacketizer, parse_header


class TestSingleNalPackets:
    """Tests for NAL units that fit one packet."""

    def test_single_packet_with_marker(self):
        packetizer = RtpPacketizer(ssrc=0x1234, initial_sequence=10)
        nal = b"\x65" + bytes(100)

        packets = packetizer.packetize(nal, timestamp=90000)

        assert len(packets) == 1
        header = parse_header(packets[0])
        assert header == {
            "version": 2,
            "marker": True,
            "payload_type": 96,
            "sequence": 10,
            "timestamp": 90000,
            "ssrc": 0x1234,
        }
        assert packets[0][12:] == nal

    def test_marker_only_on_last_nal_of_access_unit(self):
        packetizer = RtpPacketizer(initial_sequence=0)
        packets = packetizer.packetize_access_unit([b"\x67\x42", b"\x68\xce", b"\x65\x88"], 3000)

        markers = [parse_header(p)["marker"] for p in packets]
        sequences = [parse_header(p)["sequence"] for p in packets]
        assert markers == [False, False, True]
        assert sequences == [0, 1, 2]
        assert packetizer.packets_sent == 3

    def test_empty_nal_produces_nothing(self):
        assert RtpPacketizer().packetize(b"", timestamp=0) == []


class TestFuA:
    """Tests for FU-A fragmentation."""

    def test_fragments_respect_max_payload(self):
        packetizer = RtpPacketizer(max_payload=100, initial_sequence=0)
        nal = bytes([0x65]) + bytes(range(256)) * 2

        packets = packetizer.packetize(nal, timestamp=0)

        assert len(packets) > 1
        assert all(len(p) - 12 <= 100 for p in packets)

        indicators = {p[12] for p in packets}
        assert indicators == {(0x65 & 0xE0) | FU_A_TYPE}

        fu_headers = [p[13] for p in packets]
        assert fu_headers[0] & 0x80
        assert not fu_headers[0] & 0x40
        assert fu_headers[-1] & 0x40
        assert not fu_headers[-1] & 0x80
        assert all(h & 0x1F == 5 for h in fu_headers)
        assert all(h & 0xC0 == 0 for h in fu_headers[1:-1])

        # Reassembly restores the original NAL unit
        body = b"".join(p[14:] for p in packets)
        assert bytes([(packets[0][12] & 0xE0) | (fu_headers[0] & 0x1F)]) + body == nal

    def test_marker_on_final_fragment_only(self):
        packetizer = RtpPacketizer(max_payload=50)
        packets = packetizer.packetize(b"\x65" + bytes(200), timestamp=0, last=True)
        markers = [parse_header(p)["marker"] for p in packets]
        assert markers[-1] is True
        assert not any(markers[:-1])

    def test_no_marker_when_not_last(self):
        packetizer = RtpPacketizer(max_payload=50)
        packets = packetizer.packetize(b"\x65" + bytes(200), timestamp=0, last=False)
        assert not any(parse_header(p)["marker"] for p in packets)


class TestHeader:
    """Tests for header state."""

    def test_sequence_wraps(self):
        packetizer = RtpPacketizer(initial_sequence=0xFFFF)
        packets = packetizer.packetize_access_unit([b"\x41\x00", b"\x41\x01"], 0)
        assert [parse_header(p)["sequence"] for p in packets] == [0xFFFF, 0]

    def test_timestamp_wraps_to_32_bits(self):
        packet = RtpPacketizer().packetize(b"\x41", timestamp=2**32 + 5)[0]
        assert parse_header(packet)["timestamp"] == 5

    def test_rejects_tiny_payload(self):
        with pytest.raises(ValueError):
            RtpPacketizer(max_payload=2)
