"""
RTP Packetizer
==============

H.264 over RTP (RFC 6184): single NAL unit packets and FU-A fragments.

Design Rules:
    - Payloads never exceed `max_payload` bytes
    - The marker bit is set on the final packet of an access unit
    - Sequence numbers wrap at 65536
"""

import random
import struct
from typing import List, Optional, Sequence

RTP_VERSION = 2
FU_A_TYPE = 28

_HEADER = struct.Struct("!BBHII")


class RtpPacketizer:
    """
    Stateful packetizer for one RTP stream.

    Attributes:
        ssrc: Synchronization source identifier
        payload_type: Dynamic payload type (96 for H.264)
        max_payload: Maximum payload bytes per packet
        sequence: Next sequence number
    """

    def __init__(
        self,
        ssrc: Optional[int] = None,
        payload_type: int = 96,
        max_payload: int = 1400,
        initial_sequence: Optional[int] = None,
    ) -> None:
        if max_payload < 3:
            raise ValueError("max_payload must leave room for the FU-A headers")
        self.ssrc = random.getrandbits(32) if ssrc is None else ssrc & 0xFFFFFFFF
        self.payload_type = payload_type & 0x7F
        self.max_payload = max_payload
        self.sequence = (
            random.getrandbits(16) if initial_sequence is None else initial_sequence & 0xFFFF
        )
        self.packets_sent: int = 0

    def _header(self, timestamp: int, marker: bool) -> bytes:
        header = _HEADER.pack(
            RTP_VERSION << 6,
            (0x80 if marker else 0) | self.payload_type,
            self.sequence,
            timestamp & 0xFFFFFFFF,
            self.ssrc,
        )
        self.sequence = (self.sequence + 1) & 0xFFFF
        self.packets_sent += 1
        return header

    def packetize(self, nal: bytes, timestamp: int, last: bool = True) -> List[bytes]:
        """
        Packetize one NAL unit.

        Args:
            nal: NAL unit without start code
            timestamp: 90 kHz RTP timestamp of the access unit
            last: True for the final NAL unit of the access unit

        Returns:
            RTP packets (header + payload)
        """
        if not nal:
            return []

        if len(nal) <= self.max_payload:
            return [self._header(timestamp, last) + nal]

        indicator = (nal[0] & 0xE0) | FU_A_TYPE
        kind = nal[0] & 0x1F
        body = memoryview(nal)[1:]
        chunk = self.max_payload - 2

        packets: List[bytes] = []
        for offset in range(0, len(body), chunk):
            start = offset == 0
            end = offset + chunk >= len(body)
            fu_header = (0x80 if start else 0) | (0x40 if end else 0) | kind
            packets.append(
                self._header(timestamp, last and end)
                + bytes((indicator, fu_header))
                + body[offset:offset + chunk].tobytes()
            )
        return packets

    def packetize_access_unit(self, nal_units: Sequence[bytes], timestamp: int) -> List[bytes]:
        """Packetize every NAL unit of one access unit, marker on the last packet."""
        packets: List[bytes] = []
        for index, nal in enumerate(nal_units):
            packets.extend(self.packetize(nal, timestamp, last=index == len(nal_units) - 1))
        return packets


def parse_header(packet: bytes) -> dict:
    """Decode the fixed RTP header (used by tests and debugging)."""
    first, second, sequence, timestamp, ssrc = _HEADER.unpack_from(packet)
    return {
        "version": first >> 6,
        "marker": bool(second & 0x80),
        "payload_type": second & 0x7F,
        "sequence": sequence,
        "timestamp": timestamp,
        "ssrc": ssrc,
    }
