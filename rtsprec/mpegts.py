#!/usr/bin/env python3
"""
MPEG-TS Writer

Serializes H.264 access units into an MPEG transport stream:
- PAT / PMT sections with MPEG-2 CRC32, repeated before every keyframe
- PES packets carrying PTS and DTS
- 188 byte TS packets with per-PID continuity counters
- PCR in the adaptation field of the first packet of every PES
"""

import struct
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional

from .h264 import NALU_TYPE_ACCESS_UNIT_DELIMITER, contains_idr, join_annexb, nalu_type

TS_PACKET_SIZE = 188
TS_HEADER_SIZE = 4
TS_SYNC_BYTE = 0x47
TS_STUFFING_BYTE = 0xFF

PID_PAT = 0x0000
PID_PMT = 0x1000
PID_VIDEO = 0x0100

STREAM_TYPE_H264 = 0x1B
STREAM_ID_VIDEO = 0xE0

PROGRAM_NUMBER = 1
TRANSPORT_STREAM_ID = 1

TIMESTAMP_MASK = 0x1FFFFFFFF  # 33 bits

# AUD with primary_pic_type = 7 (any slice type)
ACCESS_UNIT_DELIMITER = b'\x09\xf0'

CODEC_H264 = "h264"


class MuxError(Exception):
    """Raised when an access unit cannot be multiplexed."""


def _make_crc32_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i << 24
        for _ in range(8):
            if crc & 0x80000000:
                crc = (crc << 1) ^ 0x04C11DB7
            else:
                crc <<= 1
        table.append(crc & 0xFFFFFFFF)
    return table


_CRC32_TABLE = _make_crc32_table()


def crc32_mpeg2(data: bytes) -> int:
    """CRC32 used by MPEG-2 PSI sections (polynomial 0x04C11DB7, no reflection)."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = (_CRC32_TABLE[((crc >> 24) ^ byte) & 0xFF] ^ (crc << 8)) & 0xFFFFFFFF
    return crc


def encode_timestamp(ts: int, prefix: int) -> bytes:
    """
    Encode a 33-bit timestamp into the 5 byte PES form.

    Layout: prefix(4) ts[32:30](3) marker(1) ts[29:15](15) marker(1) ts[14:0](15) marker(1)
    """
    ts &= TIMESTAMP_MASK
    return bytes([
        ((prefix & 0x0F) << 4) | (((ts >> 30) & 0x07) << 1) | 0x01,
        (ts >> 22) & 0xFF,
        (((ts >> 15) & 0x7F) << 1) | 0x01,
        (ts >> 7) & 0xFF,
        ((ts & 0x7F) << 1) | 0x01,
    ])


def decode_timestamp(data: bytes) -> int:
    """Inverse of encode_timestamp."""
    return (
        (((data[0] >> 1) & 0x07) << 30)
        | (data[1] << 22)
        | ((data[2] >> 1) << 15)
        | (data[3] << 7)
        | (data[4] >> 1)
    )


def build_pes_packet(stream_id: int, data: bytes, pts: int, dts: Optional[int] = None) -> bytes:
    """
    Build a PES packet.

    DTS is only written when it differs from PTS. Video PES packets use an
    unbounded length (0).
    """
    has_dts = dts is not None and dts != pts

    header = bytearray()
    if has_dts:
        header += encode_timestamp(pts, 0x03)
        header += encode_timestamp(dts, 0x01)
        flags = 0xC0
    else:
        header += encode_timestamp(pts, 0x02)
        flags = 0x80

    pes_length = 0
    if stream_id < STREAM_ID_VIDEO:
        pes_length = 3 + len(header) + len(data)
        if pes_length > 0xFFFF:
            pes_length = 0

    pes = bytearray(b'\x00\x00\x01')
    pes.append(stream_id)
    pes += struct.pack('>H', pes_length)
    pes.append(0x84)  # marker bits '10' + data_alignment_indicator
    pes.append(flags)
    pes.append(len(header))
    pes += header
    pes += data
    return bytes(pes)


def _encode_pcr(pcr: int) -> bytes:
    base = pcr & TIMESTAMP_MASK
    extension = 0
    return bytes([
        (base >> 25) & 0xFF,
        (base >> 17) & 0xFF,
        (base >> 9) & 0xFF,
        (base >> 1) & 0xFF,
        ((base & 0x01) << 7) | 0x7E | ((extension >> 8) & 0x01),
        extension & 0xFF,
    ])


@dataclass
class Track:
    """An elementary stream carried in the transport stream."""
    codec: str = CODEC_H264
    pid: int = PID_VIDEO

    @property
    def stream_type(self) -> int:
        if self.codec == CODEC_H264:
            return STREAM_TYPE_H264
        raise MuxError(f"unsupported codec: {self.codec}")


class TSWriter:
    """
    Writes a single-program transport stream to a binary file object.

    Usage:
        writer = TSWriter(f, Track())
        writer.initialize()
        writer.write_h264(pts, dts, au)
    """

    def __init__(self, output: BinaryIO, track: Track):
        self._output = output
        self.track = track
        self._continuity: Dict[int, int] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self):
        """Validate the track and write the initial PAT and PMT."""
        if self.track.codec != CODEC_H264:
            raise MuxError(f"unsupported codec: {self.track.codec}")
        self._initialized = True
        self._output.write(self._psi_packets())

    def write_h264(self, pts: int, dts: int, au: List[bytes]) -> int:
        """
        Write one H.264 access unit. Returns the number of bytes written.

        Timestamps are in 90kHz ticks.
        """
        if not self._initialized:
            raise MuxError("writer is not initialized")
        if not au:
            raise MuxError("access unit is empty")
        if any(len(nalu) == 0 for nalu in au):
            raise MuxError("access unit contains an empty NAL unit")
        if pts < 0 or dts < 0:
            raise MuxError(f"negative timestamp (pts={pts}, dts={dts})")
        if dts > pts:
            raise MuxError(f"DTS ({dts}) is greater than PTS ({pts})")

        random_access = contains_idr(au)

        if nalu_type(au[0]) != NALU_TYPE_ACCESS_UNIT_DELIMITER:
            au = [ACCESS_UNIT_DELIMITER] + list(au)

        pes = build_pes_packet(STREAM_ID_VIDEO, join_annexb(au), pts, dts)

        data = bytearray()
        if random_access:
            data += self._psi_packets()
        for packet in self._packetize_pes(pes, self.track.pid, dts, random_access):
            data += packet

        self._output.write(data)
        return len(data)

    def _next_continuity(self, pid: int) -> int:
        cc = self._continuity.get(pid, 0)
        self._continuity[pid] = (cc + 1) & 0x0F
        return cc

    def _build_pat(self) -> bytes:
        body = struct.pack('>HBBB', TRANSPORT_STREAM_ID, 0xC1, 0x00, 0x00)
        body += struct.pack('>HH', PROGRAM_NUMBER, 0xE000 | PID_PMT)
        return self._section(0x00, body)

    def _build_pmt(self) -> bytes:
        body = struct.pack('>HBBB', PROGRAM_NUMBER, 0xC1, 0x00, 0x00)
        body += struct.pack('>HH', 0xE000 | self.track.pid, 0xF000)  # PCR PID, no program info
        body += struct.pack('>BHH', self.track.stream_type, 0xE000 | self.track.pid, 0xF000)
        return self._section(0x02, body)

    @staticmethod
    def _section(table_id: int, body: bytes) -> bytes:
        section_length = len(body) + 4  # + CRC
        section = bytes([table_id, 0xB0 | ((section_length >> 8) & 0x0F), section_length & 0xFF]) + body
        return section + struct.pack('>I', crc32_mpeg2(section))

    def _packetize_section(self, section: bytes, pid: int) -> bytes:
        packet = bytearray([
            TS_SYNC_BYTE,
            0x40 | ((pid >> 8) & 0x1F),  # payload unit start
            pid & 0xFF,
            0x10 | self._next_continuity(pid),  # payload only
            0x00,  # pointer field
        ])
        packet += section
        packet += bytes([TS_STUFFING_BYTE]) * (TS_PACKET_SIZE - len(packet))
        return bytes(packet)

    def _psi_packets(self) -> bytes:
        return (self._packetize_section(self._build_pat(), PID_PAT)
                + self._packetize_section(self._build_pmt(), PID_PMT))

    def _packetize_pes(self, pes: bytes, pid: int, pcr: int, random_access: bool) -> List[bytes]:
        packets = []
        offset = 0
        first = True

        while offset < len(pes):
            adaptation: Optional[bytearray] = None
            if first:
                flags = 0x10  # PCR
                if random_access:
                    flags |= 0x40
                adaptation = bytearray([flags]) + _encode_pcr(pcr)

            header_size = TS_HEADER_SIZE + (1 + len(adaptation) if adaptation is not None else 0)
            space = TS_PACKET_SIZE - header_size
            remaining = len(pes) - offset

            if remaining < space:
                stuffing = space - remaining
                if adaptation is None:
                    # one byte goes to the adaptation_field_length itself
                    adaptation = bytearray()
                    if stuffing > 1:
                        adaptation.append(0x00)
                        adaptation += bytes([TS_STUFFING_BYTE]) * (stuffing - 2)
                else:
                    adaptation += bytes([TS_STUFFING_BYTE]) * stuffing
                space = remaining

            packet = bytearray([
                TS_SYNC_BYTE,
                (0x40 if first else 0x00) | ((pid >> 8) & 0x1F),
                pid & 0xFF,
                (0x30 if adaptation is not None else 0x10) | self._next_continuity(pid),
            ])
            if adaptation is not None:
                packet.append(len(adaptation))
                packet += adaptation
            packet += pes[offset:offset + space]
            offset += space

            packets.append(bytes(packet))
            first = False

        return packets
