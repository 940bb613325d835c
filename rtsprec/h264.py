#!/usr/bin/env python3
"""
H.264 bitstream helpers and RTP depacketizer

Provides just enough H.264 parsing for recording:
- NAL unit classification and Annex B framing
- SPS parsing (picture order count configuration, picture size)
- Slice header parsing up to pic_order_cnt_lsb
- RTP (RFC 6184) depacketization into access units, built on aiortc's
  payload descriptor parser
"""

import logging
from dataclasses import dataclass
from typing import Optional, List

from aiortc.codecs.h264 import H264PayloadDescriptor
from aiortc.rtp import RtpPacket

logger = logging.getLogger("rtsprec.h264")

# NAL unit types (ITU-T H.264 table 7-1)
NALU_TYPE_NON_IDR = 1
NALU_TYPE_IDR = 5
NALU_TYPE_SPS = 7
NALU_TYPE_PPS = 8
NALU_TYPE_ACCESS_UNIT_DELIMITER = 9

# RTP payload structures (RFC 6184)
NALU_TYPE_STAP_A = 24
NALU_TYPE_FU_A = 28

START_CODE = b'\x00\x00\x00\x01'
START_CODE_SHORT = b'\x00\x00\x01'

# Profiles whose SPS carries chroma format / bit depth / scaling lists
HIGH_PROFILES = {100, 110, 122, 244, 44, 83, 86, 118, 128, 138, 139, 134, 135}

# Largest access unit the depacketizer will assemble
MAX_ACCESS_UNIT_SIZE = 8 * 1024 * 1024


class DecodeError(ValueError):
    """Raised when a packet or NAL unit cannot be decoded."""


def nalu_type(nalu: bytes) -> int:
    """Return the NAL unit type (lower 5 bits of the header byte)."""
    return nalu[0] & 0x1F


def nalu_ref_idc(nalu: bytes) -> int:
    return (nalu[0] >> 5) & 0x03


def contains_idr(au: List[bytes]) -> bool:
    """Check whether an access unit carries a keyframe slice."""
    return any(nalu and nalu_type(nalu) == NALU_TYPE_IDR for nalu in au)


def split_annexb(data: bytes) -> List[bytes]:
    """
    Split an Annex B byte stream into NAL units (without start codes).

    Both 3 and 4 byte start codes are accepted. Trailing zero bytes of
    each NAL unit are stripped.
    """
    starts = []
    pos = data.find(START_CODE_SHORT)
    if pos < 0 or data[:pos].strip(b'\x00'):
        raise DecodeError("data does not start with an Annex B start code")

    while pos >= 0:
        starts.append(pos + len(START_CODE_SHORT))
        pos = data.find(START_CODE_SHORT, pos + len(START_CODE_SHORT))

    nal_units = []
    for i, begin in enumerate(starts):
        end = starts[i + 1] - len(START_CODE_SHORT) if i + 1 < len(starts) else len(data)
        nal = data[begin:end].rstrip(b'\x00')
        if nal:
            nal_units.append(nal)
    return nal_units


def join_annexb(au: List[bytes]) -> bytes:
    """Serialize NAL units as an Annex B byte stream."""
    return b''.join(START_CODE + nalu for nalu in au)


def remove_emulation_prevention(data: bytes) -> bytes:
    """Convert NAL unit payload bytes to RBSP (drop 0x03 after 00 00)."""
    out = bytearray()
    zeros = 0
    for byte in data:
        if zeros >= 2 and byte == 0x03:
            zeros = 0
            continue
        out.append(byte)
        zeros = zeros + 1 if byte == 0 else 0
    return bytes(out)


class BitReader:
    """MSB-first bit reader with Exp-Golomb support."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0
        self._len = len(data) * 8

    @property
    def bits_left(self) -> int:
        return self._len - self._pos

    def read_bit(self) -> int:
        if self._pos >= self._len:
            raise DecodeError("not enough bits")
        byte = self._data[self._pos >> 3]
        bit = (byte >> (7 - (self._pos & 7))) & 1
        self._pos += 1
        return bit

    def read_bits(self, count: int) -> int:
        value = 0
        for _ in range(count):
            value = (value << 1) | self.read_bit()
        return value

    def read_flag(self) -> bool:
        return self.read_bit() == 1

    def read_ue(self) -> int:
        """Read an unsigned Exp-Golomb code."""
        leading_zeros = 0
        while self.read_bit() == 0:
            leading_zeros += 1
            if leading_zeros > 31:
                raise DecodeError("invalid Exp-Golomb code")
        return (1 << leading_zeros) - 1 + self.read_bits(leading_zeros)

    def read_se(self) -> int:
        """Read a signed Exp-Golomb code."""
        k = self.read_ue()
        if k & 1:
            return (k + 1) // 2
        return -(k // 2)


def _skip_scaling_list(reader: BitReader, size: int):
    last_scale = 8
    next_scale = 8
    for _ in range(size):
        if next_scale != 0:
            delta_scale = reader.read_se()
            next_scale = (last_scale + delta_scale + 256) % 256
        if next_scale != 0:
            last_scale = next_scale


@dataclass
class SPS:
    """Sequence parameter set fields used for timing and logging."""
    profile_idc: int
    level_idc: int
    seq_parameter_set_id: int
    chroma_format_idc: int
    separate_colour_plane: bool
    log2_max_frame_num: int
    pic_order_cnt_type: int
    log2_max_pic_order_cnt_lsb: int
    max_num_ref_frames: int
    frame_mbs_only: bool
    width: int
    height: int

    @classmethod
    def parse(cls, nalu: bytes) -> 'SPS':
        """Parse an SPS NAL unit (including its header byte)."""
        if len(nalu) < 4 or nalu_type(nalu) != NALU_TYPE_SPS:
            raise DecodeError("not an SPS NAL unit")

        r = BitReader(remove_emulation_prevention(nalu[1:]))
        profile_idc = r.read_bits(8)
        r.read_bits(8)  # constraint flags + reserved
        level_idc = r.read_bits(8)
        sps_id = r.read_ue()
        if sps_id > 31:
            raise DecodeError(f"invalid seq_parameter_set_id {sps_id}")

        chroma_format_idc = 1
        separate_colour_plane = False
        if profile_idc in HIGH_PROFILES:
            chroma_format_idc = r.read_ue()
            if chroma_format_idc > 3:
                raise DecodeError(f"invalid chroma_format_idc {chroma_format_idc}")
            if chroma_format_idc == 3:
                separate_colour_plane = r.read_flag()
            r.read_ue()  # bit_depth_luma_minus8
            r.read_ue()  # bit_depth_chroma_minus8
            r.read_bit()  # qpprime_y_zero_transform_bypass_flag
            if r.read_flag():  # seq_scaling_matrix_present_flag
                for i in range(12 if chroma_format_idc == 3 else 8):
                    if r.read_flag():
                        _skip_scaling_list(r, 16 if i < 6 else 64)

        log2_max_frame_num = r.read_ue() + 4
        pic_order_cnt_type = r.read_ue()
        log2_max_pic_order_cnt_lsb = 0
        if pic_order_cnt_type == 0:
            log2_max_pic_order_cnt_lsb = r.read_ue() + 4
        elif pic_order_cnt_type == 1:
            r.read_bit()  # delta_pic_order_always_zero_flag
            r.read_se()  # offset_for_non_ref_pic
            r.read_se()  # offset_for_top_to_bottom_field
            for _ in range(r.read_ue()):
                r.read_se()  # offset_for_ref_frame
        elif pic_order_cnt_type != 2:
            raise DecodeError(f"invalid pic_order_cnt_type {pic_order_cnt_type}")

        if log2_max_frame_num > 16 or log2_max_pic_order_cnt_lsb > 16:
            raise DecodeError("frame_num / POC LSB length out of range")

        max_num_ref_frames = r.read_ue()
        r.read_bit()  # gaps_in_frame_num_value_allowed_flag
        width_mbs = r.read_ue() + 1
        height_map_units = r.read_ue() + 1
        frame_mbs_only = r.read_flag()
        if not frame_mbs_only:
            r.read_bit()  # mb_adaptive_frame_field_flag
        r.read_bit()  # direct_8x8_inference_flag

        width = width_mbs * 16
        height = (2 - int(frame_mbs_only)) * height_map_units * 16

        if r.read_flag():  # frame_cropping_flag
            left, right, top, bottom = r.read_ue(), r.read_ue(), r.read_ue(), r.read_ue()
            if chroma_format_idc == 0 or separate_colour_plane:
                crop_x, crop_y = 1, 2 - int(frame_mbs_only)
            else:
                sub_width = 1 if chroma_format_idc == 3 else 2
                sub_height = 2 if chroma_format_idc == 1 else 1
                crop_x, crop_y = sub_width, sub_height * (2 - int(frame_mbs_only))
            width -= (left + right) * crop_x
            height -= (top + bottom) * crop_y

        return cls(
            profile_idc=profile_idc,
            level_idc=level_idc,
            seq_parameter_set_id=sps_id,
            chroma_format_idc=chroma_format_idc,
            separate_colour_plane=separate_colour_plane,
            log2_max_frame_num=log2_max_frame_num,
            pic_order_cnt_type=pic_order_cnt_type,
            log2_max_pic_order_cnt_lsb=log2_max_pic_order_cnt_lsb,
            max_num_ref_frames=max_num_ref_frames,
            frame_mbs_only=frame_mbs_only,
            width=width,
            height=height,
        )


def slice_pic_order_cnt_lsb(nalu: bytes, sps: SPS) -> int:
    """Read pic_order_cnt_lsb from a slice header (pic_order_cnt_type 0 only)."""
    if sps.pic_order_cnt_type != 0:
        raise DecodeError("slice header has no pic_order_cnt_lsb")
    typ = nalu_type(nalu)
    if typ not in (NALU_TYPE_NON_IDR, NALU_TYPE_IDR):
        raise DecodeError(f"NAL unit type {typ} is not a slice")

    # The fields needed sit well within the first 32 bytes
    r = BitReader(remove_emulation_prevention(nalu[1:33]))
    r.read_ue()  # first_mb_in_slice
    r.read_ue()  # slice_type
    r.read_ue()  # pic_parameter_set_id
    if sps.separate_colour_plane:
        r.read_bits(2)  # colour_plane_id
    r.read_bits(sps.log2_max_frame_num)  # frame_num
    if not sps.frame_mbs_only:
        if r.read_flag():  # field_pic_flag
            r.read_bit()  # bottom_field_flag
    if typ == NALU_TYPE_IDR:
        r.read_ue()  # idr_pic_id
    return r.read_bits(sps.log2_max_pic_order_cnt_lsb)


class H264Depacketizer:
    """
    Reassembles RTP packets (RFC 6184 packetization modes 0 and 1) into
    access units.

    decode() returns the access unit when the packet carrying the marker
    bit arrives, None while more packets are needed, and raises
    DecodeError for malformed payloads or packets lost inside a frame.
    Packets must be fed in arrival order from a single thread.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._timestamp: Optional[int] = None
        self._next_sequence: Optional[int] = None
        self._in_fragment = False
        self._broken_timestamp: Optional[int] = None

    def reset(self):
        self._buffer = bytearray()
        self._timestamp = None
        self._in_fragment = False

    def skip(self, pkt: RtpPacket):
        """Consume a packet without decoding it. The access unit it belongs to is dropped."""
        self._next_sequence = (pkt.sequence_number + 1) & 0xFFFF
        self.reset()
        self._broken_timestamp = pkt.timestamp
        self._finish_if_marker(pkt)

    def decode(self, pkt: RtpPacket) -> Optional[List[bytes]]:
        sequence = pkt.sequence_number
        expected = self._next_sequence
        self._next_sequence = (sequence + 1) & 0xFFFF

        if expected is not None and sequence != expected:
            lost = (sequence - expected) & 0xFFFF
            self.reset()
            self._broken_timestamp = pkt.timestamp
            self._finish_if_marker(pkt)
            raise DecodeError(f"{lost} RTP packet(s) lost")

        if self._broken_timestamp is not None:
            if pkt.timestamp == self._broken_timestamp:
                self._finish_if_marker(pkt)
                raise DecodeError("discarding rest of incomplete access unit")
            self._broken_timestamp = None

        if self._timestamp is not None and pkt.timestamp != self._timestamp:
            logger.debug("Access unit without marker bit discarded")
            self.reset()

        payload = pkt.payload
        if len(payload) < 2:
            self.reset()
            raise DecodeError("RTP payload is too short")

        typ = payload[0] & 0x1F
        if typ == NALU_TYPE_FU_A:
            start = bool(payload[1] & 0x80)
            end = bool(payload[1] & 0x40)
            if not start and not self._in_fragment:
                self.reset()
                self._broken_timestamp = pkt.timestamp
                self._finish_if_marker(pkt)
                raise DecodeError("FU-A fragment received without its start")
            if start and self._in_fragment:
                logger.debug("Unterminated FU-A discarded")
                self.reset()
            self._in_fragment = not end
        elif self._in_fragment:
            self.reset()
            raise DecodeError("non-fragment packet received inside a FU-A")

        try:
            _, output = H264PayloadDescriptor.parse(payload)
        except ValueError as e:
            self.reset()
            raise DecodeError(str(e)) from e

        self._buffer.extend(output)
        self._timestamp = pkt.timestamp
        if len(self._buffer) > MAX_ACCESS_UNIT_SIZE:
            self.reset()
            raise DecodeError("access unit is too big")

        if not pkt.marker:
            return None

        if self._in_fragment:
            self.reset()
            raise DecodeError("marker bit set inside a FU-A")

        data = bytes(self._buffer)
        self.reset()
        au = split_annexb(data)
        if not au:
            raise DecodeError("access unit is empty")
        return au

    def _finish_if_marker(self, pkt: RtpPacket):
        if pkt.marker:
            self._broken_timestamp = None
