"""
Tests for the MPEG-TS writer
"""

from io import BytesIO

import pytest

from rtsprec.h264 import split_annexb
from rtsprec.mpegts import (
    PID_PAT,
    PID_PMT,
    PID_VIDEO,
    STREAM_TYPE_H264,
    MuxError,
    Track,
    TSWriter,
    build_pes_packet,
    crc32_mpeg2,
    decode_timestamp,
    encode_timestamp,
)

from samples import extract_pes, make_pps, make_slice, make_sps, parse_ts, pes_payload, pes_timestamps


@pytest.fixture
def writer():
    out = BytesIO()
    w = TSWriter(out, Track())
    w.initialize()
    return w, out


def keyframe():
    return [make_sps(), make_pps(), make_slice(idr=True)]


class TestHelpers:
    """Tests for CRC and timestamp encoding"""

    def test_crc32_mpeg2_check_value(self):
        assert crc32_mpeg2(b'123456789') == 0x0376E6E7

    def test_timestamp_encoding_markers(self):
        data = encode_timestamp(0, 0x02)
        assert data == bytes([0x21, 0x00, 0x01, 0x00, 0x01])

    def test_timestamp_33_bits(self):
        ts = (1 << 33) - 1
        assert decode_timestamp(encode_timestamp(ts, 0x02)) == ts

    def test_timestamp_wraps(self):
        assert decode_timestamp(encode_timestamp((1 << 33) + 5, 0x02)) == 5

    def test_pes_without_dts(self):
        pes = build_pes_packet(0xE0, b'abc', 9000, 9000)
        assert pes[:4] == b'\x00\x00\x01\xe0'
        assert pes[7] == 0x80
        assert pes_timestamps(pes) == (9000, None)
        assert pes_payload(pes) == b'abc'

    def test_pes_with_dts(self):
        pes = build_pes_packet(0xE0, b'abc', 9000, 6000)
        assert pes[7] == 0xC0
        assert pes_timestamps(pes) == (9000, 6000)


class TestTrack:
    def test_h264_stream_type(self):
        assert Track().stream_type == STREAM_TYPE_H264

    def test_unsupported_codec(self):
        with pytest.raises(MuxError):
            TSWriter(BytesIO(), Track(codec="mpeg2")).initialize()


class TestTSWriterPSI:
    """Tests for PAT / PMT output"""

    def test_initialize_writes_pat_and_pmt(self, writer):
        _, out = writer
        packets = parse_ts(out.getvalue())
        assert [p[0] for p in packets] == [PID_PAT, PID_PMT]
        assert all(p[1] for p in packets)

    def test_pat_points_to_pmt(self, writer):
        _, out = writer
        payload = parse_ts(out.getvalue())[0][4]
        section = payload[1:]  # skip pointer field
        assert section[0] == 0x00
        program_map_pid = ((section[10] & 0x1F) << 8) | section[11]
        assert program_map_pid == PID_PMT

    def test_pmt_declares_h264(self, writer):
        _, out = writer
        payload = parse_ts(out.getvalue())[1][4]
        section = payload[1:]
        assert section[0] == 0x02
        pcr_pid = ((section[8] & 0x1F) << 8) | section[9]
        assert pcr_pid == PID_VIDEO
        assert section[12] == STREAM_TYPE_H264
        assert ((section[13] & 0x1F) << 8) | section[14] == PID_VIDEO

    def test_section_crc_valid(self, writer):
        _, out = writer
        for packet in parse_ts(out.getvalue()):
            section = packet[4][1:]
            length = ((section[1] & 0x0F) << 8) | section[2]
            # CRC over the whole section including its CRC is zero
            assert crc32_mpeg2(section[:3 + length]) == 0

    def test_psi_repeated_before_keyframes(self, writer):
        w, out = writer
        w.write_h264(0, 0, keyframe())
        w.write_h264(3000, 3000, [make_slice(poc_lsb=2, frame_num=1)])
        w.write_h264(6000, 6000, keyframe())
        pids = [p[0] for p in parse_ts(out.getvalue())]
        assert pids.count(PID_PAT) == 3
        assert pids.count(PID_PMT) == 3


class TestTSWriterVideo:
    """Tests for access unit output"""

    def test_output_is_packet_aligned(self, writer):
        w, out = writer
        written = w.write_h264(0, 0, keyframe())
        assert written % 188 == 0
        assert len(out.getvalue()) % 188 == 0

    def test_access_unit_payload(self, writer):
        w, out = writer
        au = keyframe()
        w.write_h264(0, 0, au)
        pes = extract_pes(out.getvalue())
        assert len(pes) == 1
        nal_units = split_annexb(pes_payload(pes[0]))
        assert nal_units[0] == b'\x09\xf0'
        assert nal_units[1:] == au

    def test_existing_delimiter_not_duplicated(self, writer):
        w, out = writer
        au = [b'\x09\x10', make_slice(poc_lsb=2, frame_num=1)]
        w.write_h264(0, 0, au)
        nal_units = split_annexb(pes_payload(extract_pes(out.getvalue())[0]))
        assert nal_units == au

    def test_timestamps(self, writer):
        w, out = writer
        w.write_h264(0, 0, keyframe())
        w.write_h264(9000, 2998, [make_slice(poc_lsb=6, frame_num=1)])
        pes = extract_pes(out.getvalue())
        assert pes_timestamps(pes[0]) == (0, None)
        assert pes_timestamps(pes[1]) == (9000, 2998)

    def test_large_access_unit_spans_packets(self, writer):
        w, out = writer
        au = [make_sps(), make_pps(), make_slice(idr=True, padding=5000)]
        w.write_h264(0, 0, au)
        pes = extract_pes(out.getvalue())
        assert split_annexb(pes_payload(pes[0]))[1:] == au

    def test_pcr_and_random_access_on_keyframe(self, writer):
        w, out = writer
        w.write_h264(90000, 90000, keyframe())
        video = [p for p in parse_ts(out.getvalue()) if p[0] == PID_VIDEO]
        adaptation = video[0][3]
        assert adaptation[0] & 0x10  # PCR flag
        assert adaptation[0] & 0x40  # random access
        pcr_base = (adaptation[1] << 25) | (adaptation[2] << 17) | (adaptation[3] << 9) \
            | (adaptation[4] << 1) | (adaptation[5] >> 7)
        assert pcr_base == 90000

    def test_no_random_access_on_non_keyframe(self, writer):
        w, out = writer
        w.write_h264(3000, 3000, [make_slice(poc_lsb=2, frame_num=1)])
        video = [p for p in parse_ts(out.getvalue()) if p[0] == PID_VIDEO]
        assert not video[0][3][0] & 0x40

    def test_continuity_counters(self, writer):
        w, out = writer
        for i in range(20):
            w.write_h264(i * 3000, i * 3000, [make_slice(poc_lsb=2 * i, frame_num=i, padding=400)])
        counters = [p[2] for p in parse_ts(out.getvalue()) if p[0] == PID_VIDEO]
        assert len(counters) > 16
        for prev, cur in zip(counters, counters[1:]):
            assert cur == (prev + 1) & 0x0F


class TestTSWriterErrors:
    """Tests for rejected input"""

    def test_not_initialized(self):
        w = TSWriter(BytesIO(), Track())
        with pytest.raises(MuxError):
            w.write_h264(0, 0, keyframe())

    def test_empty_access_unit(self, writer):
        w, _ = writer
        with pytest.raises(MuxError):
            w.write_h264(0, 0, [])

    def test_empty_nal_unit(self, writer):
        w, _ = writer
        with pytest.raises(MuxError):
            w.write_h264(0, 0, [make_slice(idr=True), b''])

    def test_dts_after_pts(self, writer):
        w, _ = writer
        with pytest.raises(MuxError):
            w.write_h264(3000, 6000, keyframe())

    def test_negative_timestamp(self, writer):
        w, _ = writer
        with pytest.raises(MuxError):
            w.write_h264(-1, -1, keyframe())
