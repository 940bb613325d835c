"""
Tests for Recorder and access unit filtering
"""

import os
from fractions import Fraction

import pytest

from rtsprec.h264 import split_annexb
from rtsprec.mpegts import MuxError
from rtsprec.recorder import (
    DROP_NO_PICTURE,
    DROP_TIMESTAMP,
    DROP_WAITING_FOR_KEYFRAME,
    ParameterSetCache,
    Recorder,
    RecorderStats,
    filter_access_unit,
)

from samples import SEI, extract_pes, make_slice, make_sps, pes_payload, pes_timestamps


class TestFilterAccessUnit:
    """Tests for filter_access_unit"""

    def test_keyframe_gets_parameter_sets(self, sps, pps):
        cache = ParameterSetCache(sps, pps)
        idr = make_slice(idr=True)
        assert filter_access_unit([idr], cache) == [sps, pps, idr]

    def test_inline_parameter_sets_update_cache(self, sps, pps):
        cache = ParameterSetCache()
        idr = make_slice(idr=True)
        assert filter_access_unit([sps, pps, idr], cache) == [sps, pps, idr]
        assert cache.sps == sps
        assert cache.pps == pps

    def test_newer_parameter_sets_replace_cached(self, pps):
        old_sps = make_sps(width=640, height=480)
        new_sps = make_sps(width=1280, height=720)
        cache = ParameterSetCache(old_sps, pps)
        idr = make_slice(idr=True)
        assert filter_access_unit([new_sps, idr], cache) == [new_sps, pps, idr]

    def test_delimiter_removed(self):
        cache = ParameterSetCache()
        nalu = make_slice(poc_lsb=2, frame_num=1)
        assert filter_access_unit([b'\x09\xf0', nalu], cache) == [nalu]

    def test_other_nal_units_kept(self):
        cache = ParameterSetCache()
        nalu = make_slice(poc_lsb=2, frame_num=1)
        assert filter_access_unit([SEI, nalu], cache) == [SEI, nalu]

    def test_no_picture(self, sps, pps):
        cache = ParameterSetCache()
        assert filter_access_unit([sps, pps], cache) is None
        assert cache.complete
        assert filter_access_unit([SEI], cache) is None
        assert filter_access_unit([], cache) is None

    def test_keyframe_without_parameter_sets(self):
        cache = ParameterSetCache()
        assert filter_access_unit([make_slice(idr=True)], cache) is None

    def test_empty_nal_units_skipped(self):
        cache = ParameterSetCache()
        nalu = make_slice(poc_lsb=2, frame_num=1)
        assert filter_access_unit([b'', nalu], cache) == [nalu]


class TestRecorderStats:
    def test_dropped_total(self):
        stats = RecorderStats()
        stats.dropped["a"] += 2
        stats.dropped["b"] += 1
        assert stats.access_units_dropped == 3

    def test_elapsed_time(self):
        stats = RecorderStats()
        assert stats.elapsed_time >= 0


class TestRecorderLifecycle:
    """Tests for Recorder open/close"""

    def test_initialize_creates_file(self, record_path):
        recorder = Recorder(record_path)
        recorder.initialize()
        try:
            assert recorder.is_open
            assert os.path.exists(record_path)
        finally:
            recorder.close()
        assert not recorder.is_open
        # PAT + PMT
        assert os.path.getsize(record_path) == 2 * 188

    def test_initialize_truncates(self, record_path):
        with open(record_path, 'wb') as f:
            f.write(b'x' * 1000)
        recorder = Recorder(record_path)
        recorder.initialize()
        recorder.close()
        assert os.path.getsize(record_path) == 2 * 188

    def test_initialize_unwritable_path(self, tmp_path):
        recorder = Recorder(str(tmp_path / "missing" / "out.ts"))
        with pytest.raises(OSError):
            recorder.initialize()
        assert not recorder.is_open

    def test_close_is_idempotent(self, record_path):
        recorder = Recorder(record_path)
        recorder.initialize()
        recorder.close()
        recorder.close()

    def test_write_after_close(self, record_path, sps, pps):
        recorder = Recorder(record_path, sps, pps)
        recorder.initialize()
        recorder.close()
        with pytest.raises(MuxError):
            recorder.write_h264([make_slice(idr=True)], 0)


class TestRecorderWrite:
    """Tests for Recorder.write_h264"""

    @pytest.fixture
    def recorder(self, record_path, sps, pps):
        recorder = Recorder(record_path, sps, pps)
        recorder.initialize()
        yield recorder
        recorder.close()

    def test_waits_for_keyframe(self, recorder):
        assert recorder.write_h264([make_slice(poc_lsb=2, frame_num=1)], 3000) is False
        assert recorder.stats.dropped[DROP_WAITING_FOR_KEYFRAME] == 1
        assert not recorder.timing_initialized

    def test_keyframe_starts_recording(self, recorder):
        assert recorder.write_h264([make_slice(idr=True)], 0) is True
        assert recorder.timing_initialized
        assert recorder.stats.access_units_written == 1
        assert recorder.stats.bytes_written > 0

    def test_parameter_sets_only(self, recorder, sps, pps):
        assert recorder.write_h264([sps, pps], 0) is False
        assert recorder.stats.dropped[DROP_NO_PICTURE] == 1

    def test_keyframe_without_parameter_sets_dropped(self, record_path):
        recorder = Recorder(record_path)
        recorder.initialize()
        try:
            assert recorder.write_h264([make_slice(idr=True)], 0) is False
            assert not recorder.timing_initialized
        finally:
            recorder.close()

    def test_timestamp_error_dropped(self, recorder):
        recorder.write_h264([make_slice(idr=True)], 0)
        recorder.write_h264([make_slice(poc_lsb=2, frame_num=1)], 3000)
        # Same picture order count twice
        assert recorder.write_h264([make_slice(poc_lsb=2, frame_num=2)], 6000) is False
        assert recorder.stats.dropped[DROP_TIMESTAMP] == 1
        # Recording continues
        assert recorder.write_h264([make_slice(poc_lsb=4, frame_num=2)], 6000) is True

    def test_recorded_stream(self, recorder, record_path, sps, pps):
        idr = make_slice(idr=True)
        recorder.write_h264([idr], 0)
        recorder.write_h264([make_slice(poc_lsb=6, frame_num=1)], 9000)
        recorder.write_h264([make_slice(poc_lsb=2, frame_num=2, reference=False)], 3000)
        recorder.write_h264([make_slice(poc_lsb=4, frame_num=2, reference=False)], 6000)
        recorder.close()

        with open(record_path, 'rb') as f:
            data = f.read()
        pes = extract_pes(data)
        assert len(pes) == 4
        assert [pes_timestamps(p) for p in pes] == [
            (0, None), (9000, 2998), (3000, None), (6000, None)]
        assert split_annexb(pes_payload(pes[0])) == [b'\x09\xf0', sps, pps, idr]

    def test_keyframe_after_parameter_set_change(self, recorder, pps):
        recorder.write_h264([make_slice(idr=True)], 0)
        new_sps = make_sps(width=640, height=480)
        assert recorder.write_h264([new_sps, pps, make_slice(idr=True)], 3000) is True
        assert recorder.parameter_sets.sps == new_sps


class TestRecorderWithEncoder:
    """Records real encoder output and reads it back with PyAV"""

    def test_encoded_stream_is_readable(self, record_path):
        av = pytest.importorskip("av")
        try:
            encoder = av.CodecContext.create('libx264', 'w')
        except Exception:
            pytest.skip("libx264 encoder not available")

        encoder.width = 160
        encoder.height = 120
        encoder.pix_fmt = 'yuv420p'
        encoder.time_base = Fraction(1, 90000)
        encoder.framerate = Fraction(30, 1)
        encoder.options = {
            'preset': 'ultrafast',
            'x264-params': 'keyint=15:min-keyint=15:scenecut=0:bframes=2:b-adapt=0:b-pyramid=none',
        }
        encoder.open()

        recorder = Recorder(record_path)
        recorder.initialize()

        written = 0
        packets = []
        for i in range(30):
            frame = av.VideoFrame(160, 120, 'yuv420p')
            for plane in frame.planes:
                plane.update(bytes([(i * 8) % 256]) * plane.buffer_size)
            frame.pts = i * 3000
            packets.extend(encoder.encode(frame))
        packets.extend(encoder.encode(None))

        for packet in packets:
            if recorder.write_h264(split_annexb(bytes(packet)), packet.pts):
                written += 1
        recorder.close()

        assert written == len(packets)

        with open(record_path, 'rb') as f:
            timestamps = [pes_timestamps(p) for p in extract_pes(f.read())]
        decode_order = [dts if dts is not None else pts for pts, dts in timestamps]
        assert all(a < b for a, b in zip(decode_order, decode_order[1:]))
        assert all(dts is None or dts < pts for pts, dts in timestamps)

        with av.open(record_path) as container:
            stream = container.streams.video[0]
            assert stream.codec_context.name == 'h264'
            demuxed = [p for p in container.demux(stream) if p.size]

        assert len(demuxed) == written
        assert sorted(p.pts for p in demuxed) == sorted(p.pts for p in packets)
        assert demuxed[0].is_keyframe
