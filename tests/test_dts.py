"""
Tests for DTSExtractor
"""

import pytest

from rtsprec.dts import DTSExtractor, DTSEstimationError

from samples import make_pps, make_slice, make_sps


def keyframe(sps=None, poc_lsb=0):
    return [sps or make_sps(), make_pps(), make_slice(idr=True, poc_lsb=poc_lsb)]


class TestDTSExtractorPocType2:
    """Streams without reordering"""

    def test_dts_equals_pts(self):
        ex = DTSExtractor()
        sps = make_sps(poc_type=2)
        assert ex.extract(keyframe(sps), 0) == 0
        assert ex.extract([make_slice(poc_lsb=0, frame_num=1)], 3000) == 3000
        assert ex.extract([make_slice(poc_lsb=0, frame_num=2)], 6000) == 6000

    def test_non_increasing_pts_rejected(self):
        ex = DTSExtractor()
        sps = make_sps(poc_type=2)
        ex.extract(keyframe(sps), 3000)
        with pytest.raises(DTSEstimationError):
            ex.extract([make_slice(frame_num=1)], 3000)

    def test_failed_extract_keeps_previous_dts(self):
        ex = DTSExtractor()
        sps = make_sps(poc_type=2)
        ex.extract(keyframe(sps), 3000)
        with pytest.raises(DTSEstimationError):
            ex.extract([make_slice(frame_num=1)], 2000)
        assert ex.extract([make_slice(frame_num=2)], 6000) == 6000


class TestDTSExtractorPocType0:
    """Streams with B-frames"""

    def test_ip_only(self):
        ex = DTSExtractor()
        assert ex.extract(keyframe(), 0) == 0
        assert ex.extract([make_slice(poc_lsb=2, frame_num=1)], 3000) == 3000
        assert ex.extract([make_slice(poc_lsb=4, frame_num=2)], 6000) == 6000

    def test_ibbp(self):
        """I0 P6 B2 B4 P12 in decode order"""
        ex = DTSExtractor()
        dts = [
            ex.extract(keyframe(), 0),
            ex.extract([make_slice(poc_lsb=6, frame_num=1)], 9000),
            ex.extract([make_slice(poc_lsb=2, frame_num=2, reference=False)], 3000),
            ex.extract([make_slice(poc_lsb=4, frame_num=2, reference=False)], 6000),
            ex.extract([make_slice(poc_lsb=12, frame_num=2)], 18000),
        ]
        assert dts == [0, 2998, 3000, 6000, 11998]

    def test_dts_never_exceeds_pts_and_increases(self):
        ex = DTSExtractor()
        pattern = [(0, 0, True), (6, 9000, True), (2, 3000, False), (4, 6000, False),
                   (12, 18000, True), (8, 12000, False), (10, 15000, False)]
        prev = None
        for i, (poc, pts, ref) in enumerate(pattern):
            if i == 0:
                dts = ex.extract(keyframe(), pts)
            else:
                dts = ex.extract([make_slice(poc_lsb=poc, frame_num=i, reference=ref)], pts)
            assert dts <= pts
            if prev is not None:
                assert dts > prev
            prev = dts

    def test_odd_poc_step(self):
        ex = DTSExtractor()
        assert ex.extract(keyframe(), 0) == 0
        assert ex.extract([make_slice(poc_lsb=1, frame_num=1)], 3000) == 3000
        assert ex.extract([make_slice(poc_lsb=2, frame_num=2)], 6000) == 6000

    def test_poc_lsb_wraparound(self):
        ex = DTSExtractor()
        sps = make_sps(log2_max_poc_lsb=4)  # lsb wraps at 16
        assert ex.extract(keyframe(sps), 0) == 0
        pts = 0
        for frame in range(1, 12):
            pts += 3000
            lsb = (frame * 2) % 16
            assert ex.extract([make_slice(poc_lsb=lsb, frame_num=frame, log2_max_poc_lsb=4)], pts) == pts

    def test_new_idr_resets(self):
        ex = DTSExtractor()
        ex.extract(keyframe(), 0)
        ex.extract([make_slice(poc_lsb=2, frame_num=1)], 3000)
        assert ex.extract([make_slice(idr=True, poc_lsb=0)], 6000) == 6000
        assert ex.extract([make_slice(poc_lsb=2, frame_num=1)], 9000) == 9000

    def test_duplicate_poc_rejected(self):
        ex = DTSExtractor()
        ex.extract(keyframe(), 0)
        ex.extract([make_slice(poc_lsb=2, frame_num=1)], 3000)
        with pytest.raises(DTSEstimationError):
            ex.extract([make_slice(poc_lsb=2, frame_num=2)], 6000)

    def test_too_many_reordered_frames(self):
        ex = DTSExtractor()
        ex.extract(keyframe(), 0)
        with pytest.raises(DTSEstimationError):
            ex.extract([make_slice(poc_lsb=40, frame_num=1)], 60000)


class TestDTSExtractorErrors:
    """Error conditions"""

    def test_sps_not_received(self):
        ex = DTSExtractor()
        with pytest.raises(DTSEstimationError):
            ex.extract([make_slice(idr=True)], 0)

    def test_no_slice(self):
        ex = DTSExtractor()
        with pytest.raises(DTSEstimationError):
            ex.extract([make_sps(), make_pps()], 0)

    def test_non_idr_before_idr(self):
        ex = DTSExtractor()
        with pytest.raises(DTSEstimationError):
            ex.extract([make_sps(), make_slice(poc_lsb=2, frame_num=1)], 3000)

    def test_poc_type_1_unsupported(self):
        ex = DTSExtractor()
        with pytest.raises(DTSEstimationError):
            ex.extract(keyframe(make_sps(poc_type=1)), 0)

    def test_sps_exposed(self):
        ex = DTSExtractor()
        ex.extract(keyframe(make_sps(width=640, height=480)), 0)
        assert ex.sps.width == 640
        assert ex.sps.height == 480
