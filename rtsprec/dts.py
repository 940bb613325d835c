#!/usr/bin/env python3
"""
Decode timestamp estimation for H.264 access units

RTP only carries presentation timestamps. A transport stream needs decode
timestamps too, which differ from PTS whenever the encoder reorders frames
(B-frames). The DTSExtractor derives them from the picture order count
signalled in slice headers:

- pic_order_cnt_type 2 (no reordering possible): DTS = PTS
- pic_order_cnt_type 0: each reference frame that is displayed ahead of its
  decode position is given a DTS just below the PTS of the first picture
  still waiting to be decoded, leaving room for the reordered frames that
  follow it
- pic_order_cnt_type 1: not supported

Output is always <= PTS and strictly increasing.
"""

from typing import Optional, List, Set

from .h264 import (
    SPS,
    DecodeError,
    NALU_TYPE_IDR,
    NALU_TYPE_NON_IDR,
    NALU_TYPE_SPS,
    nalu_type,
    nalu_ref_idc,
    slice_pic_order_cnt_lsb,
)


MAX_REORDERED_FRAMES = 16


class DTSEstimationError(Exception):
    """Raised when a decode timestamp cannot be derived for an access unit."""


class DTSExtractor:
    """
    Computes decode timestamps from presentation timestamps.

    The first access unit passed in must contain an IDR; the recorder only
    creates an extractor once it has seen one. Timestamps are in 90kHz ticks.
    """

    def __init__(self):
        self._sps: Optional[SPS] = None
        self._prev_dts: Optional[int] = None

        # POC tracking, reset on every IDR
        self._idr_pts: Optional[int] = None
        self._idr_poc_lsb = 0
        self._prev_poc_lsb = 0
        self._poc_msb = 0
        self._poc_step = 2
        self._lowest_pending = 0
        self._decoded: Set[int] = set()

    @property
    def sps(self) -> Optional[SPS]:
        return self._sps

    def extract(self, au: List[bytes], pts: int) -> int:
        """Return the decode timestamp of an access unit."""
        idr = False
        first_slice = None

        for nalu in au:
            typ = nalu_type(nalu)
            if typ == NALU_TYPE_SPS:
                try:
                    self._sps = SPS.parse(nalu)
                except DecodeError as e:
                    raise DTSEstimationError(f"invalid SPS: {e}") from e
            elif typ == NALU_TYPE_IDR:
                idr = True
                if first_slice is None:
                    first_slice = nalu
            elif typ == NALU_TYPE_NON_IDR and first_slice is None:
                first_slice = nalu

        if self._sps is None:
            raise DTSEstimationError("SPS not received yet")
        if first_slice is None:
            raise DTSEstimationError("access unit contains no slice")

        dts = self._estimate(idr, first_slice, pts)

        if self._prev_dts is not None and dts <= self._prev_dts:
            dts = self._prev_dts + 1
        if dts > pts:
            raise DTSEstimationError(f"DTS ({dts}) is greater than PTS ({pts})")

        self._prev_dts = dts
        return dts

    def _estimate(self, idr: bool, slice_nalu: bytes, pts: int) -> int:
        sps = self._sps

        if sps.pic_order_cnt_type == 2 or not sps.frame_mbs_only:
            return pts
        if sps.pic_order_cnt_type == 1:
            raise DTSEstimationError("pic_order_cnt_type = 1 is not supported")

        try:
            poc_lsb = slice_pic_order_cnt_lsb(slice_nalu, sps)
        except DecodeError as e:
            raise DTSEstimationError(f"invalid slice header: {e}") from e

        if idr:
            self._idr_pts = pts
            self._idr_poc_lsb = poc_lsb
            self._prev_poc_lsb = poc_lsb
            self._poc_msb = 0
            self._poc_step = 2
            self._decoded = set()
            self._lowest_pending = self._poc_step
            return pts

        if self._idr_pts is None:
            raise DTSEstimationError("IDR not received yet")

        poc = self._picture_order_count(poc_lsb, nalu_ref_idc(slice_nalu) != 0)
        if poc <= 0:
            raise DTSEstimationError(f"picture order count {poc} precedes the IDR")

        if self._poc_step == 2 and poc % 2 != 0:
            # Odd POC: the encoder counts frames in steps of 1, so every even
            # slot already passed is decoded and the odd ones become pending
            self._poc_step = 1
            self._decoded.update(range(2, self._lowest_pending, 2))
            self._lowest_pending = 1

        step = self._poc_step
        low = self._lowest_pending
        if poc < low or poc in self._decoded:
            raise DTSEstimationError(f"picture order count {poc} already decoded")

        # Display slots below this picture that are still to be decoded
        pending = (poc - low) // step - sum(1 for d in self._decoded if d < poc)
        if pending > MAX_REORDERED_FRAMES:
            raise DTSEstimationError(f"too many reordered frames ({pending})")

        self._decoded.add(poc)
        while self._lowest_pending in self._decoded:
            self._decoded.remove(self._lowest_pending)
            self._lowest_pending += step

        if pending == 0:
            return pts

        frame_duration = (pts - self._idr_pts) / (poc / step)
        if frame_duration <= 0:
            raise DTSEstimationError("PTS does not advance with picture order count")

        pts_lowest = pts - ((poc - low) / step) * frame_duration
        return int(round(pts_lowest)) - pending

    def _picture_order_count(self, poc_lsb: int, is_reference: bool) -> int:
        """Unwrap pic_order_cnt_lsb into a POC relative to the last IDR (8.2.1.1)."""
        max_lsb = 1 << self._sps.log2_max_pic_order_cnt_lsb
        prev_lsb = self._prev_poc_lsb

        if poc_lsb < prev_lsb and (prev_lsb - poc_lsb) >= max_lsb // 2:
            msb = self._poc_msb + max_lsb
        elif poc_lsb > prev_lsb and (poc_lsb - prev_lsb) > max_lsb // 2:
            msb = self._poc_msb - max_lsb
        else:
            msb = self._poc_msb

        if is_reference:
            self._poc_msb = msb
            self._prev_poc_lsb = poc_lsb

        return msb + poc_lsb - self._idr_poc_lsb
