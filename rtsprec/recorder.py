#!/usr/bin/env python3
"""
Transport Stream Recorder

Records a live H.264 stream to an MPEG-TS file. Every access unit goes
through three stages:

1. filter_access_unit() - drops parameter sets and delimiters, caches the
   latest SPS/PPS, re-inserts them in front of every keyframe
2. DTSExtractor - created on the first keyframe, derives the decode timestamp
3. TSWriter - serializes the access unit

Access units that cannot be filtered or timestamped are dropped; recording
continues with the next one.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, List

from .dts import DTSExtractor, DTSEstimationError
from .h264 import (
    NALU_TYPE_ACCESS_UNIT_DELIMITER,
    NALU_TYPE_IDR,
    NALU_TYPE_NON_IDR,
    NALU_TYPE_PPS,
    NALU_TYPE_SPS,
    contains_idr,
    nalu_type,
)
from .mpegts import CODEC_H264, MuxError, Track, TSWriter

logger = logging.getLogger("rtsprec.recorder")

DROP_NO_PICTURE = "no_picture"
DROP_WAITING_FOR_KEYFRAME = "waiting_for_keyframe"
DROP_TIMESTAMP = "timestamp"


class ParameterSetCache:
    """Latest SPS and PPS seen on the stream."""

    def __init__(self, sps: Optional[bytes] = None, pps: Optional[bytes] = None):
        self.sps = sps or None
        self.pps = pps or None

    @property
    def complete(self) -> bool:
        return self.sps is not None and self.pps is not None


def filter_access_unit(au: List[bytes], cache: ParameterSetCache) -> Optional[List[bytes]]:
    """
    Filter an access unit for muxing.

    Updates `cache` with any SPS/PPS found in `au` (this happens even when
    the access unit is then dropped). Returns None when the access unit
    has no picture to record, or when it holds a keyframe but no complete
    parameter set pair is known yet. Otherwise returns the remaining NAL
    units, prefixed with the cached SPS and PPS if a keyframe is present.
    """
    filtered = []
    idr_present = False
    non_idr_present = False

    for nalu in au:
        if not nalu:
            continue
        typ = nalu_type(nalu)
        if typ == NALU_TYPE_SPS:
            cache.sps = nalu
            continue
        if typ == NALU_TYPE_PPS:
            cache.pps = nalu
            continue
        if typ == NALU_TYPE_ACCESS_UNIT_DELIMITER:
            continue
        if typ == NALU_TYPE_IDR:
            idr_present = True
        elif typ == NALU_TYPE_NON_IDR:
            non_idr_present = True
        filtered.append(nalu)

    if not filtered or not (idr_present or non_idr_present):
        return None

    if idr_present:
        if not cache.complete:
            logger.warning("Keyframe dropped: SPS/PPS not received yet")
            return None
        filtered = [cache.sps, cache.pps] + filtered

    return filtered


@dataclass
class RecorderStats:
    """Counters for one recording"""
    access_units_received: int = 0
    access_units_written: int = 0
    bytes_written: int = 0
    dropped: Counter = field(default_factory=Counter)
    start_time: float = field(default_factory=time.time)

    @property
    def access_units_dropped(self) -> int:
        return sum(self.dropped.values())

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class Recorder:
    """
    Records H.264 access units to a transport stream file.

    Usage:
        recorder = Recorder("mystream.ts", sps, pps)
        recorder.initialize()

        recorder.write_h264(au, pts)

        recorder.close()

    write_h264() and close() may be called from different threads; writes
    are serialized by a recorder-private lock.
    """

    def __init__(self, path: str, sps: Optional[bytes] = None, pps: Optional[bytes] = None):
        self.path = path
        self.parameter_sets = ParameterSetCache(sps, pps)
        self._file: Optional[BinaryIO] = None
        self._writer: Optional[TSWriter] = None
        self._dts_extractor: Optional[DTSExtractor] = None
        self._lock = threading.Lock()
        self._stats = RecorderStats()

    @property
    def stats(self) -> RecorderStats:
        return self._stats

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    @property
    def timing_initialized(self) -> bool:
        """True once a keyframe has anchored decode timestamp estimation."""
        return self._dts_extractor is not None

    def initialize(self):
        """Create the output file and write the stream header.

        Raises OSError if the file cannot be created.
        """
        with self._lock:
            f = open(self.path, 'wb')
            try:
                writer = TSWriter(f, Track(codec=CODEC_H264))
                writer.initialize()
            except Exception:
                f.close()
                raise
            self._file = f
            self._writer = writer
            self._stats = RecorderStats()
        logger.info(f"Recording to {self.path}")

    def write_h264(self, au: List[bytes], pts: int) -> bool:
        """
        Record one access unit with its presentation timestamp (90kHz).

        Returns True if the access unit was written, False if it was
        dropped. Raises MuxError if the recorder is not open or the
        access unit is malformed; the file stays open in that case.
        """
        with self._lock:
            if self._writer is None:
                raise MuxError("recorder is not open")

            self._stats.access_units_received += 1

            filtered = filter_access_unit(au, self.parameter_sets)
            if filtered is None:
                return self._drop(DROP_NO_PICTURE)

            idr_present = contains_idr(filtered)

            if self._dts_extractor is None:
                if not idr_present:
                    return self._drop(DROP_WAITING_FOR_KEYFRAME)
                self._dts_extractor = DTSExtractor()

            try:
                dts = self._dts_extractor.extract(filtered, pts)
            except DTSEstimationError as e:
                logger.debug(f"Unable to extract DTS: {e}")
                return self._drop(DROP_TIMESTAMP)

            if idr_present and self._stats.access_units_written == 0:
                sps = self._dts_extractor.sps
                if sps is not None:
                    logger.info(f"First keyframe recorded ({sps.width}x{sps.height})")

            written = self._writer.write_h264(pts, dts, filtered)
            self._stats.access_units_written += 1
            self._stats.bytes_written += written
            return True

    def _drop(self, reason: str) -> bool:
        self._stats.dropped[reason] += 1
        return False

    def close(self):
        """Flush and close the output file. Safe to call more than once."""
        with self._lock:
            f = self._file
            self._file = None
            self._writer = None
            self._dts_extractor = None

        if f is None:
            return

        try:
            f.flush()
        finally:
            f.close()
        logger.info(
            f"Recording closed: {self.path} "
            f"({self._stats.access_units_written} access units written, "
            f"{self._stats.access_units_dropped} dropped)"
        )
