"""
rtsprec - RTSP Ingest and Recording Server

An RTSP server that:
- Accepts a single H.264 publisher (ANNOUNCE / RECORD, TCP or UDP)
- Republishes the live stream to any number of RTSP viewers
- Records the stream to an MPEG-TS file with correct PTS/DTS
- Replaces the active publisher when a new one announces

Usage:
    from rtsprec import PublishCoordinator, RTSPServer, ServerConfig

    config = ServerConfig(record_path="mystream.ts")
    coordinator = PublishCoordinator(config)
    server = RTSPServer(coordinator, config)
    coordinator.bind(server)
    server.start()

    ...

    server.stop()
    coordinator.close()
"""

__version__ = "1.0.0"

from .config import ServerConfig
from .coordinator import PublishCoordinator
from .rtsp import RTSPServer, ServerHandler, ServerSession, ServerStream, Response, StatusCode
from .recorder import Recorder, RecorderStats
from .h264 import H264Depacketizer, DecodeError
from .dts import DTSExtractor, DTSEstimationError
from .mpegts import TSWriter, Track, MuxError
from .sdp import SessionDescription, Media, Format, H264Format, SDPError

__all__ = [
    # Main classes
    "PublishCoordinator",
    "ServerConfig",
    # RTSP
    "RTSPServer",
    "ServerHandler",
    "ServerSession",
    "ServerStream",
    "Response",
    "StatusCode",
    # Recording
    "Recorder",
    "RecorderStats",
    "H264Depacketizer",
    "DTSExtractor",
    "TSWriter",
    "Track",
    # SDP
    "SessionDescription",
    "Media",
    "Format",
    "H264Format",
    # Errors
    "DecodeError",
    "DTSEstimationError",
    "MuxError",
    "SDPError",
]
