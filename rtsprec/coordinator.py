#!/usr/bin/env python3
"""
Publish Session Coordinator

The ServerHandler that ties the RTSP server to the recorder. It accepts at
most one publisher at a time; while one is active:

- its packets are forwarded to a live ServerStream that viewers can PLAY
- its H.264 packets are depacketized and recorded to a transport stream

A new ANNOUNCE replaces the current publisher: the old stream, session and
recording are closed before the new ones are created.

Usage:
    coordinator = PublishCoordinator(config)
    server = RTSPServer(coordinator, config)
    coordinator.bind(server)
    server.start()
"""

import logging
import threading
from typing import Callable, Optional, Tuple

from aiortc.rtp import RtpPacket

from .config import ServerConfig
from .h264 import DecodeError, H264Depacketizer
from .mpegts import MuxError
from .recorder import Recorder
from .rtsp import (
    Request,
    Response,
    RTSPServer,
    ServerConn,
    ServerHandler,
    ServerSession,
    ServerStream,
    SessionState,
    StatusCode,
    StreamError,
)
from .sdp import Format, H264Format, Media, SessionDescription

logger = logging.getLogger("rtsprec.coordinator")


class PublishCoordinator(ServerHandler):
    """Single-publisher handler: live republishing plus recording."""

    def __init__(self, config: Optional[ServerConfig] = None,
                 recorder_factory: Callable[..., Recorder] = Recorder):
        self.config = config or ServerConfig()
        self.server: Optional[RTSPServer] = None
        self._recorder_factory = recorder_factory

        # Guards every field below
        self._lock = threading.Lock()
        self._publisher: Optional[ServerSession] = None
        self._media: Optional[Media] = None
        self._depacketizer: Optional[H264Depacketizer] = None
        self._stream: Optional[ServerStream] = None
        self._recorder: Optional[Recorder] = None

    def bind(self, server: RTSPServer):
        self.server = server

    @property
    def is_publishing(self) -> bool:
        with self._lock:
            return self._publisher is not None

    @property
    def publisher(self) -> Optional[ServerSession]:
        with self._lock:
            return self._publisher

    @property
    def stream(self) -> Optional[ServerStream]:
        with self._lock:
            return self._stream

    @property
    def recorder(self) -> Optional[Recorder]:
        with self._lock:
            return self._recorder

    def _path_allowed(self, request: Request) -> bool:
        return not self.config.stream_path or request.path == self.config.stream_path

    # Connection / session lifecycle

    def on_conn_open(self, conn: ServerConn):
        logger.info(f"Connection opened from {conn.host}:{conn.port}")

    def on_conn_close(self, conn: ServerConn, error: Optional[Exception]):
        logger.info(f"Connection closed from {conn.host}:{conn.port}: {error}")

    def on_session_open(self, session: ServerSession):
        logger.info(f"Session {session.id} opened")

    def on_session_close(self, session: ServerSession, error: Optional[Exception]):
        logger.info(f"Session {session.id} closed: {error}")

        with self._lock:
            if session is not self._publisher:
                return
            recorder = self._recorder
            self._clear_publisher()

        # Closing flushes the file; it does not need the lock
        if recorder is not None:
            recorder.close()

    def _clear_publisher(self):
        """Close the live stream and unbind the publisher. Caller holds the lock."""
        if self._stream is not None:
            self._stream.close()
        self._publisher = None
        self._media = None
        self._depacketizer = None
        self._stream = None
        self._recorder = None

    # Negotiation

    def on_describe(self, conn: ServerConn, request: Request) -> Tuple[Response, Optional[ServerStream]]:
        logger.info(f"Describe request for '{request.path}'")

        if not self._path_allowed(request):
            return Response(StatusCode.NOT_FOUND), None

        with self._lock:
            if self._stream is None:
                return Response(StatusCode.NOT_FOUND), None
            return Response(StatusCode.OK), self._stream

    def on_announce(self, session: ServerSession, request: Request,
                    description: SessionDescription) -> Response:
        logger.info(f"Announce request from session {session.id} for '{request.path}'")

        if not self._path_allowed(request):
            return Response(StatusCode.NOT_FOUND)

        media, forma = description.find_format(H264Format)
        if media is None:
            logger.warning("Announce rejected: H264 media not found")
            return Response(StatusCode.BAD_REQUEST)
        if forma.packetization_mode not in (0, 1):
            logger.warning(f"Announce rejected: packetization-mode {forma.packetization_mode} not supported")
            return Response(StatusCode.BAD_REQUEST)

        with self._lock:
            if self._publisher is not None:
                logger.info(f"Publisher {self._publisher.id} replaced by {session.id}")
                old_publisher = self._publisher
                old_recorder = self._recorder
                self._clear_publisher()
                if old_recorder is not None:
                    old_recorder.close()
                if old_publisher is not session:
                    old_publisher.close()

            recorder = self._recorder_factory(self.config.record_path, forma.sps, forma.pps)
            try:
                recorder.initialize()
            except OSError as e:
                logger.error(f"Unable to create recording '{self.config.record_path}': {e}")
                recorder.close()
                return Response(StatusCode.BAD_REQUEST)

            stream = ServerStream(self.server, description)
            stream.initialize()

            self._publisher = session
            self._media = media
            self._depacketizer = H264Depacketizer()
            self._recorder = recorder
            self._stream = stream

        return Response(StatusCode.OK)

    def on_setup(self, session: ServerSession, request: Request) -> Tuple[Response, Optional[ServerStream]]:
        logger.info(f"Setup request from session {session.id}")

        with self._lock:
            if session is self._publisher:
                if session.state == SessionState.INITIAL:
                    return Response(StatusCode.NOT_IMPLEMENTED), None
                return Response(StatusCode.OK), None

            if session.state == SessionState.PRE_RECORD:
                return Response(StatusCode.OK), None

            if self._stream is None or not self._path_allowed(request):
                return Response(StatusCode.NOT_FOUND), None
            return Response(StatusCode.OK), self._stream

    def on_play(self, session: ServerSession, request: Request) -> Response:
        logger.info(f"Play request from session {session.id}")
        return Response(StatusCode.OK)

    def on_record(self, session: ServerSession, request: Request) -> Response:
        logger.info(f"Record request from session {session.id}")

        def on_packet(media: Media, forma: Format, pkt: RtpPacket):
            self._on_packet(session, media, forma, pkt)

        session.on_packet_rtp_any(on_packet)
        return Response(StatusCode.OK)

    # Packet path

    def _on_packet(self, session: ServerSession, media: Media, forma: Format, pkt: RtpPacket):
        with self._lock:
            if session is not self._publisher:
                return
            stream = self._stream
            recorder = self._recorder
            depacketizer = self._depacketizer
            h264_media = self._media

        try:
            stream.write_packet_rtp(media, pkt)
        except (StreamError, OSError) as e:
            logger.warning(f"Unable to forward packet: {e}")

        if media is not h264_media:
            return

        pts = session.packet_pts(media, pkt)
        if pts is None:
            depacketizer.skip(pkt)
            return

        try:
            au = depacketizer.decode(pkt)
        except DecodeError as e:
            logger.debug(f"Unable to decode packet: {e}")
            return
        if au is None:
            return

        try:
            recorder.write_h264(au, pts)
        except MuxError as e:
            logger.warning(f"Access unit not recorded: {e}")

    def close(self):
        """Close the live stream and the recording, if any."""
        with self._lock:
            recorder = self._recorder
            publisher = self._publisher
            self._clear_publisher()
        if recorder is not None:
            recorder.close()
        if publisher is not None:
            publisher.close()
