#!/usr/bin/env python3
"""
Python Native RTSP Server

A lightweight RTSP server that accepts publishers (ANNOUNCE / RECORD) and
viewers (DESCRIBE / PLAY). Application behaviour is supplied by a
ServerHandler; the server only deals with the protocol:

- Request / response framing with Content-Length bodies
- Sessions and their state (INITIAL, PRE_PLAY, PLAY, PRE_RECORD, RECORD)
- RTP/RTCP over TCP (interleaved) and over UDP unicast
- ServerStream: fans out RTP packets to every playing session

The asyncio event loop runs in a background thread. Handler callbacks are
invoked from that thread.
"""

import asyncio
import logging
import re
import string
import struct
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from random import choices
from typing import Callable, Dict, Optional, Set, Tuple
from urllib.parse import urlparse

from aiortc.rtp import RtpPacket

from .config import ServerConfig
from .sdp import Format, Media, SDPError, SessionDescription

logger = logging.getLogger("rtsprec.rtsp")

SUPPORTED_METHODS = "OPTIONS, DESCRIBE, ANNOUNCE, SETUP, PLAY, RECORD, TEARDOWN, GET_PARAMETER"
SESSION_TIMEOUT = 60
MAX_BODY_SIZE = 64 * 1024
MAX_WRITE_BUFFER = 4 * 1024 * 1024  # per connection, before packets to it are dropped
RTP_CLOCK_HZ = 90000


class StatusCode(IntEnum):
    OK = 200
    BAD_REQUEST = 400
    NOT_FOUND = 404
    SESSION_NOT_FOUND = 454
    METHOD_NOT_VALID_IN_THIS_STATE = 455
    UNSUPPORTED_TRANSPORT = 461
    INTERNAL_SERVER_ERROR = 500
    NOT_IMPLEMENTED = 501


REASONS = {
    StatusCode.OK: "OK",
    StatusCode.BAD_REQUEST: "Bad Request",
    StatusCode.NOT_FOUND: "Not Found",
    StatusCode.SESSION_NOT_FOUND: "Session Not Found",
    StatusCode.METHOD_NOT_VALID_IN_THIS_STATE: "Method Not Valid In This State",
    StatusCode.UNSUPPORTED_TRANSPORT: "Unsupported Transport",
    StatusCode.INTERNAL_SERVER_ERROR: "Internal Server Error",
    StatusCode.NOT_IMPLEMENTED: "Not Implemented",
}


class RTSPProtocolError(Exception):
    """Raised when a client sends something that is not valid RTSP."""


class StreamError(Exception):
    """Raised when a packet cannot be written to a stream."""


class StreamClosedError(StreamError):
    """Raised when writing to a closed stream."""


class SessionTerminated(Exception):
    """Close reason of sessions closed by the application."""


@dataclass
class Request:
    """An RTSP request."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    @classmethod
    def parse(cls, head: bytes) -> 'Request':
        """Parse the request line and headers (everything up to the blank line)."""
        text = head.decode('utf-8', errors='replace')
        lines = [line for line in re.split(r'\r?\n', text) if line]
        if not lines:
            raise RTSPProtocolError("empty request")

        parts = lines[0].split(' ')
        if len(parts) != 3 or not parts[2].startswith('RTSP/'):
            raise RTSPProtocolError(f"invalid request line: {lines[0]!r}")

        headers = {}
        for line in lines[1:]:
            name, sep, value = line.partition(':')
            if not sep:
                raise RTSPProtocolError(f"invalid header: {line!r}")
            headers[name.strip().lower()] = value.strip()

        return cls(method=parts[0].upper(), url=parts[1], headers=headers)

    def header(self, name: str, default: str = '') -> str:
        return self.headers.get(name.lower(), default)

    @property
    def cseq(self) -> str:
        return self.header('CSeq')

    @property
    def session_id(self) -> str:
        return self.header('Session').split(';')[0].strip()

    @property
    def path(self) -> str:
        return urlparse(self.url).path.strip('/')

    @property
    def content_length(self) -> int:
        try:
            return int(self.header('Content-Length', '0'))
        except ValueError:
            raise RTSPProtocolError("invalid Content-Length")


@dataclass
class Response:
    """An RTSP response."""
    status_code: int = StatusCode.OK
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    @property
    def ok(self) -> bool:
        return self.status_code == StatusCode.OK

    def encode(self, cseq: str = '') -> bytes:
        reason = REASONS.get(self.status_code, "Unknown")
        lines = [f"RTSP/1.0 {int(self.status_code)} {reason}"]
        if cseq:
            lines.append(f"CSeq: {cseq}")
        lines.append("Server: rtsprec")
        for name, value in self.headers.items():
            lines.append(f"{name}: {value}")
        if self.body:
            lines.append(f"Content-Length: {len(self.body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode() + self.body


@dataclass
class TransportHeader:
    """Parsed Transport request header."""
    protocol: str = "udp"  # "udp" or "tcp"
    multicast: bool = False
    interleaved: Optional[Tuple[int, int]] = None
    client_ports: Optional[Tuple[int, int]] = None
    mode: str = ""

    @classmethod
    def parse(cls, value: str) -> 'TransportHeader':
        # Clients may offer several alternatives; the first one is used
        first = value.split(',')[0]
        parts = [p.strip() for p in first.split(';') if p.strip()]
        if not parts:
            raise RTSPProtocolError("empty Transport header")

        profile = parts[0].upper()
        if not profile.startswith('RTP/AVP'):
            raise RTSPProtocolError(f"unsupported transport: {parts[0]}")

        th = cls(protocol="tcp" if profile == 'RTP/AVP/TCP' else "udp")
        for part in parts[1:]:
            key, _, val = part.partition('=')
            key = key.lower()
            if key == 'multicast':
                th.multicast = True
            elif key == 'interleaved':
                th.interleaved = _parse_port_pair(val)
            elif key == 'client_port':
                th.client_ports = _parse_port_pair(val)
            elif key == 'mode':
                th.mode = val.strip('"').lower()
        return th


def _parse_port_pair(value: str) -> Tuple[int, int]:
    try:
        if '-' in value:
            a, b = value.split('-', 1)
            return int(a), int(b)
        return int(value), int(value) + 1
    except ValueError:
        raise RTSPProtocolError(f"invalid port range: {value!r}")


class SessionState(Enum):
    INITIAL = "initial"
    PRE_PLAY = "pre_play"
    PLAY = "play"
    PRE_RECORD = "pre_record"
    RECORD = "record"


class TimestampDecoder:
    """Unwraps 32-bit RTP timestamps into a monotonic count since the first packet."""

    def __init__(self):
        self._prev: Optional[int] = None
        self._overall = 0

    def decode(self, timestamp: int) -> int:
        if self._prev is None:
            self._prev = timestamp
            return 0
        diff = ((timestamp - self._prev + 0x80000000) & 0xFFFFFFFF) - 0x80000000
        self._overall += diff
        self._prev = timestamp
        return self._overall


@dataclass
class MediaTransport:
    """Transport negotiated by SETUP for one media of a session."""
    protocol: str
    channel: int = 0
    client_rtp_port: int = 0
    client_rtcp_port: int = 0


@dataclass
class ServerStats:
    """Packet counters for the whole server"""
    packets_received: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class ServerHandler:
    """
    Application callbacks invoked by RTSPServer.

    Every method has a default implementation; override what you need.
    Negotiation callbacks return a Response and, for DESCRIBE and SETUP,
    the ServerStream to read from (or None).
    """

    def on_conn_open(self, conn: 'ServerConn'):
        pass

    def on_conn_close(self, conn: 'ServerConn', error: Optional[Exception]):
        pass

    def on_session_open(self, session: 'ServerSession'):
        pass

    def on_session_close(self, session: 'ServerSession', error: Optional[Exception]):
        pass

    def on_describe(self, conn: 'ServerConn', request: Request) -> Tuple[Response, Optional['ServerStream']]:
        return Response(StatusCode.NOT_FOUND), None

    def on_announce(self, session: 'ServerSession', request: Request,
                    description: SessionDescription) -> Response:
        return Response(StatusCode.NOT_IMPLEMENTED)

    def on_setup(self, session: 'ServerSession', request: Request) -> Tuple[Response, Optional['ServerStream']]:
        return Response(StatusCode.NOT_FOUND), None

    def on_play(self, session: 'ServerSession', request: Request) -> Response:
        return Response(StatusCode.OK)

    def on_record(self, session: 'ServerSession', request: Request) -> Response:
        return Response(StatusCode.OK)


class ServerStream:
    """
    A live stream that can be read by any number of sessions.

    write_packet_rtp() forwards a packet to every session playing the
    stream. A failing or slow reader never affects the others or the caller.
    """

    def __init__(self, server: Optional['RTSPServer'], description: SessionDescription):
        self.server = server
        self.description = description
        self._readers: Set['ServerSession'] = set()
        self._lock = threading.Lock()
        self._initialized = False
        self._closed = False

    def initialize(self):
        with self._lock:
            self._initialized = True
            self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def reader_count(self) -> int:
        with self._lock:
            return len(self._readers)

    def add_reader(self, session: 'ServerSession'):
        with self._lock:
            if self._closed:
                raise StreamClosedError("stream is closed")
            self._readers.add(session)

    def remove_reader(self, session: 'ServerSession'):
        with self._lock:
            self._readers.discard(session)

    def write_packet_rtp(self, media: Media, pkt: RtpPacket):
        """Send an RTP packet of `media` to all readers."""
        with self._lock:
            if not self._initialized or self._closed:
                raise StreamClosedError("stream is closed")
            readers = list(self._readers)

        index = _media_index(self.description, media)
        if index is None:
            raise StreamError("media does not belong to this stream")

        if not readers:
            return

        data = pkt.serialize()
        for reader in readers:
            try:
                if reader.send_rtp(index, data) and self.server is not None:
                    self.server.stats.packets_sent += 1
            except OSError as e:
                logger.debug(f"Dropping packet for session {reader.id}: {e}")

    def close(self):
        """Close the stream and disconnect its readers."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            readers = list(self._readers)
            self._readers.clear()

        for reader in readers:
            reader.close()


def _media_index(description: Optional[SessionDescription], media: Media) -> Optional[int]:
    if description is None:
        return None
    for i, m in enumerate(description.medias):
        if m is media:
            return i
    return None


def _find_media_by_url(description: SessionDescription, url: str) -> Optional[int]:
    """Match a SETUP URL against the control attributes of a description."""
    path = urlparse(url).path.rstrip('/')
    for i in range(len(description.medias)):
        control = description.media_control(i)
        if control.lower().startswith('rtsp://'):
            if url.rstrip('/') == control.rstrip('/'):
                return i
        elif path == control or path.endswith('/' + control):
            return i
    if len(description.medias) == 1:
        return 0
    return None


class ServerConn:
    """A TCP connection from a client."""

    def __init__(self, server: 'RTSPServer', reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.server = server
        self.reader = reader
        self.writer = writer
        self.peername = writer.get_extra_info('peername')
        self.host = self.peername[0] if self.peername else 'unknown'
        self.port = self.peername[1] if self.peername else 0
        self.sessions: Set['ServerSession'] = set()
        self.channels: Dict[int, Tuple['ServerSession', int]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes):
        if self._closed:
            raise ConnectionError("connection is closed")
        self.server.run_in_loop(self._write_now, data)

    def write_interleaved(self, channel: int, data: bytes):
        """Send an RTP/RTCP packet over the RTSP connection ($ framing)."""
        if self.writer.transport.get_write_buffer_size() > MAX_WRITE_BUFFER:
            raise ConnectionError("write buffer full")
        self.write(struct.pack('>cBH', b'$', channel, len(data)) + data)

    def _write_now(self, data: bytes):
        if self._closed or self.writer.transport.is_closing():
            self._closed = True
            return
        self.writer.write(data)

    def close(self):
        self.server.call_soon(self._close_now)

    def _close_now(self):
        if not self._closed:
            self._closed = True
            self.writer.close()


class ServerSession:
    """An RTSP session, either publishing (RECORD) or reading (PLAY)."""

    def __init__(self, server: 'RTSPServer', conn: ServerConn):
        self.server = server
        self.conn = conn
        self.id = ''.join(choices(string.ascii_lowercase + string.digits, k=12))
        self.state = SessionState.INITIAL
        self.path = ''
        self.announced_description: Optional[SessionDescription] = None
        self.stream: Optional[ServerStream] = None
        self.transports: Dict[int, MediaTransport] = {}
        self._packet_callback: Optional[Callable[[Media, Format, RtpPacket], None]] = None
        self._timestamp_decoders: Dict[int, TimestampDecoder] = {}
        self._closed = False

    def __repr__(self):
        return f"<ServerSession {self.id} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def on_packet_rtp_any(self, callback: Callable[[Media, Format, RtpPacket], None]):
        """Register a callback invoked for every RTP packet received while recording."""
        self._packet_callback = callback

    def packet_pts(self, media: Media, pkt: RtpPacket) -> Optional[int]:
        """
        Presentation timestamp of a received packet in 90kHz ticks, relative
        to the first packet of the same media. None if unknown.
        """
        index = _media_index(self.announced_description, media)
        if index is None:
            return None
        forma = media.find_format(pkt.payload_type)
        if forma is None or forma.clock_rate <= 0:
            return None

        decoder = self._timestamp_decoders.setdefault(index, TimestampDecoder())
        ticks = decoder.decode(pkt.timestamp)
        if ticks < 0:
            return None
        if forma.clock_rate != RTP_CLOCK_HZ:
            ticks = ticks * RTP_CLOCK_HZ // forma.clock_rate
        return ticks

    def send_rtp(self, media_index: int, data: bytes) -> bool:
        """Send a packet to a reading session. Returns False if the media is not set up."""
        if self._closed or self.state != SessionState.PLAY:
            return False
        transport = self.transports.get(media_index)
        if transport is None:
            return False
        if transport.protocol == "tcp":
            self.conn.write_interleaved(transport.channel, data)
        else:
            self.server.send_udp(data, (self.conn.host, transport.client_rtp_port))
        return True

    def receive_rtp(self, media_index: int, data: bytes):
        """Handle an RTP packet sent by a publishing session."""
        if self.state != SessionState.RECORD or self.announced_description is None:
            return
        try:
            pkt = RtpPacket.parse(data)
        except ValueError as e:
            logger.debug(f"Invalid RTP packet from session {self.id}: {e}")
            return

        media = self.announced_description.medias[media_index]
        forma = media.find_format(pkt.payload_type)
        if forma is None:
            logger.debug(f"Unknown payload type {pkt.payload_type} from session {self.id}")
            return

        callback = self._packet_callback
        if callback is None:
            return
        try:
            callback(media, forma, pkt)
        except Exception:
            logger.exception(f"Packet callback failed for session {self.id}")

    def close(self):
        """Close the session and its connection. Thread-safe; takes effect asynchronously."""
        self.server.call_soon(self._terminate)

    def _terminate(self):
        self.server.close_session(self, SessionTerminated("terminated"))
        self.conn.close()


class _RTPProtocol(asyncio.DatagramProtocol):
    def __init__(self, server: 'RTSPServer'):
        self.server = server

    def datagram_received(self, data: bytes, addr):
        self.server.receive_udp(data, addr)


class RTSPServer:
    """
    Native Python RTSP server.

    Usage:
        server = RTSPServer(handler, ServerConfig(rtsp_port=8554))
        server.start()
        ...
        server.stop()
    """

    def __init__(self, handler: ServerHandler, config: Optional[ServerConfig] = None):
        self.handler = handler
        self.config = config or ServerConfig()

        self._sessions: Dict[str, ServerSession] = {}
        self._conns: Set[ServerConn] = set()
        self._udp_sources: Dict[Tuple[str, int], Tuple[ServerSession, int]] = {}

        self._server: Optional[asyncio.AbstractServer] = None
        self._rtp_transport: Optional[asyncio.DatagramTransport] = None
        self._rtcp_transport: Optional[asyncio.DatagramTransport] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread_id: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._start_error: Optional[Exception] = None
        self._running = False
        self._port = self.config.rtsp_port

        self.stats = ServerStats()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """Bound RTSP port (differs from the configured one when that was 0)."""
        return self._port

    @property
    def udp_enabled(self) -> bool:
        return self._rtp_transport is not None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def rtsp_url(self) -> str:
        return f"rtsp://{self.config.local_ip}:{self.port}/{self.config.stream_path}"

    def start(self) -> bool:
        """Start the server in a background thread. Returns False if it could not bind."""
        self._started.clear()
        self._start_error = None
        self._thread = threading.Thread(target=self._run_server, name="rtsp-server", daemon=True)
        self._thread.start()

        self._started.wait(timeout=5.0)
        if self._start_error is not None:
            logger.error(f"Failed to start RTSP server: {self._start_error}")
            return False
        return self._running

    def _run_server(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._loop_thread_id = threading.get_ident()

        try:
            self._loop.run_until_complete(self._start_server())
        except Exception as e:
            self._start_error = e
            self._started.set()
            self._loop.close()
            return

        self._running = True
        self._started.set()
        try:
            self._loop.run_forever()
        finally:
            self._running = False
            self._loop.run_until_complete(self._shutdown())
            self._loop.close()

    async def _start_server(self):
        cfg = self.config
        self._server = await asyncio.start_server(self._handle_client, cfg.bind_address, cfg.rtsp_port)
        self._port = self._server.sockets[0].getsockname()[1]
        logger.info(f"RTSP server listening on {cfg.bind_address}:{self._port}")

        if cfg.udp_rtp_port and cfg.udp_rtcp_port:
            loop = asyncio.get_running_loop()
            self._rtp_transport, _ = await loop.create_datagram_endpoint(
                lambda: _RTPProtocol(self), local_addr=(cfg.bind_address, cfg.udp_rtp_port))
            self._rtcp_transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol, local_addr=(cfg.bind_address, cfg.udp_rtcp_port))
            logger.info(f"UDP RTP/RTCP on ports {cfg.udp_rtp_port}/{cfg.udp_rtcp_port}")

    async def _shutdown(self):
        if self._server is not None:
            self._server.close()
        for conn in list(self._conns):
            conn._close_now()
        for transport in (self._rtp_transport, self._rtcp_transport):
            if transport is not None:
                transport.close()

        # Let connection handlers run their cleanup (session close callbacks)
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        if pending:
            await asyncio.wait(pending, timeout=1.0)

    def stop(self):
        """Stop the server and close every connection."""
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        logger.info("RTSP server stopped")

    def call_soon(self, callback, *args):
        """Schedule `callback` on the server loop without running it inline."""
        loop = self._loop
        if loop is None or loop.is_closed():
            callback(*args)
        elif threading.get_ident() == self._loop_thread_id:
            loop.call_soon(callback, *args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def run_in_loop(self, callback, *args):
        """Run `callback` on the server loop, inline when already on it."""
        loop = self._loop
        if loop is None or loop.is_closed() or threading.get_ident() == self._loop_thread_id:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def send_udp(self, data: bytes, addr: Tuple[str, int]):
        if self._rtp_transport is None:
            raise ConnectionError("UDP transport is not available")
        self.run_in_loop(self._rtp_transport.sendto, data, addr)

    def receive_udp(self, data: bytes, addr):
        source = self._udp_sources.get((addr[0], addr[1]))
        if source is None:
            return
        session, media_index = source
        self.stats.packets_received += 1
        self.stats.bytes_received += len(data)
        session.receive_rtp(media_index, data)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        conn = ServerConn(self, reader, writer)
        self._conns.add(conn)
        logger.debug(f"Connection opened from {conn.host}:{conn.port}")
        self.handler.on_conn_open(conn)

        error: Optional[Exception] = None
        try:
            while not conn.closed:
                first = await reader.readexactly(1)
                if first == b'$':
                    header = await reader.readexactly(3)
                    channel, length = struct.unpack('>BH', header)
                    payload = await reader.readexactly(length)
                    self._handle_interleaved(conn, channel, payload)
                    continue

                head = first + await reader.readuntil(b'\r\n\r\n')
                request = Request.parse(head)
                length = request.content_length
                if length > MAX_BODY_SIZE:
                    raise RTSPProtocolError("request body too large")
                if length:
                    request.body = await reader.readexactly(length)

                response = self._process_request(conn, request)
                if not conn.closed:
                    writer.write(response.encode(request.cseq))
                    await writer.drain()
        except asyncio.IncompleteReadError:
            pass
        except (ConnectionError, RTSPProtocolError, asyncio.LimitOverrunError) as e:
            error = e
            logger.debug(f"Connection {conn.host}:{conn.port} error: {e}")
        finally:
            for session in list(conn.sessions):
                self.close_session(session, error)
            self._conns.discard(conn)
            conn._close_now()
            self.handler.on_conn_close(conn, error)

    def _handle_interleaved(self, conn: ServerConn, channel: int, payload: bytes):
        target = conn.channels.get(channel)
        if target is None:
            return  # RTCP or unknown channel
        session, media_index = target
        self.stats.packets_received += 1
        self.stats.bytes_received += len(payload)
        session.receive_rtp(media_index, payload)

    def _process_request(self, conn: ServerConn, request: Request) -> Response:
        logger.debug(f"{request.method} {request.url}")
        try:
            if request.method == 'OPTIONS':
                return Response(StatusCode.OK, {'Public': SUPPORTED_METHODS})
            if request.method == 'DESCRIBE':
                return self._on_describe(conn, request)
            if request.method == 'ANNOUNCE':
                return self._on_announce(conn, request)
            if request.method == 'SETUP':
                return self._on_setup(conn, request)
            if request.method in ('PLAY', 'RECORD', 'TEARDOWN', 'GET_PARAMETER', 'SET_PARAMETER'):
                return self._on_session_request(conn, request)
            return Response(StatusCode.NOT_IMPLEMENTED)
        except RTSPProtocolError as e:
            logger.debug(f"Bad {request.method} request: {e}")
            return Response(StatusCode.BAD_REQUEST)
        except Exception:
            logger.exception(f"Error handling {request.method} request")
            return Response(StatusCode.INTERNAL_SERVER_ERROR)

    def _lookup_session(self, request: Request) -> Optional[ServerSession]:
        session_id = request.session_id
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def _open_session(self, conn: ServerConn) -> ServerSession:
        session = ServerSession(self, conn)
        self._sessions[session.id] = session
        conn.sessions.add(session)
        logger.debug(f"Session {session.id} opened")
        self.handler.on_session_open(session)
        return session

    def close_session(self, session: ServerSession, error: Optional[Exception] = None):
        """Release a session's resources and notify the handler. Idempotent."""
        if session._closed:
            return
        session._closed = True
        self._sessions.pop(session.id, None)
        session.conn.sessions.discard(session)
        for channel in [c for c, (s, _) in session.conn.channels.items() if s is session]:
            del session.conn.channels[channel]
        for addr in [a for a, (s, _) in self._udp_sources.items() if s is session]:
            del self._udp_sources[addr]
        if session.stream is not None:
            session.stream.remove_reader(session)
        logger.debug(f"Session {session.id} closed")
        self.handler.on_session_close(session, error)

    def _session_headers(self, session: ServerSession) -> Dict[str, str]:
        return {'Session': f"{session.id};timeout={SESSION_TIMEOUT}"}

    def _on_describe(self, conn: ServerConn, request: Request) -> Response:
        response, stream = self.handler.on_describe(conn, request)
        if response.ok and stream is not None:
            response.headers.setdefault('Content-Type', 'application/sdp')
            response.headers.setdefault('Content-Base', request.url.rstrip('/') + '/')
            response.body = stream.description.marshal(self.config.local_ip).encode()
        return response

    def _on_announce(self, conn: ServerConn, request: Request) -> Response:
        session = self._lookup_session(request)
        if request.session_id and session is None:
            return Response(StatusCode.SESSION_NOT_FOUND)
        if session is not None and session.state != SessionState.INITIAL:
            return Response(StatusCode.METHOD_NOT_VALID_IN_THIS_STATE)

        try:
            description = SessionDescription.parse(request.body.decode('utf-8', errors='replace'))
        except SDPError as e:
            logger.warning(f"Invalid SDP in ANNOUNCE: {e}")
            return Response(StatusCode.BAD_REQUEST)

        if session is None:
            session = self._open_session(conn)

        response = self.handler.on_announce(session, request, description)
        if response.ok:
            session.announced_description = description
            session.path = request.path
            session.state = SessionState.PRE_RECORD
        response.headers.update(self._session_headers(session))
        return response

    def _on_setup(self, conn: ServerConn, request: Request) -> Response:
        session = self._lookup_session(request)
        if request.session_id and session is None:
            return Response(StatusCode.SESSION_NOT_FOUND)
        if session is not None and session.state not in (
                SessionState.INITIAL, SessionState.PRE_PLAY, SessionState.PRE_RECORD):
            return Response(StatusCode.METHOD_NOT_VALID_IN_THIS_STATE)

        transport_value = request.header('Transport')
        if not transport_value:
            return Response(StatusCode.UNSUPPORTED_TRANSPORT)
        transport = TransportHeader.parse(transport_value)
        if transport.multicast:
            return Response(StatusCode.UNSUPPORTED_TRANSPORT)
        if transport.protocol == "udp" and (not self.udp_enabled or transport.client_ports is None):
            return Response(StatusCode.UNSUPPORTED_TRANSPORT)

        if session is None:
            session = self._open_session(conn)

        response, stream = self.handler.on_setup(session, request)
        if not response.ok:
            response.headers.update(self._session_headers(session))
            return response

        if session.state == SessionState.PRE_RECORD:
            description = session.announced_description
        else:
            if stream is None:
                return Response(StatusCode.NOT_FOUND)
            if session.stream is not None and session.stream is not stream:
                return Response(StatusCode.BAD_REQUEST)
            description = stream.description

        media_index = _find_media_by_url(description, request.url)
        if media_index is None:
            return Response(StatusCode.NOT_FOUND)

        if transport.protocol == "tcp":
            channel = transport.interleaved[0] if transport.interleaved else media_index * 2
            session.transports[media_index] = MediaTransport("tcp", channel=channel)
            if session.state == SessionState.PRE_RECORD:
                conn.channels[channel] = (session, media_index)
            transport_reply = f"RTP/AVP/TCP;unicast;interleaved={channel}-{channel + 1}"
        else:
            rtp_port, rtcp_port = transport.client_ports
            session.transports[media_index] = MediaTransport(
                "udp", client_rtp_port=rtp_port, client_rtcp_port=rtcp_port)
            if session.state == SessionState.PRE_RECORD:
                self._udp_sources[(conn.host, rtp_port)] = (session, media_index)
            transport_reply = (f"RTP/AVP;unicast;client_port={rtp_port}-{rtcp_port};"
                               f"server_port={self.config.udp_rtp_port}-{self.config.udp_rtcp_port}")

        if session.state != SessionState.PRE_RECORD:
            session.stream = stream
            session.path = request.path
            session.state = SessionState.PRE_PLAY

        response.headers['Transport'] = transport_reply
        response.headers.update(self._session_headers(session))
        return response

    def _on_session_request(self, conn: ServerConn, request: Request) -> Response:
        session = self._lookup_session(request)
        if session is None:
            if request.method == 'GET_PARAMETER' and not request.session_id:
                return Response(StatusCode.OK)
            return Response(StatusCode.SESSION_NOT_FOUND)

        if request.method == 'PLAY':
            if session.state != SessionState.PRE_PLAY or session.stream is None:
                return Response(StatusCode.METHOD_NOT_VALID_IN_THIS_STATE)
            response = self.handler.on_play(session, request)
            if response.ok:
                try:
                    session.stream.add_reader(session)
                except StreamClosedError:
                    return Response(StatusCode.NOT_FOUND)
                session.state = SessionState.PLAY

        elif request.method == 'RECORD':
            if session.state != SessionState.PRE_RECORD or not session.transports:
                return Response(StatusCode.METHOD_NOT_VALID_IN_THIS_STATE)
            response = self.handler.on_record(session, request)
            if response.ok:
                session.state = SessionState.RECORD

        elif request.method == 'TEARDOWN':
            self.close_session(session, None)
            return Response(StatusCode.OK)

        else:
            response = Response(StatusCode.OK)

        response.headers.update(self._session_headers(session))
        return response
