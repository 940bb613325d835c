"""
Shared pytest fixtures for rtsprec tests
"""

import os
import sys
import json
import tempfile
from unittest.mock import MagicMock

import pytest

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rtsprec.config import ServerConfig
from rtsprec.rtsp import ServerStats
from rtsprec.sdp import SessionDescription

from samples import make_sps, make_pps


@pytest.fixture
def default_config():
    """Create a default ServerConfig for testing"""
    return ServerConfig()


@pytest.fixture
def custom_config():
    """Create a custom ServerConfig with non-default values"""
    return ServerConfig(
        local_ip="192.168.1.50",
        bind_address="127.0.0.1",
        rtsp_port=9554,
        udp_rtp_port=9000,
        udp_rtcp_port=9001,
        stream_path="cam1",
        record_path="/tmp/cam1.ts",
        log_level="DEBUG",
    )


@pytest.fixture
def temp_config_file(custom_config):
    """Create a temporary config file for testing save/load"""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        config_dict = {
            "rtsp_port": custom_config.rtsp_port,
            "stream_path": custom_config.stream_path,
            "record_path": custom_config.record_path,
            "log_level": custom_config.log_level,
            "unknown_key": "ignored",
        }
        json.dump(config_dict, f)
        temp_path = f.name

    yield temp_path

    # Cleanup
    if os.path.exists(temp_path):
        os.unlink(temp_path)


@pytest.fixture
def record_path(tmp_path):
    """Path of a recording inside a per-test temporary directory"""
    return str(tmp_path / "test.ts")


@pytest.fixture
def sps():
    return make_sps()


@pytest.fixture
def pps():
    return make_pps()


@pytest.fixture
def h264_sdp(sps, pps):
    """ANNOUNCE body for a single H.264 track"""
    import base64
    sprop = f"{base64.b64encode(sps).decode()},{base64.b64encode(pps).decode()}"
    return (
        "v=0\r\n"
        "o=- 0 0 IN IP4 127.0.0.1\r\n"
        "s=Test Stream\r\n"
        "c=IN IP4 0.0.0.0\r\n"
        "t=0 0\r\n"
        "m=video 0 RTP/AVP 96\r\n"
        "a=rtpmap:96 H264/90000\r\n"
        f"a=fmtp:96 packetization-mode=1;sprop-parameter-sets={sprop}\r\n"
        "a=control:trackID=0\r\n"
    )


@pytest.fixture
def av_sdp(h264_sdp):
    """ANNOUNCE body with an H.264 track followed by an audio track"""
    return h264_sdp + (
        "m=audio 0 RTP/AVP 97\r\n"
        "a=rtpmap:97 MPEG4-GENERIC/48000/2\r\n"
        "a=control:trackID=1\r\n"
    )


@pytest.fixture
def h264_description(h264_sdp):
    return SessionDescription.parse(h264_sdp)


@pytest.fixture
def mock_server():
    """Create a mock RTSPServer for stream and session tests"""
    server = MagicMock()
    server.call_soon = MagicMock(side_effect=lambda cb, *args: cb(*args))
    server.run_in_loop = MagicMock(side_effect=lambda cb, *args: cb(*args))
    server.stats = ServerStats()
    return server
