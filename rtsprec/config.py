#!/usr/bin/env python3
"""Server configuration dataclass"""

import json
import logging
import socket
from dataclasses import dataclass, asdict

logger = logging.getLogger("rtsprec.config")


def get_local_ip() -> str:
    """Get the local IP address of the machine."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(('10.255.255.255', 1))
        ip = s.getsockname()[0]
    except Exception:
        ip = '127.0.0.1'
    finally:
        s.close()
    return ip


@dataclass
class ServerConfig:
    """Complete server configuration"""
    # Network
    local_ip: str = ""
    bind_address: str = "0.0.0.0"
    rtsp_port: int = 8554
    udp_rtp_port: int = 8000   # 0 disables UDP transport
    udp_rtcp_port: int = 8001

    # Publishing; empty stream_path accepts any path
    stream_path: str = ""

    # Recording
    record_path: str = "mystream.ts"

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.local_ip:
            self.local_ip = get_local_ip()
        self.stream_path = self.stream_path.strip('/')

    @property
    def rtsp_url(self) -> str:
        return f"rtsp://{self.local_ip}:{self.rtsp_port}/{self.stream_path}"

    def save(self, filepath: str = "rtsprec_config.json") -> bool:
        """Save configuration to JSON file"""
        try:
            config_dict = asdict(self)
            # Don't save local_ip as it's auto-detected
            config_dict.pop('local_ip', None)
            with open(filepath, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    @classmethod
    def load(cls, filepath: str = "rtsprec_config.json") -> 'ServerConfig':
        """Load configuration from JSON file, or return defaults if not found"""
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                config_dict = json.load(f)
            # Filter to only valid fields
            valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
            filtered = {k: v for k, v in config_dict.items() if k in valid_fields}
            return cls(**filtered)
        except FileNotFoundError:
            logger.info(f"Config file '{filepath}' not found, using defaults")
            return cls()
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load config: {e}")
            return cls()
