#!/usr/bin/env python3
"""
Session Description Protocol (RFC 4566) subset for RTSP

Parses the descriptions sent by publishers in ANNOUNCE and regenerates
them for viewers in DESCRIBE. Only what RTSP needs is modelled: media
sections, their RTP formats (rtpmap / fmtp) and control URLs.
"""

import base64
import binascii
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type

# Static RTP payload types (RFC 3551) that may appear without rtpmap
STATIC_PAYLOAD_TYPES = {
    0: ("PCMU", 8000, 1),
    8: ("PCMA", 8000, 1),
    14: ("MPA", 90000, None),
    26: ("JPEG", 90000, None),
    32: ("MPV", 90000, None),
    33: ("MP2T", 90000, None),
}


class SDPError(ValueError):
    """Raised when a session description cannot be parsed."""


@dataclass
class Format:
    """An RTP payload format inside a media section."""
    payload_type: int
    encoding: str = ""
    clock_rate: int = 0
    channels: Optional[int] = None
    fmtp: Dict[str, str] = field(default_factory=dict)

    def rtpmap(self) -> Optional[str]:
        if not self.encoding:
            return None
        value = f"{self.encoding}/{self.clock_rate}"
        if self.channels:
            value += f"/{self.channels}"
        return value

    def fmtp_line(self) -> Optional[str]:
        if not self.fmtp:
            return None
        return ";".join(f"{k}={v}" if v else k for k, v in self.fmtp.items())


@dataclass
class H264Format(Format):
    """H.264 payload format (RFC 6184)."""

    @property
    def packetization_mode(self) -> int:
        try:
            return int(self.fmtp.get("packetization-mode", "0"))
        except ValueError:
            return 0

    def _parameter_sets(self) -> List[bytes]:
        value = self.fmtp.get("sprop-parameter-sets", "")
        sets = []
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                sets.append(base64.b64decode(item, validate=True))
            except (binascii.Error, ValueError):
                continue
        return sets

    def _find_parameter_set(self, nal_type: int) -> Optional[bytes]:
        for ps in self._parameter_sets():
            if ps and (ps[0] & 0x1F) == nal_type:
                return ps
        return None

    @property
    def sps(self) -> Optional[bytes]:
        return self._find_parameter_set(7)

    @property
    def pps(self) -> Optional[bytes]:
        return self._find_parameter_set(8)


@dataclass
class Media:
    """A media section (m= line and its attributes)."""
    type: str
    protocol: str = "RTP/AVP"
    control: str = ""
    formats: List[Format] = field(default_factory=list)

    def find_format(self, payload_type: int) -> Optional[Format]:
        for forma in self.formats:
            if forma.payload_type == payload_type:
                return forma
        return None


@dataclass
class SessionDescription:
    """A parsed session description."""
    title: str = "Stream"
    medias: List[Media] = field(default_factory=list)

    def find_format(self, format_type: Type[Format]) -> Tuple[Optional[Media], Optional[Format]]:
        """Return the first (media, format) pair whose format is of the given type."""
        for media in self.medias:
            for forma in media.formats:
                if isinstance(forma, format_type):
                    return media, forma
        return None, None

    def media_control(self, index: int) -> str:
        """Control attribute of a media, with a default for medias that have none."""
        return self.medias[index].control or f"trackID={index}"

    @classmethod
    def parse(cls, text: str) -> 'SessionDescription':
        desc = cls()
        current: Optional[Media] = None
        rtpmaps: Dict[int, str] = {}
        fmtps: Dict[int, str] = {}
        seen_version = False

        def finish_media():
            if current is None:
                return
            for forma_index, forma in enumerate(current.formats):
                current.formats[forma_index] = _build_format(
                    forma.payload_type,
                    rtpmaps.get(forma.payload_type),
                    fmtps.get(forma.payload_type),
                )

        for raw_line in text.replace("\r\n", "\n").split("\n"):
            line = raw_line.strip()
            if not line:
                continue
            if len(line) < 2 or line[1] != "=":
                raise SDPError(f"invalid SDP line: {line!r}")

            key, value = line[0], line[2:]

            if key == "v":
                if value != "0":
                    raise SDPError(f"unsupported SDP version: {value}")
                seen_version = True
            elif key == "s" and current is None:
                desc.title = value
            elif key == "m":
                finish_media()
                parts = value.split()
                if len(parts) < 4:
                    raise SDPError(f"invalid media line: {value!r}")
                try:
                    payload_types = [int(pt) for pt in parts[3:]]
                except ValueError:
                    raise SDPError(f"invalid payload type in media line: {value!r}")
                current = Media(
                    type=parts[0],
                    protocol=parts[2],
                    formats=[Format(payload_type=pt) for pt in payload_types],
                )
                desc.medias.append(current)
                rtpmaps = {}
                fmtps = {}
            elif key == "a" and current is not None:
                name, _, attr = value.partition(":")
                if name == "control":
                    current.control = attr.strip()
                elif name in ("rtpmap", "fmtp"):
                    pt_str, _, params = attr.partition(" ")
                    try:
                        pt = int(pt_str)
                    except ValueError:
                        raise SDPError(f"invalid {name} attribute: {value!r}")
                    if name == "rtpmap":
                        rtpmaps[pt] = params.strip()
                    else:
                        fmtps[pt] = params.strip()

        finish_media()

        if not seen_version:
            raise SDPError("missing version line")
        if not desc.medias:
            raise SDPError("no media sections")
        return desc

    def marshal(self, address: str = "127.0.0.1") -> str:
        lines = [
            "v=0",
            f"o=- {random.randrange(1000000, 9999999)} 1 IN IP4 {address}",
            f"s={self.title or 'Stream'}",
            "c=IN IP4 0.0.0.0",
            "t=0 0",
        ]
        for index, media in enumerate(self.medias):
            payload_types = " ".join(str(f.payload_type) for f in media.formats)
            lines.append(f"m={media.type} 0 {media.protocol} {payload_types}")
            for forma in media.formats:
                rtpmap = forma.rtpmap()
                if rtpmap:
                    lines.append(f"a=rtpmap:{forma.payload_type} {rtpmap}")
                fmtp = forma.fmtp_line()
                if fmtp:
                    lines.append(f"a=fmtp:{forma.payload_type} {fmtp}")
            lines.append(f"a=control:{self.media_control(index)}")
        return "\r\n".join(lines) + "\r\n"


def _parse_fmtp(value: Optional[str]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if not value:
        return params
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        k, _, v = item.partition("=")
        params[k.strip()] = v.strip()
    return params


def _build_format(payload_type: int, rtpmap: Optional[str], fmtp: Optional[str]) -> Format:
    encoding, clock_rate, channels = "", 0, None

    if rtpmap:
        parts = rtpmap.split("/")
        encoding = parts[0]
        try:
            if len(parts) > 1:
                clock_rate = int(parts[1])
            if len(parts) > 2:
                channels = int(parts[2])
        except ValueError:
            raise SDPError(f"invalid rtpmap: {rtpmap!r}")
    elif payload_type in STATIC_PAYLOAD_TYPES:
        encoding, clock_rate, channels = STATIC_PAYLOAD_TYPES[payload_type]

    cls = H264Format if encoding.upper() == "H264" else Format
    return cls(
        payload_type=payload_type,
        encoding=encoding,
        clock_rate=clock_rate,
        channels=channels,
        fmtp=_parse_fmtp(fmtp),
    )
