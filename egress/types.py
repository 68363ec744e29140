"""Media, output and request types shared across the egress service."""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any

VERSION = "1.8.6"


class RequestType(StrEnum):
    ROOM_COMPOSITE = "room_composite"
    WEB = "web"
    PARTICIPANT = "participant"
    TRACK_COMPOSITE = "track_composite"
    TRACK = "track"

    @property
    def is_web(self) -> bool:
        """True for request types that run a browser."""
        return self in (RequestType.ROOM_COMPOSITE, RequestType.WEB)


class SourceType(StrEnum):
    WEB = "web"
    SDK = "sdk"


class EgressType(StrEnum):
    STREAM = "stream"
    WEBSOCKET = "websocket"
    FILE = "file"
    SEGMENTS = "segments"
    IMAGES = "images"


class MimeType(StrEnum):
    AAC = "audio/aac"
    OPUS = "audio/opus"
    RAW_AUDIO = "audio/x-raw"
    H264 = "video/h264"
    VP8 = "video/vp8"
    VP9 = "video/vp9"
    JPEG = "image/jpeg"
    RAW_VIDEO = "video/x-raw"


class Profile(StrEnum):
    BASELINE = "baseline"
    MAIN = "main"
    HIGH = "high"


class OutputType(StrEnum):
    UNKNOWN_FILE = ""
    RAW = "audio/x-raw"
    OGG = "audio/ogg"
    IVF = "video/x-ivf"
    MP4 = "video/mp4"
    TS = "video/mp2t"
    WEBM = "video/webm"
    JPEG = "image/jpeg"
    RTMP = "rtmp"
    SRT = "srt"
    HLS = "application/x-mpegurl"
    JSON = "application/json"
    BLOB = "application/octet-stream"


class FileExtension(StrEnum):
    RAW = ".raw"
    OGG = ".ogg"
    IVF = ".ivf"
    MP4 = ".mp4"
    TS = ".ts"
    WEBM = ".webm"
    M3U8 = ".m3u8"
    JPEG = ".jpeg"


class EgressStatus(IntEnum):
    STARTING = 0
    ACTIVE = 1
    ENDING = 2
    COMPLETE = 3
    FAILED = 4
    ABORTED = 5
    LIMIT_REACHED = 6


DEFAULT_AUDIO_CODECS: dict[OutputType, MimeType] = {
    OutputType.RAW: MimeType.RAW_AUDIO,
    OutputType.OGG: MimeType.OPUS,
    OutputType.MP4: MimeType.AAC,
    OutputType.TS: MimeType.AAC,
    OutputType.WEBM: MimeType.OPUS,
    OutputType.RTMP: MimeType.AAC,
    OutputType.SRT: MimeType.AAC,
    OutputType.HLS: MimeType.AAC,
}

DEFAULT_VIDEO_CODECS: dict[OutputType, MimeType] = {
    OutputType.IVF: MimeType.VP8,
    OutputType.MP4: MimeType.H264,
    OutputType.TS: MimeType.H264,
    OutputType.WEBM: MimeType.VP8,
    OutputType.RTMP: MimeType.H264,
    OutputType.SRT: MimeType.H264,
    OutputType.HLS: MimeType.H264,
}

FILE_EXTENSIONS: frozenset[FileExtension] = frozenset(FileExtension)

FILE_EXTENSION_FOR_OUTPUT_TYPE: dict[OutputType, FileExtension] = {
    OutputType.RAW: FileExtension.RAW,
    OutputType.OGG: FileExtension.OGG,
    OutputType.IVF: FileExtension.IVF,
    OutputType.MP4: FileExtension.MP4,
    OutputType.TS: FileExtension.TS,
    OutputType.WEBM: FileExtension.WEBM,
    OutputType.HLS: FileExtension.M3U8,
    OutputType.JPEG: FileExtension.JPEG,
}

CODEC_COMPATIBILITY: dict[OutputType, frozenset[MimeType]] = {
    OutputType.RAW: frozenset({MimeType.RAW_AUDIO}),
    OutputType.OGG: frozenset({MimeType.OPUS}),
    OutputType.IVF: frozenset({MimeType.VP8, MimeType.VP9}),
    OutputType.MP4: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.TS: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.WEBM: frozenset({MimeType.OPUS, MimeType.VP8, MimeType.VP9}),
    OutputType.RTMP: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.SRT: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.HLS: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.UNKNOWN_FILE: frozenset(
        {MimeType.AAC, MimeType.OPUS, MimeType.H264, MimeType.VP8, MimeType.VP9}
    ),
}

ALL_OUTPUT_AUDIO_CODECS: frozenset[MimeType] = frozenset(
    {MimeType.AAC, MimeType.OPUS, MimeType.RAW_AUDIO}
)
ALL_OUTPUT_VIDEO_CODECS: frozenset[MimeType] = frozenset({MimeType.H264})

AUDIO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.OGG, OutputType.MP4)
VIDEO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)
AUDIO_VIDEO_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)

TRACK_OUTPUT_TYPES: dict[MimeType, OutputType] = {
    MimeType.OPUS: OutputType.OGG,
    MimeType.H264: OutputType.MP4,
    MimeType.VP8: OutputType.WEBM,
    MimeType.VP9: OutputType.WEBM,
}

STREAM_OUTPUT_TYPES: dict[str, OutputType] = {
    "rtmp": OutputType.RTMP,
    "rtmps": OutputType.RTMP,
    "mux": OutputType.RTMP,
    "twitch": OutputType.RTMP,
    "srt": OutputType.SRT,
    "ws": OutputType.RAW,
    "wss": OutputType.RAW,
}


def is_output_type_compatible_with_codecs(ot: OutputType, codecs: Iterable[str]) -> bool:
    """Return True if any of the codecs can be carried by the output type."""
    compatible = CODEC_COMPATIBILITY.get(ot, frozenset())
    return any(codec in compatible for codec in codecs)


def get_output_type_compatible_with_codecs(
    types: Iterable[OutputType],
    audio_codecs: Iterable[str] | None,
    video_codecs: Iterable[str] | None,
) -> OutputType:
    """Return the first output type compatible with both codec sets.

    A codec set of None is not checked; an empty set matches nothing.
    """
    for ot in types:
        if audio_codecs is not None and not is_output_type_compatible_with_codecs(ot, audio_codecs):
            continue
        if video_codecs is not None and not is_output_type_compatible_with_codecs(ot, video_codecs):
            continue
        return ot
    return OutputType.UNKNOWN_FILE


def _enabled(items: Iterable[Any]) -> set[Any]:
    if isinstance(items, Mapping):
        return {key for key, value in items.items() if value}
    return set(items)


def get_map_intersection(map_a: Iterable[Any], map_b: Iterable[Any]) -> set[Any]:
    """Return the keys of map_a that are enabled in map_b."""
    enabled = _enabled(map_b)
    return {key for key in map_a if key in enabled}


@dataclass
class StartEgressRequest:
    """A request to start an egress."""

    egress_id: str
    request_type: RequestType
    audio_only: bool = False
    estimated_cpu: float = 0.0
    request: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "egress_id": self.egress_id,
            "request_type": str(self.request_type),
            "audio_only": self.audio_only,
            "estimated_cpu": self.estimated_cpu,
            "request": dict(self.request),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StartEgressRequest:
        return cls(
            egress_id=data["egress_id"],
            request_type=RequestType(data["request_type"]),
            audio_only=bool(data.get("audio_only", False)),
            estimated_cpu=float(data.get("estimated_cpu", 0.0)),
            request=dict(data.get("request", {})),
        )


@dataclass
class EgressInfo:
    """State of an egress as reported to clients."""

    egress_id: str
    room_name: str = ""
    status: EgressStatus = EgressStatus.STARTING
    error: str = ""
    error_code: int = 0
    started_at: int = 0
    updated_at: int = 0
    ended_at: int = 0
    request: dict[str, Any] = field(default_factory=dict)

    def fail(self, error: str, error_code: int, now_ns: int | None = None) -> None:
        """Mark the egress as failed at now_ns (defaults to the current time)."""
        now = time.time_ns() if now_ns is None else now_ns
        self.status = EgressStatus.FAILED
        self.error = error
        self.error_code = error_code
        self.updated_at = now
        self.ended_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "egress_id": self.egress_id,
            "room_name": self.room_name,
            "status": self.status.name,
            "error": self.error,
            "error_code": self.error_code,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "ended_at": self.ended_at,
            "request": dict(self.request),
        }