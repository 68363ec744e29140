"""Interpretation of pipeline log lines, error details and element messages."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any

# noisy errors
MSG_WRONG_THREAD = "Called from wrong thread"

# noisy warnings
MSG_KEYFRAME = "Could not request a keyframe. Files may not split at the exact location they should"
MSG_LATENCY_QUERY = "Latency query failed"
MSG_TAPS = "can't find exact taps"
MSG_INPUT_DISAPPEARED = "Can't copy metadata because input buffer disappeared"
MSG_SKIPPING_SEGMENT = "error reading data -1 (reason: Success), skipping segment"
FN_GST_AUDIO_RESAMPLE_CHECK_DISCONT = "gst_audio_resample_check_discont"

# noisy fixmes
MSG_STREAM_START = (
    "stream-start event without group-id. Consider implementing group-id handling in the upstream elements"
)
MSG_CREATING_STREAM = (
    "Creating random stream-id, consider implementing a deterministic way of creating a stream-id"
)
MSG_AGGREGATE_SUBCLASS = (
    "Subclass should call gst_aggregator_selected_samples() from its aggregate implementation."
)

CAT_RTMP_CLIENT = "rtmpclient"
FN_SEND_CREATE_STREAM = "send_create_stream"

MSG_CLOCK_PROBLEM = "GStreamer error: clock problem."

ELEMENT_GST_APP_SRC = "GstAppSrc"
ELEMENT_GST_RTMP2_SINK = "GstRtmp2Sink"
ELEMENT_GST_SPLIT_MUX_SINK = "GstSplitMuxSink"
ELEMENT_GST_SRT_SINK = "GstSRTSink"

MSG_STREAMING_NOT_NEGOTIATED = "streaming stopped, reason not-negotiated (-4)"
MSG_MUXER = ":muxer"

MSG_FIRST_SAMPLE_METADATA = "FirstSampleMetadata"
MSG_FRAGMENT_OPENED = "splitmuxsink-fragment-opened"
MSG_FRAGMENT_CLOSED = "splitmuxsink-fragment-closed"
MSG_GST_MULTI_FILE_SINK = "GstMultiFileSink"

FRAGMENT_LOCATION = "location"
FRAGMENT_RUNNING_TIME = "running-time"
MULTI_FILE_SINK_FILENAME = "filename"
MULTI_FILE_SINK_TIMESTAMP = "timestamp"
FIRST_SAMPLE_START_DATE = "StartDate"

MULTI_FILE_SINK_PREFIX = "multifilesink_"

IGNORED: frozenset[str] = frozenset(
    {
        MSG_WRONG_THREAD,
        MSG_KEYFRAME,
        MSG_LATENCY_QUERY,
        MSG_TAPS,
        MSG_INPUT_DISAPPEARED,
        MSG_SKIPPING_SEGMENT,
        FN_GST_AUDIO_RESAMPLE_CHECK_DISCONT,
        MSG_STREAM_START,
        MSG_CREATING_STREAM,
        MSG_AGGREGATE_SUBCLASS,
    }
)

# file.c(line): method_name (): /GstPipeline:pipeline/GstBin:bin_name/GstElement:element_name:\nError message
_GST_DEBUG = re.compile(r"(.*?)GstPipeline:pipeline/GstBin:(.*?)/(.*?):([^:]*)(:\n)?(.*)", re.S)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class GstPipelineError(Exception):
    """A failure reported by the media pipeline."""


class DebugLevel(IntEnum):
    NONE = 0
    ERROR = 1
    WARNING = 2
    FIXME = 3
    INFO = 4
    DEBUG = 5
    LOG = 6
    TRACE = 7
    MEMDUMP = 9

    @property
    def label(self) -> str | None:
        """Name used in log lines, or None for levels that are not logged."""
        return _LEVEL_LABELS.get(self)


_LEVEL_LABELS: dict[DebugLevel, str] = {
    DebugLevel.ERROR: "error",
    DebugLevel.WARNING: "warning",
    DebugLevel.FIXME: "fixme",
    DebugLevel.INFO: "info",
    DebugLevel.DEBUG: "debug",
    DebugLevel.LOG: "log",
    DebugLevel.TRACE: "trace",
    DebugLevel.MEMDUMP: "memdump",
}


class ErrorAction(Enum):
    """What to do about a pipeline error."""

    RESET_STREAM = "reset_stream"  # try reconnecting, remove the stream if that fails
    REMOVE_STREAM = "remove_stream"
    STREAM_STOPPED = "stream_stopped"
    IGNORE = "ignore"
    FATAL = "fatal"


@dataclass(frozen=True)
class DebugInfo:
    """Element, element name and message taken from an error's debug string."""

    element: str
    name: str
    message: str

    @property
    def stream_name(self) -> str:
        """The stream part of a sink name such as ``sink_<stream>``."""
        parts = self.name.split("_")
        if len(parts) < 2:
            raise ValueError(f"no stream name in element name {self.name!r}")
        return parts[1]


def parse_debug_info(debug_string: str) -> DebugInfo:
    """Split a pipeline error's debug string into element, name and message."""
    match = _GST_DEBUG.search(debug_string)
    if match is None:
        raise ValueError(f"unrecognised debug info: {debug_string!r}")
    return DebugInfo(element=match.group(3), name=match.group(4), message=match.group(6))


def format_gst_log(category: str, level: int, function: str, message: str) -> str | None:
    """Format a pipeline log line, or return None if it should not be logged.

    Noisy messages, unknown levels and the rtmp client category yield None.
    """
    try:
        label = DebugLevel(level).label
    except ValueError:
        return None
    if label is None or message in IGNORED or function in IGNORED:
        return None
    if category == CAT_RTMP_CLIENT:
        return None
    if function:
        return f"[{category} {label}] {function}: {message}"
    return f"[{category} {label}] {message}"


def extract_stream_id(message: str) -> str:
    """Return the quoted stream id from an rtmp client create-stream message."""
    parts = message.split("'")
    if len(parts) < 2:
        raise ValueError(f"no quoted stream id in {message!r}")
    return parts[1]


def classify_error(info: DebugInfo, eos_sent: bool) -> ErrorAction:
    """Decide how to handle a pipeline error given whether EOS was already sent."""
    if info.element == ELEMENT_GST_RTMP2_SINK:
        return ErrorAction.REMOVE_STREAM if eos_sent else ErrorAction.RESET_STREAM
    if info.element == ELEMENT_GST_SRT_SINK:
        return ErrorAction.REMOVE_STREAM
    if info.element == ELEMENT_GST_APP_SRC and info.message == MSG_STREAMING_NOT_NEGOTIATED:
        return ErrorAction.STREAM_STOPPED
    if info.element == ELEMENT_GST_SPLIT_MUX_SINK and info.message == MSG_MUXER and eos_sent:
        return ErrorAction.IGNORE
    return ErrorAction.FATAL


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _path_and_time(structure: Mapping[str, Any], path_key: str, time_key: str) -> tuple[str, int]:
    location = structure[path_key]
    if not isinstance(location, str):
        raise GstPipelineError("invalid type for location")
    running_time = structure[time_key]
    if not _is_uint(running_time):
        raise GstPipelineError("invalid type for time")
    return location, running_time


def segment_params(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Return (location, running time) from a split-mux fragment message."""
    return _path_and_time(structure, FRAGMENT_LOCATION, FRAGMENT_RUNNING_TIME)


def image_information(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Return (filename, timestamp) from a multi-file sink message."""
    return _path_and_time(structure, MULTI_FILE_SINK_FILENAME, MULTI_FILE_SINK_TIMESTAMP)


def first_sample_start_date(structure: Mapping[str, Any]) -> datetime:
    """Return the start date carried by a first-sample metadata message."""
    start_ns = structure[FIRST_SAMPLE_START_DATE]
    if not isinstance(start_ns, int) or isinstance(start_ns, bool):
        raise GstPipelineError("invalid type for start date")
    return _EPOCH + timedelta(microseconds=start_ns // 1000)


def image_sink_id(source_name: str) -> str:
    """Return the image output id from a multi-file sink element name."""
    if not source_name.startswith(MULTI_FILE_SINK_PREFIX):
        raise ValueError(f"not a multi-file sink: {source_name!r}")
    return source_name[len(MULTI_FILE_SINK_PREFIX):]