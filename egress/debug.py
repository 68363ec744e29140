"""HTTP handlers for pipeline graphs and profiles of the service and its handlers."""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from collections.abc import Callable, Mapping
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, NamedTuple
from urllib.parse import parse_qs, urlsplit

from egress.process import EgressNotFoundError

logger = logging.getLogger(__name__)

GST_PIPELINE_DOT_FILE_APP = "gst_pipeline"
PPROF_APP = "pprof"

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"

Profiler = Callable[[str, int, int], bytes]


class _Response(NamedTuple):
    status: int
    content_type: str
    body: bytes


class _ProfileNotFoundError(LookupError):
    http_status = int(HTTPStatus.NOT_FOUND)

    def __init__(self, name: str) -> None:
        super().__init__(f"profile {name} not found")


def _error(message: str, status: int) -> _Response:
    return _Response(status, TEXT_PLAIN, (message + "\n").encode())


def _atoi(value: Any) -> int:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _thread_dump(name: str, timeout: int, debug: int) -> bytes:
    """Stack traces of all threads of this process."""
    if name not in ("goroutine", "threads"):
        raise _ProfileNotFoundError(name)
    frames = sys._current_frames()
    chunks: list[str] = []
    for thread in threading.enumerate():
        chunks.append(f"thread {thread.name} ({thread.ident}):\n")
        frame = frames.get(thread.ident) if thread.ident is not None else None
        if frame is not None:
            chunks.extend(traceback.format_stack(frame))
        chunks.append("\n")
    return "".join(chunks).encode()


def error_code(err: BaseException | None) -> int:
    """HTTP status that reports err."""
    if err is None:
        return int(HTTPStatus.OK)
    status = getattr(err, "http_status", None)
    if isinstance(status, int):
        return status
    if isinstance(err, EgressNotFoundError):
        return int(HTTPStatus.NOT_FOUND)
    return int(HTTPStatus.INTERNAL_SERVER_ERROR)


class DebugService:
    """Serves pipeline graphs and profiles for running egress handlers."""

    def __init__(self, pm: Any, profiler: Profiler | None = None) -> None:
        self._pm = pm
        self._profiler = profiler if profiler is not None else _thread_dump

    def start_debug_handlers(self, port: int) -> ThreadingHTTPServer | None:
        """Serve the debug endpoints on port in the background; 0 disables them."""
        if port == 0:
            logger.debug("debug handler disabled")
            return None

        service = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                url = urlsplit(self.path)
                resp = service._dispatch(url.path, parse_qs(url.query))
                self.send_response(resp.status)
                self.send_header("Content-Type", resp.content_type)
                self.send_header("Content-Length", str(len(resp.body)))
                self.end_headers()
                self.wfile.write(resp.body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(format, *args)

        server = ThreadingHTTPServer(("", port), _Handler)
        logger.debug("starting debug handler on address :%d", port)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        return server

    def _dispatch(self, path: str, query: Mapping[str, Any]) -> _Response:
        if path.startswith(f"/{GST_PIPELINE_DOT_FILE_APP}/"):
            return self.handle_gst_pipeline_dot_file(path)
        if path.startswith(f"/{PPROF_APP}/"):
            return self.handle_pprof(path, query)
        return _error("404 page not found", int(HTTPStatus.NOT_FOUND))

    def get_gst_pipeline_dot_file(self, egress_id: str) -> str:
        """Return the pipeline graph of a running egress in dot format."""
        client = self._pm.get_ipc_client(egress_id)
        return client.get_pipeline_dot()

    def handle_gst_pipeline_dot_file(self, path: str) -> _Response:
        """Handle ``/<app>/<egress_id>/...``."""
        parts = path.split("/")
        if len(parts) < 3:
            return _error("malformed url", int(HTTPStatus.NOT_FOUND))
        try:
            dot = self.get_gst_pipeline_dot_file(parts[2])
        except Exception as exc:
            return _error(str(exc), error_code(exc))
        return _Response(int(HTTPStatus.OK), TEXT_PLAIN, dot.encode())

    def handle_pprof(self, path: str, query: Mapping[str, Any] | None = None) -> _Response:
        """Handle ``/<app>/<profile>`` for the service or ``/<app>/<egress_id>/<profile>``."""
        query = query or {}
        timeout = _atoi(query.get("timeout", ""))
        debug = _atoi(query.get("debug", ""))

        parts = path.split("/")
        if len(parts) == 3:
            try:
                data = self._profiler(parts[2], timeout, debug)
            except Exception as exc:
                return _error(str(exc), error_code(exc))
        elif len(parts) == 4:
            try:
                client = self._pm.get_ipc_client(parts[2])
            except Exception:
                return _error("handler not found", int(HTTPStatus.NOT_FOUND))
            try:
                data = client.get_pprof(parts[3], timeout, debug)
            except Exception as exc:
                return _error(str(exc), error_code(exc))
        else:
            return _error("malformed url", int(HTTPStatus.NOT_FOUND))
        return _Response(int(HTTPStatus.OK), OCTET_STREAM, bytes(data))