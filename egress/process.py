"""Launching and tracking egress handler processes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence
from contextlib import suppress
from http import HTTPStatus
from typing import Any, Protocol

from egress.metrics import MetricFamily, deserialize_metrics
from egress.monitor import EgressError
from egress.types import EgressInfo, StartEgressRequest

logger = logging.getLogger(__name__)

LAUNCH_TIMEOUT = 10.0


class EgressNotFoundError(EgressError):
    def __init__(self) -> None:
        super().__init__("egress not found")


class HandlerClient(Protocol):
    def get_metrics(self) -> str: ...


def _spawn(cmd: Sequence[str], cwd: str | None = None) -> subprocess.Popen[bytes]:
    return subprocess.Popen(list(cmd), cwd=cwd, start_new_session=True)


class Process:
    """A launched handler process and the client used to talk to it."""

    def __init__(
        self,
        handler_id: str,
        req: StartEgressRequest,
        info: EgressInfo,
        ipc_client: Any,
    ) -> None:
        self.handler_id = handler_id
        self.req = req
        self.info = info
        self.ipc_client = ipc_client
        self.popen: Any = None
        self._ready = threading.Event()
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def gather(self) -> list[MetricFamily]:
        """Fetch the handler's metrics; an unreachable handler yields none."""
        try:
            text = self.ipc_client.get_metrics()
        except Exception as exc:  # the handler may be gone at any moment
            if not self.closed:
                logger.warning("failed to obtain metrics from handler %s: %s", self.req.egress_id, exc)
            return []
        return deserialize_metrics(self.info.egress_id, text)

    def kill(self) -> None:
        """Interrupt the handler once; later calls do nothing."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            popen = self.popen
        if popen is None:
            return
        try:
            popen.send_signal(signal.SIGINT)
        except OSError as exc:
            logger.error("failed to kill process for %s: %s", self.req.egress_id, exc)

    def _close(self) -> None:
        self._closed.set()


class ProcessManager:
    """Registry of running handler processes keyed by egress id."""

    def __init__(
        self,
        tmp_dir: str | None = None,
        launch_timeout: float = LAUNCH_TIMEOUT,
        cwd: str | None = None,
        spawn: Callable[[Sequence[str]], Any] | None = None,
    ) -> None:
        self._tmp_dir = tmp_dir
        self._launch_timeout = launch_timeout
        self._spawn = spawn if spawn is not None else (lambda cmd: _spawn(cmd, cwd))
        self._lock = threading.Lock()
        self._active: dict[str, Process] = {}

    def launch(
        self,
        handler_id: str,
        req: StartEgressRequest,
        info: EgressInfo,
        cmd: Sequence[str],
        ipc_client: Any,
    ) -> Any:
        """Start a handler and wait for it to report ready; return the process handle.

        Raises EgressNotFoundError if the handler does not become ready in time.
        """
        if self._tmp_dir is not None:
            os.makedirs(os.path.join(self._tmp_dir, handler_id), mode=0o755, exist_ok=True)

        process = Process(handler_id, req, info, ipc_client)
        with self._lock:
            self._active[info.egress_id] = process

        try:
            popen = self._spawn(cmd)
        except OSError as exc:
            logger.error("could not launch process: %s", exc)
            raise
        process.popen = popen

        if process._ready.wait(self._launch_timeout):
            return popen

        logger.warning("no response from handler for %s", info.egress_id)
        with suppress(OSError):
            popen.kill()
        with suppress(OSError, subprocess.SubprocessError):
            popen.wait()
        raise EgressNotFoundError()

    def already_exists(self, egress_id: str) -> bool:
        with self._lock:
            return egress_id in self._active

    def handler_started(self, egress_id: str) -> None:
        with self._lock:
            process = self._active.get(egress_id)
        if process is None:
            raise EgressNotFoundError()
        process._ready.set()

    def get_active_egress_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def get_status(self, info: dict[str, Any]) -> None:
        """Add each active egress's request to info, keyed by egress id."""
        with self._lock:
            for process in self._active.values():
                info[process.req.egress_id] = process.req.request

    def get_gatherers(self) -> list[Process]:
        with self._lock:
            return list(self._active.values())

    def get_ipc_client(self, egress_id: str) -> Any:
        with self._lock:
            process = self._active.get(egress_id)
        if process is None:
            raise EgressNotFoundError()
        return process.ipc_client

    def kill_all(self) -> None:
        for process in self.get_gatherers():
            process.kill()

    def abort_process(self, egress_id: str, err: Exception) -> None:
        with self._lock:
            process = self._active.pop(egress_id, None)
        if process is not None:
            logger.warning("aborting egress %s: %s", egress_id, err)
            process.kill()
            process._close()

    def kill_process(self, egress_id: str, err: Exception) -> None:
        """Mark an egress as failed and interrupt its handler."""
        with self._lock:
            process = self._active.get(egress_id)
        if process is not None:
            logger.error("killing egress %s: %s", egress_id, err)
            process.info.fail(str(err), int(HTTPStatus.FORBIDDEN))
            process.kill()

    def process_finished(self, egress_id: str) -> None:
        with self._lock:
            process = self._active.pop(egress_id, None)
        if process is not None:
            process._close()