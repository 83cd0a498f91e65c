# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from kubernetes.stream.ws_client import ERROR_CHANNEL
from websocket import WebSocketException

from kubesandbox import _defaults
from kubesandbox._audit import AuditEventType, AuditLogger, AuditSeverity
from kubesandbox._cluster import _translate_api_error, call_api, is_not_found
from kubesandbox._defaults import (
    CONTAINER_NAME,
    DEFAULT_EXEC_TIMEOUT_SECONDS,
    DEFAULT_STOP_GRACE_PERIOD_SECONDS,
    DEFAULT_TMUX_CAPTURE_LINES,
    WORKSPACE_PATH,
    SandboxConfig,
)
from kubesandbox._pods import container_started_at
from kubesandbox._types import (
    TERMINAL_STATUSES,
    ExecResult,
    SandboxEventType,
    SandboxMetrics,
    SandboxStatus,
    TmuxSession,
)
from kubesandbox.exceptions import (
    ClusterConnectionError,
    ErrorKind,
    ExecConnectionError,
    ExecError,
    ExecTimeoutError,
    PodDeletionError,
    PodError,
    PodNotFoundError,
    PodNotRunningError,
    TmuxError,
)

logger = logging.getLogger(__name__)

_TMUX_SESSION_NAME = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_TMUX_NO_SESSIONS = ("no server running", "no sessions", "error connecting to")
_TMUX_NOT_FOUND = ("can't find session", "session not found", "no server running")

EventCallback = Callable[[SandboxEventType, "Sandbox", dict[str, Any]], None]


def _normalize_command(command: Sequence[str] | str) -> list[str]:
    if isinstance(command, str):
        if not command.strip():
            raise ValueError("Command cannot be empty")
        return ["/bin/sh", "-c", command]
    cmd = list(command)
    if not cmd:
        raise ValueError("Command cannot be empty")
    return cmd


def _parse_exit_status(raw: str | None, command: list[str]) -> int:
    """Exit code from the exec error channel's v1.Status payload."""
    if not raw:
        raise ExecError(
            "Exec channel closed without an exit status",
            context={"command": command},
        )
    try:
        status = json.loads(raw)
    except ValueError as e:
        raise ExecError(f"Malformed exec status: {raw!r}", context={"command": command}) from e

    if status.get("status") == "Success":
        return 0
    for cause in (status.get("details") or {}).get("causes") or []:
        if cause.get("reason") == "ExitCode":
            return int(cause.get("message", 1))
    raise ExecError(
        f"Command failed to run: {status.get('message', raw)}",
        context={"command": command, "reason": status.get("reason")},
    )


def _drain_exec_stream(
    ws: Any, cancelled: threading.Event, step_seconds: float
) -> tuple[str, str, str] | None:
    """Read an exec websocket to completion in a worker thread.

    Returns stdout, stderr and the raw status payload, or None once
    ``cancelled`` is set.
    """
    stdout: list[str] = []
    stderr: list[str] = []
    try:
        while ws.is_open() and not cancelled.is_set():
            ws.update(timeout=step_seconds)
            if ws.peek_stdout():
                stdout.append(ws.read_stdout())
            if ws.peek_stderr():
                stderr.append(ws.read_stderr())
        if cancelled.is_set():
            return None
        stdout.append(ws.read_stdout(timeout=0) or "")
        stderr.append(ws.read_stderr(timeout=0) or "")
        status = ws.read_channel(ERROR_CHANNEL, timeout=0)
    except (WebSocketException, OSError, ValueError):
        if cancelled.is_set():
            return None
        raise
    return "".join(stdout), "".join(stderr), status


class Sandbox:
    """Handle to one project's sandbox pod.

    Handles are created and owned by a SandboxProvider; status changes only
    through the handle's own methods.

    Example:
        ```python
        sandbox = await provider.create(SandboxConfig(project_id="p1"))
        result = await sandbox.exec(["git", "status"])
        print(result.returncode, result.stdout)
        await sandbox.stop()
        ```
    """

    def __init__(
        self,
        *,
        sandbox_id: str,
        config: SandboxConfig,
        namespace: str,
        core: Any,
        pod_name: str | None = None,
        exec_timeout_seconds: float = DEFAULT_EXEC_TIMEOUT_SECONDS,
        stop_grace_period_seconds: int = DEFAULT_STOP_GRACE_PERIOD_SECONDS,
        audit: AuditLogger | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self._sandbox_id = sandbox_id
        self._config = config
        self._namespace = namespace
        self._core = core
        self._pod_name = pod_name
        self._exec_timeout_seconds = exec_timeout_seconds
        self._stop_grace_period_seconds = stop_grace_period_seconds
        self._audit = audit
        self._on_event = on_event

        self._status = SandboxStatus.CREATING
        self._from_warm_pool = False
        self._created_at = datetime.now(UTC)
        self._stopped_at: datetime | None = None
        self._last_activity_at = self._created_at
        self._last_activity_monotonic = time.monotonic()
        self._idle_reported = False
        self._stop_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"<Sandbox id={self._sandbox_id} project={self.project_id} "
            f"status={self._status} pod={self._pod_name}>"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._sandbox_id

    @property
    def project_id(self) -> str:
        return self._config.project_id

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def status(self) -> SandboxStatus:
        return self._status

    @property
    def pod_name(self) -> str | None:
        return self._pod_name

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def stopped_at(self) -> datetime | None:
        return self._stopped_at

    @property
    def from_warm_pool(self) -> bool:
        return self._from_warm_pool

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    def _bind_pod(self, pod_name: str, *, from_warm_pool: bool = False) -> None:
        self._pod_name = pod_name
        self._from_warm_pool = from_warm_pool

    def _set_status(self, status: SandboxStatus, **data: Any) -> None:
        previous = self._status
        self._status = status
        logger.debug("Sandbox %s: %s -> %s", self._sandbox_id, previous, status)
        event = {
            SandboxStatus.RUNNING: SandboxEventType.STARTED,
            SandboxStatus.STOPPING: SandboxEventType.STOPPING,
            SandboxStatus.STOPPED: SandboxEventType.STOPPED,
            SandboxStatus.ERROR: SandboxEventType.ERROR,
        }.get(status)
        if event is not None:
            self._emit(event, **data)

    def _emit(self, event_type: SandboxEventType, **data: Any) -> None:
        if self._on_event is not None:
            self._on_event(event_type, self, data)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Record activity now. The recorded time never moves backwards."""
        now = datetime.now(UTC)
        if now > self._last_activity_at:
            self._last_activity_at = now
        self._last_activity_monotonic = time.monotonic()
        self._idle_reported = False

    def get_last_activity(self) -> datetime:
        return self._last_activity_at

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_activity_monotonic

    def check_idle(self) -> bool:
        """Emit an idle event once per idle period past the configured timeout."""
        if self._status is not SandboxStatus.RUNNING:
            return False
        idle = self.idle_seconds >= self._config.idle_timeout_minutes * 60
        if idle and not self._idle_reported:
            self._idle_reported = True
            self._emit(SandboxEventType.IDLE, idle_seconds=self.idle_seconds)
        return idle

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    def _ensure_running(self) -> str:
        if self._status is not SandboxStatus.RUNNING or self._pod_name is None:
            raise PodNotRunningError(
                f"Sandbox {self._sandbox_id} is {self._status}",
                context={
                    "sandbox_id": self._sandbox_id,
                    "pod_name": self._pod_name,
                    "status": self._status.value,
                },
            )
        return self._pod_name

    def _open_exec_stream(self, pod_name: str, command: list[str], connect_timeout: float) -> Any:
        return k8s_stream(
            self._core.connect_get_namespaced_pod_exec,
            name=pod_name,
            namespace=self._namespace,
            container=CONTAINER_NAME,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
            _request_timeout=connect_timeout,
        )

    async def exec(
        self,
        command: Sequence[str] | str,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        """Run a command in the sandbox container as the sandbox user.

        A string runs through ``/bin/sh -c``. A non-zero exit is returned on
        the result, not raised.

        Raises:
            PodNotRunningError: If the sandbox is not running
            ExecConnectionError: If the exec channel could not be opened
            ExecTimeoutError: If the command did not complete in time
            ExecError: If the channel failed mid-command
        """
        return await self._exec(command, timeout_seconds, as_root_requested=False)

    async def exec_as_root(
        self,
        command: Sequence[str] | str,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        """Run a command on behalf of a caller that asked for root.

        Privilege escalation is never granted: the attempt is audited and
        the command runs as the unprivileged sandbox user.
        """
        logger.warning(
            "Blocked root exec in sandbox %s; running as sandbox user", self._sandbox_id
        )
        return await self._exec(command, timeout_seconds, as_root_requested=True)

    async def _exec(
        self,
        command: Sequence[str] | str,
        timeout_seconds: float | None,
        *,
        as_root_requested: bool,
    ) -> ExecResult:
        pod_name = self._ensure_running()
        cmd = _normalize_command(command)
        timeout = timeout_seconds if timeout_seconds is not None else self._exec_timeout_seconds
        context = {"sandbox_id": self._sandbox_id, "pod_name": pod_name, "command": cmd}
        self.touch()

        if self._audit is not None:
            self._audit.log_exec(
                cmd,
                pod_name=pod_name,
                namespace=self._namespace,
                sandbox_id=self._sandbox_id,
                as_root_requested=as_root_requested,
            )

        try:
            ws = await call_api(
                self._open_exec_stream,
                pod_name,
                cmd,
                min(timeout, _defaults.DEFAULT_EXEC_CONNECT_TIMEOUT_SECONDS),
            )
        except (ApiException, ClusterConnectionError, WebSocketException, OSError) as e:
            raise ExecConnectionError(
                f"Failed to open exec channel to pod {pod_name}: {e}", context=context
            ) from e

        cancelled = threading.Event()
        try:
            drained = await asyncio.wait_for(
                asyncio.to_thread(
                    _drain_exec_stream, ws, cancelled, _defaults.DEFAULT_EXEC_READ_STEP_SECONDS
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise ExecTimeoutError(
                f"Command timed out after {timeout}s in pod {pod_name}",
                context={**context, "timeout_seconds": timeout},
            ) from e
        except (WebSocketException, OSError, ValueError) as e:
            raise ExecError(f"Exec channel to pod {pod_name} failed: {e}", context=context) from e
        finally:
            cancelled.set()
            ws.close()

        if drained is None:
            raise ExecError(f"Exec in pod {pod_name} was interrupted", context=context)
        stdout, stderr, raw_status = drained
        returncode = _parse_exit_status(raw_status, cmd)
        self.touch()
        logger.debug("Exec in %s exited %d: %s", pod_name, returncode, cmd)
        return ExecResult(
            stdout_bytes=stdout.encode("utf-8"),
            stderr_bytes=stderr.encode("utf-8"),
            returncode=returncode,
            command=cmd,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Delete the pod with a bounded grace period.

        On an API failure the sandbox moves to ``error`` and the failure is
        raised; there is no automatic retry. A pod that is already gone
        counts as stopped.

        Raises:
            PodDeletionError: If the pod could not be deleted
        """
        async with self._stop_lock:
            if self._status is SandboxStatus.STOPPED:
                logger.debug("stop() called on already-stopped sandbox %s", self._sandbox_id)
                return
            self._set_status(SandboxStatus.STOPPING)

            if self._pod_name is not None:
                try:
                    await call_api(
                        self._core.delete_namespaced_pod,
                        name=self._pod_name,
                        namespace=self._namespace,
                        grace_period_seconds=self._stop_grace_period_seconds,
                    )
                except ApiException as e:
                    if not is_not_found(e):
                        err = _translate_api_error(
                            e,
                            error_cls=PodDeletionError,
                            kind=ErrorKind.POD_DELETION_FAILED,
                            operation=f"Delete pod {self._pod_name}",
                            pod_name=self._pod_name,
                            sandbox_id=self._sandbox_id,
                        )
                        self._audit_deletion(error=str(err))
                        self._set_status(SandboxStatus.ERROR, error=str(err))
                        raise err from e
                    logger.debug("Pod %s already deleted", self._pod_name)
                except ClusterConnectionError as e:
                    self._audit_deletion(error=str(e))
                    self._set_status(SandboxStatus.ERROR, error=str(e))
                    raise PodDeletionError(
                        f"Failed to delete pod {self._pod_name}: {e}",
                        context={"pod_name": self._pod_name, "sandbox_id": self._sandbox_id},
                    ) from e
                else:
                    self._audit_deletion()

            self._stopped_at = datetime.now(UTC)
            self._set_status(SandboxStatus.STOPPED)
            logger.info("Sandbox %s stopped", self._sandbox_id)

    def _audit_deletion(self, *, error: str | None = None) -> None:
        if self._audit is None:
            return
        if error is None:
            self._audit.log(
                AuditEventType.POD_DELETED,
                pod_name=self._pod_name,
                namespace=self._namespace,
                sandbox_id=self._sandbox_id,
                project_id=self.project_id,
            )
        else:
            self._audit.log(
                AuditEventType.POD_DELETION_FAILED,
                AuditSeverity.ERROR,
                pod_name=self._pod_name,
                namespace=self._namespace,
                sandbox_id=self._sandbox_id,
                project_id=self.project_id,
                error=error,
            )

    async def get_metrics(self) -> SandboxMetrics:
        """Uptime from the container start time; usage fields read 0."""
        pod_name = self._ensure_running()
        self.touch()
        try:
            pod = await call_api(
                self._core.read_namespaced_pod, name=pod_name, namespace=self._namespace
            )
        except ApiException as e:
            if is_not_found(e):
                raise PodNotFoundError(
                    f"Pod {pod_name} not found",
                    context={"pod_name": pod_name, "namespace": self._namespace},
                ) from e
            raise _translate_api_error(
                e,
                error_cls=PodError,
                kind=ErrorKind.API_ERROR,
                operation=f"Read pod {pod_name}",
                pod_name=pod_name,
            ) from e

        started = container_started_at(pod)
        uptime = (datetime.now(UTC) - started).total_seconds() if started else 0.0
        return SandboxMetrics(
            uptime_seconds=max(uptime, 0.0),
            memory_limit_mb=float(self._config.memory_mb),
        )

    # ------------------------------------------------------------------
    # tmux
    # ------------------------------------------------------------------

    @staticmethod
    def _check_session_name(name: str) -> None:
        if not _TMUX_SESSION_NAME.match(name):
            raise ValueError(f"Invalid tmux session name: {name!r}")

    async def create_tmux_session(self, name: str) -> TmuxSession:
        """Create a detached tmux session rooted at the workspace.

        Raises:
            TmuxError: TMUX_SESSION_ALREADY_EXISTS or TMUX_CREATION_FAILED
        """
        self._check_session_name(name)
        existing = await self.exec(["tmux", "has-session", "-t", f"={name}"])
        if existing.returncode == 0:
            raise TmuxError(
                f"tmux session '{name}' already exists",
                kind=ErrorKind.TMUX_SESSION_ALREADY_EXISTS,
                context={"session_name": name, "sandbox_id": self._sandbox_id},
            )

        result = await self.exec(["tmux", "new-session", "-d", "-s", name, "-c", WORKSPACE_PATH])
        if result.returncode != 0:
            raise TmuxError(
                f"Failed to create tmux session '{name}': {result.stderr}",
                kind=ErrorKind.TMUX_CREATION_FAILED,
                context={"session_name": name, "sandbox_id": self._sandbox_id},
            )
        logger.info("Created tmux session %s in sandbox %s", name, self._sandbox_id)
        return TmuxSession(name=name, windows=1, attached=False, sandbox_id=self._sandbox_id)

    async def list_tmux_sessions(self) -> list[TmuxSession]:
        result = await self.exec(
            [
                "tmux",
                "list-sessions",
                "-F",
                "#{session_name}:#{session_windows}:#{session_attached}",
            ]
        )
        if result.returncode != 0:
            if any(marker in result.stderr.lower() for marker in _TMUX_NO_SESSIONS):
                return []
            raise ExecError(
                f"tmux list-sessions failed: {result.stderr}",
                context={"sandbox_id": self._sandbox_id, "returncode": result.returncode},
            )

        sessions = []
        for line in result.stdout.splitlines():
            parts = line.strip().rsplit(":", 2)
            if len(parts) != 3:
                continue
            name, windows, attached = parts
            sessions.append(
                TmuxSession(
                    name=name,
                    windows=int(windows) if windows.isdigit() else 0,
                    attached=attached.isdigit() and int(attached) > 0,
                    sandbox_id=self._sandbox_id,
                )
            )
        return sessions

    async def kill_tmux_session(self, name: str) -> bool:
        """Kill a session. Returns False if it did not exist."""
        self._check_session_name(name)
        result = await self.exec(["tmux", "kill-session", "-t", f"={name}"])
        if result.returncode == 0:
            return True
        if any(marker in result.stderr.lower() for marker in _TMUX_NOT_FOUND):
            return False
        raise ExecError(
            f"tmux kill-session failed: {result.stderr}",
            context={"session_name": name, "sandbox_id": self._sandbox_id},
        )

    def _session_not_found(self, name: str, stderr: str) -> TmuxError:
        return TmuxError(
            f"tmux session '{name}' not found: {stderr}",
            kind=ErrorKind.TMUX_SESSION_NOT_FOUND,
            context={"session_name": name, "sandbox_id": self._sandbox_id},
        )

    async def send_keys_to_tmux(self, name: str, keys: str, *, enter: bool = True) -> None:
        self._check_session_name(name)
        command = ["tmux", "send-keys", "-t", name, keys]
        if enter:
            command.append("Enter")
        result = await self.exec(command)
        if result.returncode != 0:
            raise self._session_not_found(name, result.stderr)

    async def capture_tmux_pane(self, name: str, lines: int = DEFAULT_TMUX_CAPTURE_LINES) -> str:
        """Return the last ``lines`` lines of the session's active pane."""
        self._check_session_name(name)
        if lines <= 0:
            raise ValueError(f"lines must be positive, got {lines}")
        result = await self.exec(["tmux", "capture-pane", "-t", name, "-p", "-S", f"-{lines}"])
        if result.returncode != 0:
            raise self._session_not_found(name, result.stderr)
        return result.stdout
