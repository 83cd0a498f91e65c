# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

from __future__ import annotations

import logging
import shlex
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kubesandbox._defaults import DEFAULT_TMUX_CAPTURE_LINES
from kubesandbox.exceptions import ErrorKind, ExecError, PodNotFoundError, TmuxError

if TYPE_CHECKING:
    from kubesandbox._provider import SandboxProvider
    from kubesandbox._sandbox import Sandbox
    from kubesandbox._types import TmuxSession

logger = logging.getLogger(__name__)


def session_name_for_task(task_id: str) -> str:
    return f"agent-{task_id}"


@dataclass(frozen=True)
class _TrackedSession:
    sandbox_id: str
    session: TmuxSession


class TmuxManager:
    """Per-task tmux sessions across a provider's sandboxes.

    Each agent task gets its own session (``agent-{task_id}``) so several
    tasks can run side by side in one sandbox container.
    """

    def __init__(self, provider: SandboxProvider) -> None:
        self._provider = provider
        self._sessions: dict[str, _TrackedSession] = {}

    def _resolve_sandbox(
        self, *, sandbox_id: str | None = None, project_id: str | None = None
    ) -> Sandbox:
        sandbox = None
        if sandbox_id is not None:
            sandbox = self._provider.get_by_id(sandbox_id)
        elif project_id is not None:
            sandbox = self._provider.get(project_id)
        if sandbox is None:
            raise PodNotFoundError(
                "No sandbox found for tmux session",
                context={"sandbox_id": sandbox_id, "project_id": project_id},
            )
        return sandbox

    def _tracked_sandbox(self, session_name: str) -> Sandbox:
        tracked = self._sessions.get(session_name)
        if tracked is None:
            raise TmuxError(
                f"tmux session '{session_name}' is not tracked",
                kind=ErrorKind.TMUX_SESSION_NOT_FOUND,
                context={"session_name": session_name},
            )
        sandbox = self._provider.get_by_id(tracked.sandbox_id)
        if sandbox is None:
            del self._sessions[session_name]
            raise PodNotFoundError(
                f"Sandbox {tracked.sandbox_id} for session '{session_name}' no longer exists",
                context={"sandbox_id": tracked.sandbox_id, "session_name": session_name},
            )
        return sandbox

    async def create_session(
        self,
        *,
        sandbox_id: str | None = None,
        project_id: str | None = None,
        task_id: str | None = None,
        session_name: str | None = None,
        initial_command: str | None = None,
        working_directory: str | None = None,
    ) -> TmuxSession:
        """Create a session in the sandbox picked by id or project.

        The name defaults to ``agent-{task_id}`` (a random suffix without a
        task id).
        """
        sandbox = self._resolve_sandbox(sandbox_id=sandbox_id, project_id=project_id)
        name = session_name or session_name_for_task(task_id or uuid.uuid4().hex[:8])

        session = await sandbox.create_tmux_session(name)
        if working_directory:
            await sandbox.send_keys_to_tmux(name, f"cd {shlex.quote(working_directory)}")
        if initial_command:
            await sandbox.send_keys_to_tmux(name, initial_command)

        self._sessions[name] = _TrackedSession(sandbox_id=sandbox.id, session=session)
        logger.debug("Tracking tmux session %s in sandbox %s", name, sandbox.id)
        return session

    async def get_session(self, session_name: str) -> TmuxSession | None:
        tracked = self._sessions.get(session_name)
        if tracked is None:
            return None
        sandbox = self._provider.get_by_id(tracked.sandbox_id)
        if sandbox is None:
            del self._sessions[session_name]
            return None
        for session in await sandbox.list_tmux_sessions():
            if session.name == session_name:
                return session
        return None

    async def list_sessions(self, sandbox_id: str) -> list[TmuxSession]:
        return await self._resolve_sandbox(sandbox_id=sandbox_id).list_tmux_sessions()

    async def send_command(self, session_name: str, command: str) -> None:
        await self._tracked_sandbox(session_name).send_keys_to_tmux(session_name, command)

    async def capture_output(
        self, session_name: str, lines: int = DEFAULT_TMUX_CAPTURE_LINES
    ) -> str:
        return await self._tracked_sandbox(session_name).capture_tmux_pane(session_name, lines)

    async def kill_session(self, session_name: str) -> None:
        """Kill a tracked session. Untracked or already-gone sessions are ignored."""
        tracked = self._sessions.get(session_name)
        if tracked is None:
            return
        sandbox = self._provider.get_by_id(tracked.sandbox_id)
        if sandbox is not None:
            await sandbox.kill_tmux_session(session_name)
        self._sessions.pop(session_name, None)

    async def kill_all_sessions(self, sandbox_id: str) -> int:
        """Kill every session in a sandbox.

        Returns:
            Number of sessions killed. Individual failures are logged and skipped.
        """
        sandbox = self._resolve_sandbox(sandbox_id=sandbox_id)
        killed = 0
        for session in await sandbox.list_tmux_sessions():
            try:
                await sandbox.kill_tmux_session(session.name)
            except ExecError as e:
                logger.warning("Failed to kill tmux session %s: %s", session.name, e)
                continue
            self._sessions.pop(session.name, None)
            killed += 1
        return killed
