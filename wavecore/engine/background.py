"""Background shell registry.

The registry is the only holder of background process handles. Shells run
in their own session, so termination signals reach the whole process
group. Output is buffered in memory and read without blocking.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from wavecore.shared.services.process_groups import terminate_process_group

from .models import BackgroundTask, BackgroundTaskStatus, BackgroundTaskType

logger = logging.getLogger(__name__)

ShellsChangeCallback = Callable[[list[BackgroundTask]], None]


@dataclass
class _ShellHandle:
    proc: asyncio.subprocess.Process
    started: float
    watcher: asyncio.Task | None = None
    timer: asyncio.TimerHandle | None = None
    readers: list[asyncio.Task] = field(default_factory=list)


def filter_lines(text: str, pattern: str | None) -> str:
    """Keep lines matching ``pattern``. An invalid regex leaves ``text`` as is."""
    if not pattern:
        return text
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        logger.warning("Ignoring invalid output filter %r: %s", pattern, exc)
        return text
    return "\n".join(line for line in text.split("\n") if regex.search(line))


class BackgroundProcessRegistry:
    """Start, observe and terminate background shell commands."""

    def __init__(
        self,
        workdir: str,
        *,
        kill_grace_seconds: float = 1.0,
        on_shells_change: ShellsChangeCallback | None = None,
    ) -> None:
        self._workdir = workdir
        self._kill_grace = kill_grace_seconds
        self._on_change = on_shells_change
        self._tasks: dict[str, BackgroundTask] = {}
        self._handles: dict[str, _ShellHandle] = {}
        self._pending_kills: set[asyncio.Task] = set()
        self._next_id = 1

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.list_shells())
        except Exception:
            logger.debug("on_shells_change callback failed", exc_info=True)

    async def start_shell(self, command: str, timeout: float | None = None) -> str:
        """Spawn ``command`` and return its id (``bash_<n>``).

        A spawn failure is recorded on the task as ``failed``, never raised.
        ``timeout`` is in seconds; the shell is killed when it elapses.
        """
        shell_id = f"bash_{self._next_id}"
        self._next_id += 1
        task = BackgroundTask(id=shell_id, command=command, type=BackgroundTaskType.SHELL)
        self._tasks[shell_id] = task
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._workdir,
                start_new_session=True,
                executable=shutil.which("bash") or None,
            )
        except OSError as exc:
            logger.error("Background shell %s failed to start: %s", shell_id, exc)
            task.status = BackgroundTaskStatus.FAILED
            task.stderr = f"Process error: {exc}"
            task.exit_code = 1
            task.runtime_seconds = time.monotonic() - started
            self._notify()
            return shell_id

        handle = _ShellHandle(proc=proc, started=started)
        handle.readers = [
            asyncio.create_task(self._pump(task, proc.stdout, "stdout")),
            asyncio.create_task(self._pump(task, proc.stderr, "stderr")),
        ]
        handle.watcher = asyncio.create_task(self._watch(task, handle))
        if timeout and timeout > 0:
            handle.timer = asyncio.get_running_loop().call_later(
                timeout, self._kill_on_timeout, shell_id,
            )
        self._handles[shell_id] = handle
        logger.info("Background shell %s started pid=%s: %s", shell_id, proc.pid, command)
        self._notify()
        return shell_id

    async def _pump(
        self, task: BackgroundTask, stream: asyncio.StreamReader | None, name: str,
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            setattr(task, name, getattr(task, name) + text)
            self._notify()

    async def _watch(self, task: BackgroundTask, handle: _ShellHandle) -> None:
        exit_code = await handle.proc.wait()
        await asyncio.gather(*handle.readers, return_exceptions=True)
        if handle.timer is not None:
            handle.timer.cancel()
        task.exit_code = exit_code
        task.runtime_seconds = time.monotonic() - handle.started
        if task.status == BackgroundTaskStatus.RUNNING:
            task.status = (
                BackgroundTaskStatus.COMPLETED if exit_code == 0 else BackgroundTaskStatus.FAILED
            )
        logger.info(
            "Background shell %s finished status=%s exit_code=%s",
            task.id, task.status.value, exit_code,
        )
        self._notify()

    def _kill_on_timeout(self, shell_id: str) -> None:
        logger.warning("Background shell %s timed out; killing", shell_id)
        kill = asyncio.create_task(self.kill_shell(shell_id))
        self._pending_kills.add(kill)
        kill.add_done_callback(self._pending_kills.discard)

    def get_shell(self, shell_id: str) -> BackgroundTask | None:
        return self._tasks.get(shell_id)

    def list_shells(self) -> list[BackgroundTask]:
        return list(self._tasks.values())

    def get_output(self, shell_id: str, filter: str | None = None) -> dict[str, str] | None:
        """Buffered output so far, optionally filtered by a line regex."""
        task = self._tasks.get(shell_id)
        if task is None:
            return None
        return {
            "stdout": filter_lines(task.stdout, filter),
            "stderr": filter_lines(task.stderr, filter),
            "status": task.status.value,
        }

    async def kill_shell(self, shell_id: str) -> bool:
        """Terminate a running shell's process group.

        SIGTERM first, SIGKILL after the grace period. Returns False if the
        shell is unknown or no longer running.
        """
        task = self._tasks.get(shell_id)
        handle = self._handles.get(shell_id)
        if task is None or handle is None or task.status != BackgroundTaskStatus.RUNNING:
            return False

        task.status = BackgroundTaskStatus.KILLED
        if handle.timer is not None:
            handle.timer.cancel()
        await terminate_process_group(handle.proc, self._kill_grace, label=shell_id)
        if handle.watcher is not None:
            await asyncio.gather(handle.watcher, return_exceptions=True)
        task.runtime_seconds = time.monotonic() - handle.started
        logger.info("Background shell %s killed", shell_id)
        self._notify()
        return True

    async def wait(self, shell_id: str, timeout: float | None = None) -> BackgroundTask | None:
        """Wait for a shell to finish. Mostly useful to callers that poll less."""
        handle = self._handles.get(shell_id)
        if handle is not None and handle.watcher is not None:
            await asyncio.wait_for(asyncio.shield(handle.watcher), timeout=timeout)
        return self._tasks.get(shell_id)

    async def cleanup(self) -> None:
        """Kill every running shell."""
        running = [
            sid for sid, task in self._tasks.items()
            if task.status == BackgroundTaskStatus.RUNNING
        ]
        for shell_id in running:
            await self.kill_shell(shell_id)
        if running:
            logger.info("Killed %d background shell(s) on cleanup", len(running))
