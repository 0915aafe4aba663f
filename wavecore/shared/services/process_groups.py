"""Signal helpers for child processes started in their own session.

Hook commands and background shells are spawned with
``start_new_session=True`` so a signal sent to the process group reaches
every descendant, not only the shell itself.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal

logger = logging.getLogger(__name__)


def signal_process_group(
    proc: asyncio.subprocess.Process,
    sig: signal.Signals,
) -> bool:
    """Send ``sig`` to the process group. False once the process has exited."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


async def _wait_exited(proc: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(proc.wait(), timeout=max(0.0, timeout))
    except asyncio.TimeoutError:
        return False
    return True


async def terminate_process_group(
    proc: asyncio.subprocess.Process,
    grace_seconds: float,
    *,
    label: str = "",
) -> bool:
    """SIGTERM the group, then SIGKILL if it outlives ``grace_seconds``.

    Returns True when a signal was delivered. Nothing is sent after the
    exit of the process has been observed.
    """
    if proc.returncode is not None:
        return False

    term_sent = signal_process_group(proc, signal.SIGTERM)
    logger.info("Sent SIGTERM to process group %s pid=%s sent=%s", label, proc.pid, term_sent)
    if await _wait_exited(proc, grace_seconds):
        return term_sent

    kill_sent = signal_process_group(proc, signal.SIGKILL)
    logger.warning(
        "Process group %s pid=%s still running after SIGTERM; escalated to SIGKILL sent=%s",
        label, proc.pid, kill_sent,
    )
    if not kill_sent and proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
    return term_sent or kill_sent
