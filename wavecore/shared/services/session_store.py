"""Session persistence: append-only JSONL transcripts.

Storage layout:
    <sessions_dir>/<encoded-workdir>/<session_id>.jsonl
    <sessions_dir>/<encoded-workdir>/subagent/<session_id>.jsonl

The first line of a file is a metadata record (``isMeta: true``); every
following line is one message dict extended with an ISO-8601
``timestamp``. Files are only ever appended to by the MessageState that
owns the session.
"""
from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from wavecore.engine.errors import SessionLoadError
from wavecore.engine.models import Message, Session, SessionType
from wavecore.shared.services.durable_write import _fsync_dir, append_jsonl, read_jsonl

logger = logging.getLogger(__name__)

MAX_SESSION_AGE_DAYS = 30
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def encode_workdir(workdir: str) -> str:
    """Turn an absolute path into a single directory name."""
    encoded = _UNSAFE_PATH_CHARS.sub("-", str(workdir)).strip("-") or "root"
    if len(encoded) > 100:
        digest = hashlib.sha1(str(workdir).encode()).hexdigest()[:10]
        encoded = f"{encoded[-80:]}-{digest}"
    return encoded


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionSummary:
    session_id: str
    workdir: str
    started_at: datetime | None
    last_active_at: datetime | None
    latest_total_tokens: int = 0


class SessionStore:
    """Read and append session transcripts for one working directory."""

    def __init__(self, sessions_dir: Path | str, workdir: str) -> None:
        self._workdir = workdir
        self._dir = Path(sessions_dir) / encode_workdir(workdir)

    @property
    def directory(self) -> Path:
        return self._dir

    def session_path(
        self, session_id: str, session_type: SessionType = SessionType.MAIN,
    ) -> Path:
        if session_type == SessionType.SUBAGENT:
            return self._dir / "subagent" / f"{session_id}.jsonl"
        return self._dir / f"{session_id}.jsonl"

    def append_messages(self, session: Session, messages: Sequence[Message]) -> Path:
        """Append ``messages`` to the session file, creating it if needed.

        A new file starts with the metadata record.
        """
        path = self.session_path(session.session_id, session.session_type)
        records: list[dict] = []
        if not path.exists():
            records.append({
                "isMeta": True,
                "sessionId": session.session_id,
                "sessionType": session.session_type.value,
                "parentSessionId": session.parent_session_id,
                "workdir": session.workdir,
                "startedAt": session.created_at.isoformat(),
            })
        now = datetime.now(timezone.utc).isoformat()
        for message in messages:
            records.append({**message.to_dict(), "timestamp": now})
        written = append_jsonl(path, records)
        logger.info(
            "Session %s: appended %d record(s) to %s",
            session.session_id, written, path,
        )
        return path

    def load_session(
        self, session_id: str, session_type: SessionType = SessionType.MAIN,
    ) -> Session:
        """Load a session. Raises SessionLoadError if missing or corrupt."""
        path = self.session_path(session_id, session_type)
        try:
            records = read_jsonl(path)
        except FileNotFoundError:
            raise SessionLoadError(session_id, f"no session file at {path}") from None
        except (OSError, ValueError) as exc:
            # ValueError covers JSONDecodeError and UnicodeDecodeError.
            raise SessionLoadError(session_id, str(exc)) from exc
        if not records:
            raise SessionLoadError(session_id, "session file is empty")

        meta = records[0] if records[0].get("isMeta") else {}
        message_records = [r for r in records if not r.get("isMeta")]
        try:
            messages = [Message.from_dict(r) for r in message_records]
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionLoadError(session_id, f"malformed message record: {exc}") from exc

        try:
            created_at = (
                _parse_timestamp(meta.get("startedAt"))
                or _parse_timestamp(message_records[0].get("timestamp") if message_records else None)
                or datetime.now(timezone.utc)
            )
            session = Session(
                session_id=meta.get("sessionId") or session_id,
                workdir=meta.get("workdir") or self._workdir,
                session_type=SessionType(meta.get("sessionType") or session_type.value),
                parent_session_id=meta.get("parentSessionId"),
                messages=messages,
                created_at=created_at,
            )
        except (TypeError, ValueError) as exc:
            raise SessionLoadError(session_id, f"malformed metadata record: {exc}") from exc
        logger.info("Session loaded from %s (%d messages)", path, len(messages))
        return session

    def list_sessions_by_mtime(self) -> list[str]:
        """Main session ids, most recently modified first."""
        if not self._dir.is_dir():
            return []
        paths = list(self._dir.glob("*.jsonl"))
        paths.sort(key=lambda p: (p.stat().st_mtime, p.stem), reverse=True)
        return [p.stem for p in paths]

    def latest_session_id(self) -> str | None:
        ids = self.list_sessions_by_mtime()
        return ids[0] if ids else None

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of readable main sessions, most recent first.

        Corrupt files are skipped.
        """
        summaries: list[SessionSummary] = []
        for session_id in self.list_sessions_by_mtime():
            path = self.session_path(session_id)
            try:
                records = read_jsonl(path)
            except (OSError, ValueError):
                logger.warning("Skipping unreadable session file %s", path)
                continue
            messages = [r for r in records if not r.get("isMeta")]
            if not messages:
                continue
            meta = records[0] if records[0].get("isMeta") else {}
            usage = messages[-1].get("usage") or {}
            summaries.append(SessionSummary(
                session_id=session_id,
                workdir=meta.get("workdir") or self._workdir,
                started_at=_parse_timestamp(meta.get("startedAt") or messages[0].get("timestamp")),
                last_active_at=_parse_timestamp(messages[-1].get("timestamp")),
                latest_total_tokens=int(usage.get("total_tokens") or 0),
            ))
        return summaries

    def delete_session(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        _fsync_dir(self._dir)
        logger.info("Session deleted: %s", path)
        return True

    def cleanup_expired_sessions(
        self,
        max_age_days: int = MAX_SESSION_AGE_DAYS,
        now: datetime | None = None,
    ) -> int:
        """Delete sessions whose last activity is older than ``max_age_days``."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
        deleted = 0
        for summary in self.list_sessions():
            if summary.last_active_at is not None and summary.last_active_at < cutoff:
                if self.delete_session(summary.session_id):
                    deleted += 1
        if deleted:
            logger.info("Removed %d expired session(s) from %s", deleted, self._dir)
        return deleted
