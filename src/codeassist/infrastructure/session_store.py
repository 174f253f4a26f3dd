from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from ..domain.chat_models import (
    ChatMessage,
    ConversationSession,
    MessageMetadata,
    Role,
    SessionContext,
    SessionStats,
)
from ..observability.metrics import observe_persist_failure

logger = logging.getLogger("codeassist.store")

SESSION_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
TITLE_WORDS = 6


class SessionStore(Protocol):
    def create_session(self, title: Optional[str] = None, context: Optional[SessionContext] = None) -> ConversationSession: ...

    def get_current_session(self) -> Optional[ConversationSession]: ...

    def set_current_session(self, session_id: str) -> bool: ...

    def get_session(self, session_id: str) -> Optional[ConversationSession]: ...

    def add_message(self, content: str, role: Role, metadata: Optional[MessageMetadata] = None) -> ChatMessage: ...

    def get_all_sessions(self) -> List[ConversationSession]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def export_session(self, session_id: str, destination: str | Path) -> bool: ...

    def import_session(self, source: str | Path) -> bool: ...

    def clear_all_sessions(self) -> None: ...

    def get_session_stats(self, session_id: str) -> Optional[SessionStats]: ...

    def get_conversation_context(self, max_messages: int = 10) -> str: ...


def default_data_dir() -> Path:
    configured = os.getenv("CODEASSIST_DATA_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".code-assistant" / "conversations"


def atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Write ``payload`` to ``path`` through a sibling temp file and ``os.replace``.

    Either the previous file or the complete new one is visible afterwards.
    The temp file is removed if anything fails before the replace.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=TEMP_SUFFIX)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def derive_title(content: str) -> str:
    words = content.split()
    title = " ".join(words[:TITLE_WORDS])
    if len(words) > TITLE_WORDS:
        title += "..."
    return title


class FileSessionStore:
    """Conversation sessions cached in memory and mirrored to one JSON file each.

    The cache is authoritative for reads. Every mutation rewrites the session's
    file atomically; write failures are logged and swallowed so the
    interactive session can continue on the in-memory copy.
    """

    def __init__(self, data_dir: str | Path | None = None) -> None:
        self._lock = RLock()
        self._dir = Path(data_dir).expanduser() if data_dir else default_data_dir()
        self._sessions: Dict[str, ConversationSession] = {}
        self._current_id: Optional[str] = None
        self._last_id_ms = 0
        self._ensure_dir()
        self._load()

    @property
    def data_dir(self) -> Path:
        return self._dir

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_dir(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("session_dir_unavailable path=%s err=%s", self._dir, exc)

    def _now(self) -> datetime:
        return datetime.now(UTC)

    def _path_for(self, session_id: str) -> Path:
        return self._dir / f"{session_id}{SESSION_SUFFIX}"

    def _new_id(self, prefix: str) -> str:
        # Monotonic millisecond stamp keeps ids ordered even within one ms
        now_ms = max(int(time.time() * 1000), self._last_id_ms + 1)
        self._last_id_ms = now_ms
        return f"{prefix}_{now_ms}_{secrets.token_hex(5)}"

    def _new_session_id(self) -> str:
        sid = self._new_id("session")
        while sid in self._sessions:
            sid = self._new_id("session")
        return sid

    def _discard(self, path: Path, reason: str) -> None:
        logger.warning("session_file_discarded file=%s reason=%s", path.name, reason)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("session_file_remove_failed file=%s err=%s", path.name, exc)

    def _load(self) -> None:
        try:
            entries = sorted(self._dir.iterdir())
        except OSError as exc:
            logger.warning("session_load_failed path=%s err=%s", self._dir, exc)
            return
        for path in entries:
            if path.name.endswith(TEMP_SUFFIX):
                # leftover from an interrupted write; the canonical file is intact
                self._discard(path, "stale temp file")
                continue
            if path.suffix != SESSION_SUFFIX or not path.is_file():
                continue
            session = self._read_session_file(path)
            if session is not None:
                self._sessions[session.id] = session
        logger.debug("sessions_loaded count=%s path=%s", len(self._sessions), self._dir)

    def _read_session_file(self, path: Path) -> Optional[ConversationSession]:
        try:
            if path.stat().st_size == 0:
                self._discard(path, "empty")
                return None
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._discard(path, f"unreadable: {exc}")
            return None
        if not isinstance(data, dict) or not data.get("id") or not isinstance(data.get("messages"), list):
            self._discard(path, "missing id or messages")
            return None
        try:
            return ConversationSession.model_validate(data)
        except ValidationError as exc:
            self._discard(path, f"invalid: {exc.error_count()} errors")
            return None

    def _persist(self, session: ConversationSession) -> bool:
        try:
            atomic_write_json(self._path_for(session.id), session.model_dump(mode="json"))
            return True
        except (OSError, TypeError, ValueError) as exc:
            observe_persist_failure()
            logger.error("session_persist_failed session=%s err=%s", session.id, exc)
            return False

    def _copy(self, session: ConversationSession) -> ConversationSession:
        return session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create_session(
        self,
        title: Optional[str] = None,
        context: Optional[SessionContext] = None,
    ) -> ConversationSession:
        with self._lock:
            now = self._now()
            session = ConversationSession(
                id=self._new_session_id(),
                title=title or f"Session {now.strftime('%Y-%m-%d')}",
                messages=[],
                created_at=now,
                updated_at=now,
                context=context,
                auto_title=not title,
            )
            self._sessions[session.id] = session
            self._current_id = session.id
            self._persist(session)
            return self._copy(session)

    def get_current_session(self) -> Optional[ConversationSession]:
        with self._lock:
            if not self._current_id:
                return None
            session = self._sessions.get(self._current_id)
            return self._copy(session) if session else None

    def set_current_session(self, session_id: str) -> bool:
        with self._lock:
            if session_id not in self._sessions:
                return False
            self._current_id = session_id
            return True

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return self._copy(session) if session else None

    def add_message(
        self,
        content: str,
        role: Role,
        metadata: Optional[MessageMetadata] = None,
    ) -> ChatMessage:
        with self._lock:
            if not self._current_id or self._current_id not in self._sessions:
                self.create_session()
            session = self._sessions[self._current_id]
            now = self._now()
            message = ChatMessage(
                id=self._new_id("msg"),
                role=role,
                content=content,
                timestamp=now,
                metadata=metadata,
            )
            session.messages.append(message)
            session.updated_at = max(now, session.created_at)
            if role == "user" and session.auto_title:
                user_count = sum(1 for m in session.messages if m.role == "user")
                if user_count == 1:
                    session.title = derive_title(content) or session.title
            self._persist(session)
            return message

    def get_all_sessions(self) -> List[ConversationSession]:
        with self._lock:
            sessions = [self._copy(s) for s in self._sessions.values()]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            if session_id not in self._sessions:
                return False
            try:
                self._path_for(session_id).unlink(missing_ok=True)
            except OSError as exc:
                logger.error("session_delete_failed session=%s err=%s", session_id, exc)
                return False
            del self._sessions[session_id]
            if self._current_id == session_id:
                self._current_id = None
            return True

    def export_session(self, session_id: str, destination: str | Path) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return False
            payload = session.model_dump(mode="json")
        try:
            atomic_write_json(Path(destination).expanduser(), payload)
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.error("session_export_failed session=%s dest=%s err=%s", session_id, destination, exc)
            return False

    def import_session(self, source: str | Path) -> bool:
        path = Path(source).expanduser()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = ConversationSession.model_validate(data)
        except (OSError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError
            logger.error("session_import_failed source=%s err=%s", path, exc)
            return False
        with self._lock:
            self._sessions[session.id] = session
            self._persist(session)
        return True

    def clear_all_sessions(self) -> None:
        with self._lock:
            try:
                for path in self._dir.iterdir():
                    if path.suffix == SESSION_SUFFIX or path.name.endswith(TEMP_SUFFIX):
                        path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("session_clear_failed path=%s err=%s", self._dir, exc)
            self._sessions.clear()
            self._current_id = None

    def get_session_stats(self, session_id: str) -> Optional[SessionStats]:
        with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return None
            messages = list(session.messages)
            created_at, updated_at = session.created_at, session.updated_at
        user_messages = sum(1 for m in messages if m.role == "user")
        assistant_messages = sum(1 for m in messages if m.role == "assistant")
        total_tokens = sum((m.metadata.tokens_used or 0) for m in messages if m.metadata)
        return SessionStats(
            total_messages=len(messages),
            user_messages=user_messages,
            assistant_messages=assistant_messages,
            total_tokens=total_tokens,
            duration_ms=int((updated_at - created_at).total_seconds() * 1000),
            created_at=created_at,
            updated_at=updated_at,
        )

    def get_conversation_context(self, max_messages: int = 10) -> str:
        session = self.get_current_session()
        if not session or not session.messages or max_messages <= 0:
            return ""
        lines = []
        for message in session.messages[-max_messages:]:
            speaker = "User" if message.role == "user" else "Assistant"
            lines.append(f"{speaker}: {message.content}")
        return "Previous conversation context:\n" + "\n\n".join(lines) + "\n\n"
