"""Session state and persistence: history, compaction tracking id, approvals."""

import json
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import CONFIG_DIR
from .logger import get_logger
from .messages import Message
from .permissions import SessionPermissionMemory

_log = get_logger(__name__)

SESSIONS_DIR = CONFIG_DIR / "sessions"
SESSION_FORMAT_VERSION = 1


class Session:
    """One conversation's live state.

    The message list is replaced wholesale by compaction and otherwise only
    grows. Approvals given with "always" live in :attr:`permissions` and are
    never written to disk.
    """

    def __init__(self, session_id: Optional[str] = None,
                 messages: Optional[List[Message]] = None,
                 last_compacted_id: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 created_at: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self._messages: List[Message] = list(messages or [])
        self.last_compacted_id = last_compacted_id
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.created_at = created_at or time.strftime("%Y-%m-%d %H:%M:%S")
        self.permissions = SessionPermissionMemory()
        self._lock = threading.Lock()

    @property
    def messages(self) -> List[Message]:
        """Snapshot of the history; mutate through append/replace."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, *messages: Message):
        with self._lock:
            self._messages.extend(messages)

    def replace(self, messages: List[Message], last_compacted_id: Optional[str] = None):
        """Swap in a new history, e.g. after compaction."""
        with self._lock:
            self._messages = list(messages)
            if last_compacted_id is not None:
                self.last_compacted_id = last_compacted_id

    def reset(self):
        with self._lock:
            self._messages = []
            self.last_compacted_id = None
        self.permissions.clear()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SESSION_FORMAT_VERSION,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "updated_at": time.strftime("%Y-%m-%d %H:%M:%S"),
            "last_compacted_id": self.last_compacted_id,
            "metadata": self.metadata,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data.get("session_id"),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            last_compacted_id=data.get("last_compacted_id"),
            metadata=data.get("metadata") or {},
            created_at=data.get("created_at"),
        )

    def save(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
        tmp.replace(target)
        return target

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Session":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def _ensure_sessions_dir():
    """Ensure sessions directory exists."""
    SESSIONS_DIR.mkdir(parents=True, exist_ok=True)


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)


def session_path(name: str) -> Path:
    return SESSIONS_DIR / f"{_safe_name(name)}.json"


def save_session(session: Session, name: Optional[str] = None) -> str:
    """Save ``session`` under ``name`` (its id by default).

    Returns:
        Session filename
    """
    _ensure_sessions_dir()
    path = session_path(name or session.session_id)
    session.save(path)
    return path.name


def _find_session_file(name: str) -> Optional[Path]:
    filepath = SESSIONS_DIR / name
    if filepath.is_file():
        return filepath
    filepath = SESSIONS_DIR / f"{name}.json"
    if filepath.is_file():
        return filepath
    for f in SESSIONS_DIR.glob("*.json"):
        if f.stem.startswith(name):
            return f
    return None


def load_session(name: str) -> Optional[Session]:
    """Load a session by name, filename or name prefix.

    Returns:
        The session, or None if not found or unreadable
    """
    _ensure_sessions_dir()
    filepath = _find_session_file(name)
    if filepath is None:
        return None
    try:
        return Session.load(filepath)
    except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
        _log.warning("Cannot load session %s: %s", filepath.name, e)
        return None


def list_sessions(limit: int = 10) -> List[Dict[str, Any]]:
    """List recent sessions, newest first.

    Returns:
        List of session summaries (filename, session_id, updated_at, messages)
    """
    _ensure_sessions_dir()

    sessions = []
    for filepath in sorted(SESSIONS_DIR.glob("*.json"),
                           key=lambda p: p.stat().st_mtime,
                           reverse=True)[:limit]:
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError):
            continue
        sessions.append({
            "filename": filepath.name,
            "session_id": data.get("session_id", filepath.stem),
            "updated_at": data.get("updated_at", "unknown"),
            "messages": len(data.get("messages", [])),
        })
    return sessions


def delete_session(name: str) -> bool:
    """Delete a session by name or filename."""
    _ensure_sessions_dir()

    filepath = SESSIONS_DIR / name
    if not filepath.is_file():
        filepath = SESSIONS_DIR / f"{name}.json"

    if filepath.is_file():
        filepath.unlink()
        return True
    return False
