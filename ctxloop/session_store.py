"""Session-scoped persistence for thinned payloads, fragments, TODOs and errors.

Layout of :class:`FileSessionStore` under its root directory::

    <root>/sessions/<session_id>/session.json
    <root>/sessions/<session_id>/thinned/<name>
    <root>/sessions/<session_id>/fragments/fragment_<id>.json
    <root>/sessions/<session_id>/todo.md
    <root>/sessions/<session_id>/errors.jsonl
    <root>/errors/<name>.json
"""

import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger

_log = get_logger(__name__)

__all__ = [
    "SessionStore", "FileSessionStore", "MemorySessionStore",
    "generate_session_id", "list_sessions",
]

DEFAULT_ROOT = ".ctxloop"


def generate_session_id(description: str, now: Optional[float] = None) -> str:
    """Readable id: first five words of the description plus a short hash."""
    words = re.findall(r"[A-Za-z0-9]+", description.lower())[:5]
    stamp = time.time() if now is None else now
    digest = hashlib.sha256(f"{description}:{stamp}".encode("utf-8")).hexdigest()[:8]
    prefix = "_".join(words) or "session"
    return f"{prefix}_{digest}"


class SessionStore:
    """Persistence capability for one session. Subclasses decide the medium."""

    session_id: str

    def save_thinned(self, name: str, text: str) -> str:
        raise NotImplementedError

    def read_thinned(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def save_fragment(self, fragment_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def load_fragment(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list_fragment_ids(self) -> List[str]:
        raise NotImplementedError

    def save_session(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def load_session(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def read_todo(self) -> Optional[str]:
        raise NotImplementedError

    def write_todo(self, text: str) -> None:
        raise NotImplementedError

    def record_error(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    def save_error_context(self, name: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError


class FileSessionStore(SessionStore):
    def __init__(self, session_id: str, root: str = DEFAULT_ROOT):
        self.session_id = session_id
        self.root = Path(root)
        self.session_dir = self.root / "sessions" / session_id
        self.thinned_dir = self.session_dir / "thinned"
        self.fragments_dir = self.session_dir / "fragments"
        self.errors_dir = self.root / "errors"

    @property
    def session_file(self) -> Path:
        return self.session_dir / "session.json"

    @property
    def todo_file(self) -> Path:
        return self.session_dir / "todo.md"

    def save_thinned(self, name: str, text: str) -> str:
        self.thinned_dir.mkdir(parents=True, exist_ok=True)
        path = self.thinned_dir / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    def read_thinned(self, path: str) -> Optional[str]:
        p = Path(path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8")

    def save_fragment(self, fragment_id: str, data: Dict[str, Any]) -> None:
        self.fragments_dir.mkdir(parents=True, exist_ok=True)
        path = self.fragments_dir / f"fragment_{fragment_id}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        _log.debug("Saved fragment %s to %s", fragment_id, path)

    def load_fragment(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        path = self.fragments_dir / f"fragment_{fragment_id}.json"
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            _log.warning("Unreadable fragment %s: %s", fragment_id, e)
            return None

    def list_fragment_ids(self) -> List[str]:
        if not self.fragments_dir.is_dir():
            return []
        files = sorted(self.fragments_dir.glob("fragment_*.json"), key=lambda p: p.stat().st_mtime)
        return [p.stem[len("fragment_"):] for p in files]

    def save_session(self, data: Dict[str, Any]) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        with open(self.session_file, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

    def load_session(self) -> Optional[Dict[str, Any]]:
        if not self.session_file.is_file():
            return None
        try:
            with open(self.session_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            _log.warning("Unreadable session file %s: %s", self.session_file, e)
            return None

    def read_todo(self) -> Optional[str]:
        if not self.todo_file.is_file():
            return None
        return self.todo_file.read_text(encoding="utf-8")

    def write_todo(self, text: str) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.todo_file.write_text(text, encoding="utf-8")

    def record_error(self, entry: Dict[str, Any]) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        with open(self.session_dir / "errors.jsonl", "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def save_error_context(self, name: str, data: Dict[str, Any]) -> str:
        self.errors_dir.mkdir(parents=True, exist_ok=True)
        path = self.errors_dir / f"{name}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        return str(path)


class MemorySessionStore(SessionStore):
    """In-process store for tests and ephemeral sessions."""

    def __init__(self, session_id: str = "memory"):
        self.session_id = session_id
        self.thinned: Dict[str, str] = {}
        self.fragments: Dict[str, Dict[str, Any]] = {}
        self.session: Optional[Dict[str, Any]] = None
        self.todo: Optional[str] = None
        self.errors: List[Dict[str, Any]] = []
        self.error_contexts: Dict[str, Dict[str, Any]] = {}

    def save_thinned(self, name: str, text: str) -> str:
        path = f"memory://{self.session_id}/thinned/{name}"
        self.thinned[path] = text
        return path

    def read_thinned(self, path: str) -> Optional[str]:
        return self.thinned.get(path)

    def save_fragment(self, fragment_id: str, data: Dict[str, Any]) -> None:
        self.fragments[fragment_id] = json.loads(json.dumps(data))

    def load_fragment(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        data = self.fragments.get(fragment_id)
        return json.loads(json.dumps(data)) if data is not None else None

    def list_fragment_ids(self) -> List[str]:
        return list(self.fragments)

    def save_session(self, data: Dict[str, Any]) -> None:
        self.session = json.loads(json.dumps(data))

    def load_session(self) -> Optional[Dict[str, Any]]:
        return self.session

    def read_todo(self) -> Optional[str]:
        return self.todo

    def write_todo(self, text: str) -> None:
        self.todo = text

    def record_error(self, entry: Dict[str, Any]) -> None:
        self.errors.append(dict(entry))

    def save_error_context(self, name: str, data: Dict[str, Any]) -> str:
        self.error_contexts[name] = dict(data)
        return f"memory://errors/{name}.json"


def list_sessions(root: str = DEFAULT_ROOT, limit: int = 20) -> List[Dict[str, Any]]:
    """Recent sessions under ``root``, newest first."""
    sessions_dir = Path(root) / "sessions"
    if not sessions_dir.is_dir():
        return []

    results = []
    candidates = [p for p in sessions_dir.iterdir() if (p / "session.json").is_file()]
    for path in sorted(candidates, key=lambda p: (p / "session.json").stat().st_mtime,
                       reverse=True)[:limit]:
        try:
            with open(path / "session.json", "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            continue
        window = data.get("context_window", {})
        results.append({
            "session_id": data.get("session_id", path.name),
            "timestamp": data.get("timestamp", 0),
            "status": data.get("status", "unknown"),
            "percentage_used": window.get("percentage_used", 0.0),
            "message_count": len(window.get("conversation_history", [])),
        })
    return results
