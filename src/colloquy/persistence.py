"""SessionStore — save and load session transaction logs at session boundaries."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel, Field

from .transactions import Transaction

logger = logging.getLogger(__name__)

_LAST_SESSION_FILE = "last_session.txt"


class SessionSnapshot(BaseModel):
    """Everything needed to resume a session: its id and transaction log."""

    session_id: str
    transactions: list[Transaction] = Field(default_factory=list)
    saved_at: float = Field(default_factory=time.time)


class SessionStore(ABC):
    """Abstract persistence collaborator."""

    @abstractmethod
    def save(self, snapshot: SessionSnapshot) -> None:
        ...

    @abstractmethod
    def load(self, session_id: str) -> SessionSnapshot | None:
        ...

    @abstractmethod
    def list_sessions(self) -> list[str]:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...


class InMemorySessionStore(SessionStore):
    """Keeps serialised snapshots in a dict. Loads return fresh copies."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, snapshot: SessionSnapshot) -> None:
        self._data[snapshot.session_id] = snapshot.model_dump_json()

    def load(self, session_id: str) -> SessionSnapshot | None:
        raw = self._data.get(session_id)
        return SessionSnapshot.model_validate_json(raw) if raw is not None else None

    def list_sessions(self) -> list[str]:
        return sorted(self._data)

    def delete(self, session_id: str) -> bool:
        return self._data.pop(session_id, None) is not None


class JsonFileSessionStore(SessionStore):
    """One ``<session_id>.json`` file per session plus a ``last_session.txt`` pointer."""

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            msg = f"Invalid session id: {session_id!r}"
            raise ValueError(msg)
        return self._dir / f"{session_id}.json"

    def save(self, snapshot: SessionSnapshot) -> None:
        path = self._path(snapshot.session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        (self._dir / _LAST_SESSION_FILE).write_text(snapshot.session_id, encoding="utf-8")
        logger.info("Saved session %s to %s", snapshot.session_id, path)

    def load(self, session_id: str) -> SessionSnapshot | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        return SessionSnapshot.model_validate_json(path.read_text(encoding="utf-8"))

    def list_sessions(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        if self.last_session_id() == session_id:
            (self._dir / _LAST_SESSION_FILE).unlink()
        return True

    def last_session_id(self) -> str | None:
        """Id of the most recently saved session, if any."""
        pointer = self._dir / _LAST_SESSION_FILE
        if not pointer.exists():
            return None
        session_id = pointer.read_text(encoding="utf-8").strip()
        return session_id or None
