"""
Conversation memory.

Sessions hold root interactions (one per user question) and, under each root, the trace
interactions written while the agent worked on it.  Two implementations are provided:

* :class:`InMemoryConversationMemory` for tests and one-shot runs;
* :class:`JsonlConversationMemory`, a flat-file audit trail.  Every write is appended as one JSON
  line and the file is folded back into memory on first use, so updates never rewrite history.
"""

import asyncio
import json
import logging
import uuid
from abc import (
    ABC,
    abstractmethod,
)
from datetime import (
    datetime,
    timezone,
)
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from pydantic import (
    Field,
    ValidationError,
)

from agentloop.config import settings
from agentloop.core.schema import (
    InteractionRecord,
    Message,
)

logger = logging.getLogger(__name__)


class MemoryPersistenceError(RuntimeError):
    """Raised when conversation memory cannot be read or written."""


class StoredInteraction(InteractionRecord):
    """An :class:`InteractionRecord` as kept by a memory backend."""

    interaction_id: str
    session_id: str
    parent_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationMemory(ABC):
    """Storage of sessions and their interactions."""

    @abstractmethod
    async def create_session(self, title: str | None = None) -> str:
        """Create a session and return its id."""

    @abstractmethod
    async def load_recent_messages(self, session_id: str, limit: int) -> List[Message]:
        """
        Return the last *limit* completed question/response pairs of *session_id*, oldest first.

        Root interactions whose response is still empty are in flight and are skipped.
        """

    @abstractmethod
    async def append_interaction(
        self, session_id: str, parent_id: str | None, record: InteractionRecord
    ) -> str:
        """Store *record* under *parent_id* (a root when *None*) and return its id."""

    @abstractmethod
    async def update_interaction(self, interaction_id: str, fields: Mapping[str, Any]) -> None:
        """Update fields of an existing interaction."""

    @abstractmethod
    async def get_traces(self, parent_id: str) -> List[StoredInteraction]:
        """Return the interactions stored under *parent_id*, ordered by trace number."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------
class InMemoryConversationMemory(ConversationMemory):
    """Dictionary-backed memory, scoped to one process."""

    def __init__(self) -> None:
        self.sessions: Dict[str, str | None] = {}
        self.interactions: Dict[str, StoredInteraction] = {}

    # The _apply_* methods hold the state changes so the JSONL backend can replay them.
    def _apply_session(self, session_id: str, title: str | None) -> None:
        self.sessions[session_id] = title

    def _apply_append(self, stored: StoredInteraction) -> None:
        if stored.session_id not in self.sessions:
            raise MemoryPersistenceError(f"Session '{stored.session_id}' does not exist")
        if stored.parent_id is not None and stored.parent_id not in self.interactions:
            raise MemoryPersistenceError(f"Interaction '{stored.parent_id}' does not exist")
        self.interactions[stored.interaction_id] = stored

    def _apply_update(self, interaction_id: str, fields: Mapping[str, Any]) -> None:
        stored = self.interactions.get(interaction_id)
        if stored is None:
            raise MemoryPersistenceError(f"Interaction '{interaction_id}' does not exist")
        try:
            self.interactions[interaction_id] = StoredInteraction.model_validate(
                {**stored.model_dump(), **fields}
            )
        except ValidationError as exc:
            raise MemoryPersistenceError(f"Invalid update for '{interaction_id}': {exc}") from exc

    async def create_session(self, title: str | None = None) -> str:
        session_id = str(uuid.uuid4())
        self._apply_session(session_id, title)
        return session_id

    async def load_recent_messages(self, session_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        roots = [
            i
            for i in self.interactions.values()
            if i.session_id == session_id and i.parent_id is None and i.response
        ]
        return [Message(question=i.question or "", response=i.response or "") for i in roots][
            -limit:
        ]

    async def append_interaction(
        self, session_id: str, parent_id: str | None, record: InteractionRecord
    ) -> str:
        stored = StoredInteraction(
            **record.model_dump(),
            interaction_id=str(uuid.uuid4()),
            session_id=session_id,
            parent_id=parent_id,
        )
        self._apply_append(stored)
        return stored.interaction_id

    async def update_interaction(self, interaction_id: str, fields: Mapping[str, Any]) -> None:
        self._apply_update(interaction_id, fields)

    async def get_traces(self, parent_id: str) -> List[StoredInteraction]:
        traces = [i for i in self.interactions.values() if i.parent_id == parent_id]
        return sorted(traces, key=lambda i: i.trace_number or 0)


# ---------------------------------------------------------------------------
# JSON-lines backend
# ---------------------------------------------------------------------------
class JsonlConversationMemory(InMemoryConversationMemory):
    """
    Append-only JSON lines file; each line is one ``session``/``append``/``update`` op.

    A write that fails leaves the in-process state as it was, so it never drifts from the file.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        super().__init__()
        self.path = Path(path) if path else Path(settings.DATA_DIR) / "conversations.jsonl"
        self._loaded = False
        self._lock = asyncio.Lock()

    def _read(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                    op = entry["op"]
                    if op == "session":
                        self._apply_session(entry["session_id"], entry.get("title"))
                    elif op == "append":
                        self._apply_append(StoredInteraction.model_validate(entry["interaction"]))
                    elif op == "update":
                        self._apply_update(entry["interaction_id"], entry["fields"])
                    else:
                        logger.warning("%s:%d: unknown op '%s'", self.path, lineno, op)
                except (json.JSONDecodeError, KeyError, ValidationError) as exc:
                    raise MemoryPersistenceError(f"{self.path}:{lineno}: corrupt entry") from exc

    def _write(self, entry: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            await asyncio.to_thread(self._read)
        except OSError as exc:
            raise MemoryPersistenceError(f"Cannot read {self.path}: {exc}") from exc
        self._loaded = True

    async def _persist(self, entry: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write, entry)
        except OSError as exc:
            raise MemoryPersistenceError(f"Cannot write {self.path}: {exc}") from exc

    async def create_session(self, title: str | None = None) -> str:
        async with self._lock:
            await self._ensure_loaded()
            session_id = await super().create_session(title)
            try:
                await self._persist({"op": "session", "session_id": session_id, "title": title})
            except MemoryPersistenceError:
                del self.sessions[session_id]
                raise
        return session_id

    async def load_recent_messages(self, session_id: str, limit: int) -> List[Message]:
        async with self._lock:
            await self._ensure_loaded()
        return await super().load_recent_messages(session_id, limit)

    async def append_interaction(
        self, session_id: str, parent_id: str | None, record: InteractionRecord
    ) -> str:
        async with self._lock:
            await self._ensure_loaded()
            interaction_id = await super().append_interaction(session_id, parent_id, record)
            stored = self.interactions[interaction_id]
            try:
                await self._persist({"op": "append", "interaction": stored.model_dump(mode="json")})
            except MemoryPersistenceError:
                del self.interactions[interaction_id]
                raise
        return interaction_id

    async def update_interaction(self, interaction_id: str, fields: Mapping[str, Any]) -> None:
        async with self._lock:
            await self._ensure_loaded()
            previous = self.interactions.get(interaction_id)
            await super().update_interaction(interaction_id, fields)
            try:
                await self._persist(
                    {"op": "update", "interaction_id": interaction_id, "fields": dict(fields)}
                )
            except MemoryPersistenceError:
                self.interactions[interaction_id] = previous
                raise

    async def get_traces(self, parent_id: str) -> List[StoredInteraction]:
        async with self._lock:
            await self._ensure_loaded()
        return await super().get_traces(parent_id)
