"""
Talk/Session store.

Responsibilities:
- Own every Talk and its backing Session (one record per pair)
- Serialize writes per talk id (chat turns and voice share this store)
- Persist the pair on every mutation
- Import gateway snapshots through the gateway-authoritative merge

Non-responsibilities:
- No knowledge of which talk is active in the UI (see ActiveTalk)
- No network I/O

Callers receive deep copies; mutation only happens through store methods.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from context.merge import GatewayTalkSnapshot, merge_gateway_talk
from context.models import (
    AgentRole,
    Directive,
    Job,
    Message,
    PlatformBinding,
    PlatformPermission,
    SearchResult,
    Session,
    Talk,
    TalkAgent,
    new_id,
    now_ms,
)
from context.persistence import TalkRecordStore
from observability.logger import log_event


R = TypeVar("R")


class StoreError(Exception):
    """Base class for store errors."""


class TalkNotFound(StoreError):
    """Raised when a talk id is unknown to the store."""


class TalkStore:
    """
    In-memory talk/session index backed by TalkRecordStore.

    Locking:
    - _index_lock guards the talk/session dictionaries
    - one RLock per talk id serializes mutations of that talk
    """

    def __init__(self, records: TalkRecordStore | None = None) -> None:
        self._records = records
        self._talks: dict[str, Talk] = {}
        self._sessions: dict[str, Session] = {}
        self._index_lock = threading.Lock()
        self._talk_locks: dict[str, threading.RLock] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Load persisted records; returns the number loaded."""
        if self._records is None:
            return 0
        loaded = self._records.load_all()
        with self._index_lock:
            for record in loaded:
                self._talks[record.talk.id] = record.talk
                self._sessions[record.talk.id] = record.session
        log_event({"event_type": "talks_loaded", "count": len(loaded)})
        return len(loaded)

    # ------------------------------------------------------------------
    # Creation / lookup
    # ------------------------------------------------------------------

    def create_talk(self, *, name: str | None = None, model: str = "") -> Talk:
        """Create an unsaved talk together with its session."""
        talk_id = new_id()
        ts = now_ms()
        session = Session(
            id=talk_id,
            name=name or f"Talk {talk_id[:8]}",
            model=model,
            created_at=ts,
            updated_at=ts,
        )
        talk = Talk(
            id=talk_id,
            session_id=talk_id,
            model=model or None,
            created_at=ts,
            updated_at=ts,
        )
        with self._index_lock:
            self._talks[talk_id] = talk
            self._sessions[talk_id] = session
        self._persist(talk_id)
        log_event({"event_type": "talk_created", "talk_id": talk_id})
        return copy.deepcopy(talk)

    def get_talk(self, talk_id: str) -> Talk | None:
        with self._index_lock:
            talk = self._talks.get(talk_id)
            return copy.deepcopy(talk) if talk is not None else None

    def get_session(self, talk_id: str) -> Session | None:
        with self._index_lock:
            session = self._sessions.get(talk_id)
            return copy.deepcopy(session) if session is not None else None

    def find_by_gateway_id(self, gateway_talk_id: str) -> Talk | None:
        with self._index_lock:
            talk = self._lookup_gateway_locked(gateway_talk_id)
            return copy.deepcopy(talk) if talk is not None else None

    def list_talks(self) -> list[Talk]:
        """All talks (saved and unsaved), most recently updated first."""
        with self._index_lock:
            talks = [copy.deepcopy(t) for t in self._talks.values()]
        return sorted(talks, key=lambda t: t.updated_at, reverse=True)

    def list_saved_talks(self) -> list[Talk]:
        return [t for t in self.list_talks() if t.is_saved]

    def delete_talk(self, talk_id: str) -> bool:
        with self._talk_lock(talk_id):
            with self._index_lock:
                if talk_id not in self._talks:
                    return False
                del self._talks[talk_id]
                self._sessions.pop(talk_id, None)
            if self._records is not None:
                self._records.delete(talk_id)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_message(self, talk_id: str, message: Message) -> None:
        """Append a message to the talk's session (never reordered)."""
        def _apply(talk: Talk, session: Session) -> None:
            session.messages.append(message)
            if message.model and message.role == "assistant":
                session.model = message.model

        self._mutate(talk_id, _apply)

    def delete_messages(self, talk_id: str, message_ids: list[str]) -> bool:
        """Delete messages by id; also drops pins on deleted messages."""
        doomed = set(message_ids)

        def _apply(talk: Talk, session: Session) -> bool:
            before = len(session.messages)
            session.messages = [m for m in session.messages if m.id not in doomed]
            talk.pinned_message_ids = [p for p in talk.pinned_message_ids if p not in doomed]
            return len(session.messages) != before

        return self._mutate(talk_id, _apply)

    def rename_session(self, talk_id: str, name: str) -> None:
        def _apply(talk: Talk, session: Session) -> None:
            session.name = name

        self._mutate(talk_id, _apply)

    def search_transcripts(self, query: str) -> list[SearchResult]:
        """Case-insensitive substring search across all sessions."""
        needle = query.lower().strip()
        if not needle:
            return []
        results: list[SearchResult] = []
        with self._index_lock:
            sessions = list(self._sessions.values())
            for session in sessions:
                for message in session.messages:
                    idx = message.content.lower().find(needle)
                    if idx >= 0:
                        results.append(
                            SearchResult(
                                session_id=session.id,
                                session_name=session.name,
                                session_updated_at=session.updated_at,
                                message=message,
                                match_index=idx,
                            )
                        )
        return sorted(results, key=lambda r: r.session_updated_at, reverse=True)

    # ------------------------------------------------------------------
    # Talk metadata
    # ------------------------------------------------------------------

    def save_talk(self, talk_id: str) -> None:
        self._mutate(talk_id, lambda talk, _: setattr(talk, "is_saved", True))

    def unsave_talk(self, talk_id: str) -> None:
        self._mutate(talk_id, lambda talk, _: setattr(talk, "is_saved", False))

    def set_topic_title(self, talk_id: str, title: str) -> None:
        self._mutate(talk_id, lambda talk, _: setattr(talk, "topic_title", title))

    def set_model(self, talk_id: str, model: str) -> None:
        def _apply(talk: Talk, session: Session) -> None:
            talk.model = model
            session.model = model

        self._mutate(talk_id, _apply)

    def set_objective(self, talk_id: str, objective: str | None) -> None:
        self._mutate(talk_id, lambda talk, _: setattr(talk, "objective", objective or None))

    def set_gateway_talk_id(self, talk_id: str, gateway_talk_id: str) -> None:
        """Map a local talk to its gateway talk; the mapping never reverts."""
        if not gateway_talk_id:
            raise ValueError("gateway_talk_id must be non-empty")
        self._mutate(
            talk_id,
            lambda talk, _: setattr(talk, "gateway_talk_id", gateway_talk_id),
            touch=False,
        )

    # --- pins ---------------------------------------------------------

    def add_pin(self, talk_id: str, message_id: str) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if message_id in talk.pinned_message_ids:
                return False
            talk.pinned_message_ids.append(message_id)
            return True

        return self._mutate(talk_id, _apply)

    def remove_pin(self, talk_id: str, message_id: str) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if message_id not in talk.pinned_message_ids:
                return False
            talk.pinned_message_ids.remove(message_id)
            return True

        return self._mutate(talk_id, _apply)

    # --- jobs (1-based indexes) ---------------------------------------

    def add_job(self, talk_id: str, schedule: str, prompt: str) -> Job:
        job = Job(id=new_id(), schedule=schedule, prompt=prompt)

        def _apply(talk: Talk, _: Session) -> Job:
            talk.jobs.append(job)
            return copy.deepcopy(job)

        return self._mutate(talk_id, _apply)

    def set_job_active(self, talk_id: str, index: int, active: bool) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if not 1 <= index <= len(talk.jobs):
                return False
            talk.jobs[index - 1].active = active
            return True

        return self._mutate(talk_id, _apply)

    def delete_job(self, talk_id: str, index: int) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if not 1 <= index <= len(talk.jobs):
                return False
            del talk.jobs[index - 1]
            return True

        return self._mutate(talk_id, _apply)

    # --- agents -------------------------------------------------------

    def add_agent(self, talk_id: str, agent: TalkAgent) -> TalkAgent:
        """Add an agent; a colliding name gets a numeric suffix."""
        def _apply(talk: Talk, _: Session) -> TalkAgent:
            existing = {a.name.lower() for a in talk.agents}
            name = _unique_name(agent.name, existing)
            added = TalkAgent(name=name, model=agent.model, role=agent.role, is_primary=agent.is_primary)
            talk.agents.append(added)
            return copy.deepcopy(added)

        return self._mutate(talk_id, _apply)

    def remove_agent(self, talk_id: str, name: str) -> bool:
        """Remove a non-primary agent (exact or unambiguous prefix match)."""
        def _apply(talk: Talk, _: Session) -> bool:
            agent = _find_agent(talk.agents, name)
            if agent is None or agent.is_primary:
                return False
            talk.agents = [a for a in talk.agents if a is not agent]
            return True

        return self._mutate(talk_id, _apply)

    def set_agents(self, talk_id: str, agents: list[TalkAgent]) -> None:
        self._mutate(talk_id, lambda talk, _: setattr(talk, "agents", list(agents)))

    def change_agent_role(
        self,
        talk_id: str,
        name: str,
        role: AgentRole,
        make_name: Callable[[str, AgentRole], str],
    ) -> TalkAgent | None:
        """Change an agent's role and regenerate its name from (model, role)."""
        def _apply(talk: Talk, _: Session) -> TalkAgent | None:
            agent = _find_agent(talk.agents, name)
            if agent is None:
                return None
            agent.role = role
            others = {a.name.lower() for a in talk.agents if a is not agent}
            agent.name = _unique_name(make_name(agent.model, role), others)
            return copy.deepcopy(agent)

        return self._mutate(talk_id, _apply)

    def find_agent(self, talk_id: str, name: str) -> TalkAgent | None:
        talk = self.get_talk(talk_id)
        if talk is None:
            return None
        return _find_agent(talk.agents, name)

    # --- directives (1-based indexes) ---------------------------------

    def add_directive(self, talk_id: str, text: str) -> Directive:
        directive = Directive(id=new_id(), text=text)

        def _apply(talk: Talk, _: Session) -> Directive:
            talk.directives.append(directive)
            return copy.deepcopy(directive)

        return self._mutate(talk_id, _apply)

    def remove_directive(self, talk_id: str, index: int) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if not 1 <= index <= len(talk.directives):
                return False
            del talk.directives[index - 1]
            return True

        return self._mutate(talk_id, _apply)

    def toggle_directive(self, talk_id: str, index: int) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if not 1 <= index <= len(talk.directives):
                return False
            directive = talk.directives[index - 1]
            directive.active = not directive.active
            return True

        return self._mutate(talk_id, _apply)

    # --- platform bindings (1-based indexes) --------------------------

    def add_platform_binding(
        self,
        talk_id: str,
        platform: str,
        scope: str,
        permission: PlatformPermission,
    ) -> PlatformBinding:
        binding = PlatformBinding(id=new_id(), platform=platform, scope=scope, permission=permission)

        def _apply(talk: Talk, _: Session) -> PlatformBinding:
            talk.platform_bindings.append(binding)
            return copy.deepcopy(binding)

        return self._mutate(talk_id, _apply)

    def remove_platform_binding(self, talk_id: str, index: int) -> bool:
        def _apply(talk: Talk, _: Session) -> bool:
            if not 1 <= index <= len(talk.platform_bindings):
                return False
            del talk.platform_bindings[index - 1]
            return True

        return self._mutate(talk_id, _apply)

    # ------------------------------------------------------------------
    # Gateway import
    # ------------------------------------------------------------------

    def import_gateway_talk(self, snapshot: GatewayTalkSnapshot) -> Talk:
        """
        Merge a gateway snapshot into the store.

        Lookup order: local talk with the same id, then a local talk
        mapped to it via gateway_talk_id. Unknown talks are created as
        saved talks whose session id is the gateway talk id.
        """
        with self._index_lock:
            existing = self._talks.get(snapshot.id) or self._lookup_gateway_locked(snapshot.id)
            key = existing.id if existing is not None else snapshot.id

        with self._talk_lock(key):
            with self._index_lock:
                local = self._talks.get(key)
                merged = merge_gateway_talk(local, snapshot)
                if merged == local:
                    return copy.deepcopy(merged)
                self._talks[key] = merged
                if key not in self._sessions:
                    self._sessions[key] = Session(
                        id=merged.session_id,
                        name=merged.topic_title or f"Talk {key[:8]}",
                        model=merged.model or "",
                        created_at=merged.created_at,
                        updated_at=merged.updated_at,
                    )
            self._persist(key)

        log_event({
            "event_type": "gateway_talk_imported",
            "talk_id": key,
            "gateway_talk_id": snapshot.id,
            "created": local is None,
        })
        return copy.deepcopy(merged)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lookup_gateway_locked(self, gateway_talk_id: str) -> Talk | None:
        for talk in self._talks.values():
            if talk.gateway_talk_id == gateway_talk_id:
                return talk
        return None

    @contextmanager
    def _talk_lock(self, talk_id: str) -> Iterator[None]:
        with self._index_lock:
            lock = self._talk_locks.setdefault(talk_id, threading.RLock())
        with lock:
            yield

    def _mutate(
        self,
        talk_id: str,
        apply: Callable[[Talk, Session], R],
        *,
        touch: bool = True,
    ) -> R:
        """
        Apply a mutation under the talk's lock, bump timestamps, persist.

        Raises:
            TalkNotFound if the talk id is unknown.
        """
        with self._talk_lock(talk_id):
            with self._index_lock:
                talk = self._talks.get(talk_id)
                session = self._sessions.get(talk_id)
            if talk is None or session is None:
                raise TalkNotFound(talk_id)

            result = apply(talk, session)

            if touch:
                ts = now_ms()
                talk.updated_at = ts
                session.updated_at = ts
            self._persist(talk_id)
        return result

    def _persist(self, talk_id: str) -> None:
        if self._records is None:
            return
        with self._index_lock:
            talk = self._talks.get(talk_id)
            session = self._sessions.get(talk_id)
            if talk is None or session is None:
                return
            talk_snapshot = copy.deepcopy(talk)
            session_snapshot = copy.deepcopy(session)
        try:
            self._records.write(talk_snapshot, session_snapshot)
        except (OSError, ValueError) as exc:
            log_event({
                "event_type": "talk_persist_failed",
                "talk_id": talk_id,
                "error": f"{type(exc).__name__}: {exc}",
            })


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _unique_name(name: str, taken: set[str]) -> str:
    if name.lower() not in taken:
        return name
    suffix = 2
    while f"{name} {suffix}".lower() in taken:
        suffix += 1
    return f"{name} {suffix}"


def _find_agent(agents: list[TalkAgent], name: str) -> TalkAgent | None:
    """Exact (case-insensitive) match first, then unambiguous prefix match."""
    lower = name.lower()
    for agent in agents:
        if agent.name.lower() == lower:
            return agent
    prefix = [a for a in agents if a.name.lower().startswith(lower)]
    if len(prefix) == 1:
        return prefix[0]
    return None


class ActiveTalk:
    """
    Holder for the talk currently shown to the user.

    Turns and voice sessions capture the active id when they start and
    compare against it later; they never hold a reference to this object's
    value across a suspension point.
    """

    def __init__(self, talk_id: str | None = None) -> None:
        self._lock = threading.Lock()
        self._talk_id = talk_id

    def get(self) -> str | None:
        with self._lock:
            return self._talk_id

    def set(self, talk_id: str | None) -> None:
        with self._lock:
            self._talk_id = talk_id

    def is_active(self, talk_id: str) -> bool:
        with self._lock:
            return self._talk_id == talk_id
