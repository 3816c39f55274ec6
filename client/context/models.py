"""
Conversation data model.

Responsibilities:
- Message / Session / Talk records and their talk sub-records
- JSON (camelCase) conversion for persistence and the gateway wire format

Non-responsibilities:
- No persistence I/O
- No merge policy (see context.merge)
- No locking (see context.talks)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal


Role = Literal["user", "assistant", "system"]
AgentRole = Literal[
    "analyst", "critic", "strategist", "devils-advocate", "synthesizer", "editor",
]
PlatformPermission = Literal["read", "write", "read+write"]

MESSAGE_ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class AttachmentMeta:
    """Metadata of a file/image attached to a user message (content not kept)."""
    filename: str
    mime_type: str
    width: int = 0
    height: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "mimeType": self.mime_type,
            "width": self.width,
            "height": self.height,
            "sizeBytes": self.size_bytes,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AttachmentMeta:
        return AttachmentMeta(
            filename=str(data.get("filename", "")),
            mime_type=str(data.get("mimeType", "application/octet-stream")),
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
            size_bytes=int(data.get("sizeBytes", 0)),
        )


@dataclass(frozen=True)
class Message:
    """
    Single conversation message.

    Immutable once created; removal happens only through
    TalkStore.delete_messages().
    """
    id: str
    role: Role
    content: str
    timestamp: int
    model: str | None = None
    agent_name: str | None = None
    agent_role: AgentRole | None = None
    attachment: AttachmentMeta | None = None

    @staticmethod
    def create(
        role: Role,
        content: str,
        *,
        model: str | None = None,
        agent_name: str | None = None,
        agent_role: AgentRole | None = None,
        attachment: AttachmentMeta | None = None,
    ) -> Message:
        """Create a Message with a unique id and the current timestamp."""
        return Message(
            id=new_id(),
            role=role,
            content=content,
            timestamp=now_ms(),
            model=model or None,
            agent_name=agent_name or None,
            agent_role=agent_role or None,
            attachment=attachment,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.model:
            out["model"] = self.model
        if self.agent_name:
            out["agentName"] = self.agent_name
        if self.agent_role:
            out["agentRole"] = self.agent_role
        if self.attachment is not None:
            out["attachment"] = self.attachment.to_dict()
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Message:
        role = data.get("role")
        if role not in MESSAGE_ROLES:
            raise ValueError(f"invalid message role: {role!r}")
        attachment = data.get("attachment")
        return Message(
            id=str(data["id"]),
            role=role,
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp", 0)),
            model=data.get("model"),
            agent_name=data.get("agentName"),
            agent_role=data.get("agentRole"),
            attachment=AttachmentMeta.from_dict(attachment) if isinstance(attachment, dict) else None,
        )


@dataclass
class Session:
    """Ordered, append-only message log backing one Talk."""
    id: str
    name: str
    model: str
    messages: list[Message] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Session:
        return Session(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            model=str(data.get("model", "")),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
        )


# =============================================================================
# Talk sub-records
# =============================================================================

@dataclass
class Job:
    """Scheduled background job attached to a talk."""
    id: str
    schedule: str
    prompt: str
    active: bool = True
    created_at: int = field(default_factory=now_ms)
    last_run_at: int | None = None
    last_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "schedule": self.schedule,
            "prompt": self.prompt,
            "active": self.active,
            "createdAt": self.created_at,
        }
        if self.last_run_at is not None:
            out["lastRunAt"] = self.last_run_at
        if self.last_status is not None:
            out["lastStatus"] = self.last_status
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Job:
        return Job(
            id=str(data.get("id") or new_id()),
            schedule=str(data.get("schedule", "")),
            prompt=str(data.get("prompt", "")),
            active=bool(data.get("active", True)),
            created_at=int(data.get("createdAt", 0)),
            last_run_at=data.get("lastRunAt"),
            last_status=data.get("lastStatus"),
        )


@dataclass
class TalkAgent:
    """One participant in a multi-agent talk."""
    name: str
    model: str
    role: AgentRole
    is_primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "role": self.role,
            "isPrimary": self.is_primary,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TalkAgent:
        return TalkAgent(
            name=str(data.get("name", "")),
            model=str(data.get("model", "")),
            role=data.get("role", "analyst"),
            is_primary=bool(data.get("isPrimary", False)),
        )


@dataclass
class Directive:
    """Standing instruction applied to every request of a talk."""
    id: str
    text: str
    active: bool = True
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "active": self.active,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Directive:
        return Directive(
            id=str(data.get("id") or new_id()),
            text=str(data.get("text", "")),
            active=bool(data.get("active", True)),
            created_at=int(data.get("createdAt", 0)),
        )


@dataclass
class PlatformBinding:
    """Binding of a talk to an external platform channel."""
    id: str
    platform: str
    scope: str
    permission: PlatformPermission
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "platform": self.platform,
            "scope": self.scope,
            "permission": self.permission,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PlatformBinding:
        return PlatformBinding(
            id=str(data.get("id") or new_id()),
            platform=str(data.get("platform", "")),
            scope=str(data.get("scope", "")),
            permission=data.get("permission", "read"),
            created_at=int(data.get("createdAt", 0)),
        )


# =============================================================================
# Talk
# =============================================================================

@dataclass
class Talk:
    """
    User-facing saved-conversation record.

    Invariants:
    - id == session_id for talks created locally or imported
    - gateway_talk_id, once set, never reverts to None
    """
    id: str
    session_id: str
    is_saved: bool = False
    topic_title: str | None = None
    model: str | None = None
    objective: str | None = None
    pinned_message_ids: list[str] = field(default_factory=list)
    jobs: list[Job] = field(default_factory=list)
    agents: list[TalkAgent] = field(default_factory=list)
    directives: list[Directive] = field(default_factory=list)
    platform_bindings: list[PlatformBinding] = field(default_factory=list)
    gateway_talk_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def primary_agent(self) -> TalkAgent | None:
        return next((a for a in self.agents if a.is_primary), None)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "isSaved": self.is_saved,
            "pinnedMessageIds": list(self.pinned_message_ids),
            "jobs": [j.to_dict() for j in self.jobs],
            "agents": [a.to_dict() for a in self.agents],
            "directives": [d.to_dict() for d in self.directives],
            "platformBindings": [b.to_dict() for b in self.platform_bindings],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.topic_title is not None:
            out["topicTitle"] = self.topic_title
        if self.model is not None:
            out["model"] = self.model
        if self.objective is not None:
            out["objective"] = self.objective
        if self.gateway_talk_id is not None:
            out["gatewayTalkId"] = self.gateway_talk_id
        return out

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Talk:
        return Talk(
            id=str(data["id"]),
            session_id=str(data.get("sessionId") or data["id"]),
            is_saved=bool(data.get("isSaved", False)),
            topic_title=data.get("topicTitle"),
            model=data.get("model"),
            objective=data.get("objective"),
            pinned_message_ids=[str(p) for p in data.get("pinnedMessageIds") or []],
            jobs=[Job.from_dict(j) for j in data.get("jobs") or []],
            agents=[TalkAgent.from_dict(a) for a in data.get("agents") or []],
            directives=[Directive.from_dict(d) for d in data.get("directives") or []],
            platform_bindings=[
                PlatformBinding.from_dict(b) for b in data.get("platformBindings") or []
            ],
            gateway_talk_id=data.get("gatewayTalkId"),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass(frozen=True)
class SearchResult:
    """One transcript search hit."""
    session_id: str
    session_name: str
    session_updated_at: int
    message: Message
    match_index: int
