"""
Gateway-authoritative talk merge.

Rules:
- Pure: (local talk | None, gateway snapshot) -> merged talk
- A gateway field wins only when present and non-empty
  (None, "" and [] never erase a populated local field)
- updated_at takes the gateway value whenever the gateway sends one
- gateway_talk_id becomes the snapshot id and never reverts
- session_id, created_at and is_saved of an existing talk stay local
- Applying the same snapshot twice is a no-op
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, TypeVar

from context.models import Directive, Job, PlatformBinding, Talk, TalkAgent, now_ms


T = TypeVar("T")


class SnapshotError(ValueError):
    """Raised when a gateway talk payload cannot be validated."""


@dataclass(frozen=True)
class GatewayTalkSnapshot:
    """
    Gateway view of one talk, validated at the boundary.

    Absent fields are None (not empty), so the merge can tell
    "gateway did not say" apart from "gateway said nothing".
    """
    id: str
    created_at: int | None
    updated_at: int | None
    topic_title: str | None = None
    objective: str | None = None
    model: str | None = None
    pinned_message_ids: tuple[str, ...] | None = None
    jobs: tuple[Job, ...] | None = None
    agents: tuple[TalkAgent, ...] | None = None
    directives: tuple[Directive, ...] | None = None
    platform_bindings: tuple[PlatformBinding, ...] | None = None

    @staticmethod
    def from_wire(data: Any) -> GatewayTalkSnapshot:
        """
        Validate loosely-typed gateway JSON.

        Raises:
            SnapshotError on a missing id or non-object payload.
        """
        if not isinstance(data, dict):
            raise SnapshotError("talk snapshot must be a JSON object")
        talk_id = data.get("id")
        if not isinstance(talk_id, str) or not talk_id:
            raise SnapshotError("talk snapshot is missing 'id'")

        def _str(key: str) -> str | None:
            value = data.get(key)
            return value if isinstance(value, str) else None

        def _list(key: str, parse: Any) -> tuple[Any, ...] | None:
            value = data.get(key)
            if not isinstance(value, list):
                return None
            return tuple(parse(v) for v in value if isinstance(v, dict))

        pins = data.get("pinnedMessageIds")
        return GatewayTalkSnapshot(
            id=talk_id,
            created_at=_int(data.get("createdAt")),
            updated_at=_int(data.get("updatedAt")),
            topic_title=_str("topicTitle"),
            objective=_str("objective"),
            model=_str("model"),
            pinned_message_ids=(
                tuple(str(p) for p in pins) if isinstance(pins, list) else None
            ),
            jobs=_list("jobs", Job.from_dict),
            agents=_list("agents", TalkAgent.from_dict),
            directives=_list("directives", Directive.from_dict),
            platform_bindings=_list("platformBindings", PlatformBinding.from_dict),
        )


def _int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _pick_str(gateway: str | None, local: str | None) -> str | None:
    return gateway if gateway else local


def _pick_list(gateway: tuple[T, ...] | None, local: list[T]) -> list[T]:
    return list(gateway) if gateway else local


def merge_gateway_talk(local: Talk | None, snapshot: GatewayTalkSnapshot) -> Talk:
    """
    Merge a gateway snapshot into a local talk.

    With no local talk, a new saved talk backed by the gateway talk is
    created (session_id == gateway_talk_id == snapshot.id).
    """
    if local is None:
        created_at = snapshot.created_at if snapshot.created_at is not None else now_ms()
        return Talk(
            id=snapshot.id,
            session_id=snapshot.id,
            is_saved=True,
            topic_title=snapshot.topic_title or None,
            model=snapshot.model or None,
            objective=snapshot.objective or None,
            pinned_message_ids=list(snapshot.pinned_message_ids or ()),
            jobs=list(snapshot.jobs or ()),
            agents=list(snapshot.agents or ()),
            directives=list(snapshot.directives or ()),
            platform_bindings=list(snapshot.platform_bindings or ()),
            gateway_talk_id=snapshot.id,
            created_at=created_at,
            updated_at=snapshot.updated_at if snapshot.updated_at is not None else created_at,
        )

    return replace(
        local,
        topic_title=_pick_str(snapshot.topic_title, local.topic_title),
        objective=_pick_str(snapshot.objective, local.objective),
        model=_pick_str(snapshot.model, local.model),
        pinned_message_ids=_pick_list(snapshot.pinned_message_ids, local.pinned_message_ids),
        jobs=_pick_list(snapshot.jobs, local.jobs),
        agents=_pick_list(snapshot.agents, local.agents),
        directives=_pick_list(snapshot.directives, local.directives),
        platform_bindings=_pick_list(snapshot.platform_bindings, local.platform_bindings),
        gateway_talk_id=snapshot.id,
        updated_at=snapshot.updated_at if snapshot.updated_at is not None else local.updated_at,
    )
