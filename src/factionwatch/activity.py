from __future__ import annotations

from typing import Any

from factionwatch.models import ActivityReading
from factionwatch.slots import slot_start


def _last_action(member: Any) -> int:
    if not isinstance(member, dict):
        return 0
    action = member.get("last_action")
    if not isinstance(action, dict):
        return 0
    try:
        return int(action.get("timestamp") or 0)
    except (TypeError, ValueError):
        return 0


def extract_activity(
    payload: dict[str, Any], poll_timestamp: float, window_seconds: int
) -> ActivityReading:
    members = payload.get("members")
    if not isinstance(members, dict):
        members = {}

    threshold = poll_timestamp - window_seconds
    active: list[int] = []
    names: dict[int, str] = {}
    for raw_id, member in members.items():
        try:
            member_id = int(raw_id)
        except (TypeError, ValueError):
            continue
        if isinstance(member, dict) and member.get("name"):
            names[member_id] = str(member["name"])
        if _last_action(member) >= threshold:
            active.append(member_id)

    return ActivityReading(
        faction_name=str(payload.get("name") or ""),
        slot_timestamp=slot_start(poll_timestamp),
        active_member_ids=sorted(active),
        total_count=len(members),
        member_names=names,
    )
