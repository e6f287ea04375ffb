"""Row mapping shared by the store implementations.

Rows use snake_case columns; graphs are stored as camelCase JSON and
re-normalised when read back. ``build_store`` picks the implementation once
at startup.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from src.core.config import Settings
from src.flow.models import (
    ConversationEvent,
    ConversationMap,
    ConversationSession,
    Intent,
    MapStatus,
    SessionState,
    create_id,
    utc_now,
)
from src.flow.normalizer import normalize_graph
from src.flow.store import ConversationStore

DEFAULT_EVENT_LIMIT = 200
MAX_EVENT_LIMIT = 1000


def clamp_event_limit(limit: Any) -> int:
    try:
        value = int(limit or DEFAULT_EVENT_LIMIT)
    except (TypeError, ValueError):
        value = DEFAULT_EVENT_LIMIT
    return max(1, min(MAX_EVENT_LIMIT, value))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a stored timestamp, treating naive values as UTC."""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_value(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _enum_value(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value or 0)))
    except (TypeError, ValueError):
        return 0.0


def map_to_row(conversation_map: ConversationMap) -> dict:
    return {
        "id": conversation_map.id,
        "brand_id": conversation_map.brand_id,
        "campaign_id": conversation_map.campaign_id,
        "experiment_id": conversation_map.experiment_id,
        "name": conversation_map.name,
        "status": conversation_map.status.value,
        "draft_graph": conversation_map.draft_graph.to_json(),
        "published_graph": (
            conversation_map.published_graph.to_json() if conversation_map.published_graph else None
        ),
        "published_revision": conversation_map.published_revision,
        "published_at": to_iso(conversation_map.published_at),
        "created_at": to_iso(conversation_map.created_at),
        "updated_at": to_iso(conversation_map.updated_at),
    }


def map_from_row(row: dict) -> ConversationMap:
    now = utc_now()
    published_raw = _json_value(row.get("published_graph"))
    return ConversationMap(
        id=str(row.get("id") or create_id("flow")),
        brand_id=str(row.get("brand_id") or ""),
        campaign_id=str(row.get("campaign_id") or ""),
        experiment_id=str(row.get("experiment_id") or ""),
        name=str(row.get("name") or "Variant Conversation Flow"),
        status=_enum_value(MapStatus, row.get("status"), MapStatus.DRAFT),
        draft_graph=normalize_graph(_json_value(row.get("draft_graph"))),
        published_graph=normalize_graph(published_raw) if published_raw else None,
        published_revision=_non_negative_int(row.get("published_revision")),
        published_at=parse_timestamp(row.get("published_at")),
        created_at=parse_timestamp(row.get("created_at"), now),
        updated_at=parse_timestamp(row.get("updated_at"), now),
    )


def session_to_row(session: ConversationSession) -> dict:
    return {
        "id": session.id,
        "run_id": session.run_id,
        "brand_id": session.brand_id,
        "campaign_id": session.campaign_id,
        "lead_id": session.lead_id,
        "map_id": session.map_id,
        "map_revision": session.map_revision,
        "state": session.state.value,
        "current_node_id": session.current_node_id,
        "turn_count": session.turn_count,
        "last_intent": session.last_intent.value,
        "last_confidence": session.last_confidence,
        "last_node_entered_at": to_iso(session.last_node_entered_at),
        "ended_reason": session.ended_reason,
        "created_at": to_iso(session.created_at),
        "updated_at": to_iso(session.updated_at),
    }


def session_from_row(row: dict) -> ConversationSession:
    now = utc_now()
    return ConversationSession(
        id=str(row.get("id") or create_id("session")),
        run_id=str(row.get("run_id") or ""),
        brand_id=str(row.get("brand_id") or ""),
        campaign_id=str(row.get("campaign_id") or ""),
        lead_id=str(row.get("lead_id") or ""),
        map_id=str(row.get("map_id") or ""),
        map_revision=_non_negative_int(row.get("map_revision")),
        state=_enum_value(SessionState, row.get("state"), SessionState.ACTIVE),
        current_node_id=str(row.get("current_node_id") or ""),
        turn_count=_non_negative_int(row.get("turn_count")),
        last_intent=_enum_value(Intent, row.get("last_intent") or "", Intent.NONE),
        last_confidence=_confidence(row.get("last_confidence")),
        last_node_entered_at=parse_timestamp(row.get("last_node_entered_at"), now),
        ended_reason=str(row.get("ended_reason") or ""),
        created_at=parse_timestamp(row.get("created_at"), now),
        updated_at=parse_timestamp(row.get("updated_at"), now),
    )


def event_to_row(event: ConversationEvent) -> dict:
    return {
        "id": event.id,
        "session_id": event.session_id,
        "run_id": event.run_id,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": to_iso(event.created_at),
    }


def event_from_row(row: dict) -> ConversationEvent:
    payload = _json_value(row.get("payload"))
    return ConversationEvent(
        id=str(row.get("id") or create_id("flowevt")),
        session_id=str(row.get("session_id") or ""),
        run_id=str(row.get("run_id") or ""),
        event_type=str(row.get("event_type") or ""),
        payload=payload if isinstance(payload, dict) else {},
        created_at=parse_timestamp(row.get("created_at"), utc_now()),
    )


def build_store(settings: Settings, db_path: Optional[Path] = None) -> ConversationStore:
    """Create the configured store. ``db_path`` overrides the SQLite file."""
    if settings.storage.backend == "supabase":
        from src.clients.supabase import SupabaseConversationStore

        return SupabaseConversationStore()

    from src.core.db import SQLiteConversationStore

    return SQLiteConversationStore(db_path or Path(settings.storage.db_path))
