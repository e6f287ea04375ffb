"""Versioned draft/published conversation maps."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.defaults import default_graph
from src.flow.models import (
    ConversationFlowGraph,
    ConversationMap,
    ConversationSession,
    MapStatus,
    create_id,
    utc_now,
)
from src.flow.normalizer import GraphDiagnostic, parse_graph
from src.flow.store import ConversationStore

log = structlog.get_logger()

DEFAULT_MAP_NAME = "Variant Conversation Flow"


@dataclass
class DraftSaveResult:
    conversation_map: ConversationMap
    diagnostics: list[GraphDiagnostic] = field(default_factory=list)


def new_map(
    brand_id: str,
    campaign_id: str,
    experiment_id: str,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConversationMap:
    """Unpublished map holding the default graph as its draft."""
    now = now or utc_now()
    return ConversationMap(
        id=create_id("flow"),
        brand_id=brand_id,
        campaign_id=campaign_id,
        experiment_id=experiment_id,
        name=(name or "").strip() or DEFAULT_MAP_NAME,
        draft_graph=default_graph(),
        created_at=now,
        updated_at=now,
    )


def publish_map(conversation_map: ConversationMap, now: Optional[datetime] = None) -> ConversationMap:
    """Promote the draft graph. The revision goes up by exactly one."""
    if conversation_map.status == MapStatus.ARCHIVED:
        raise ConversationFlowError(
            "Archived conversation maps cannot be published.",
            kind=ErrorKind.MAP_ARCHIVED,
            hint="Create a new map for this experiment instead.",
            debug={"map_id": conversation_map.id},
        )

    now = now or utc_now()
    return conversation_map.model_copy(update={
        "status": MapStatus.PUBLISHED,
        "published_graph": conversation_map.draft_graph,
        "published_revision": conversation_map.published_revision + 1,
        "published_at": now,
        "updated_at": now,
    })


class ConversationMapService:
    """Editing and publishing of per-experiment conversation maps."""

    def __init__(self, store: ConversationStore):
        self.store = store

    def get_map(self, brand_id: str, campaign_id: str, experiment_id: str) -> ConversationMap:
        conversation_map = self.store.get_map_by_experiment(brand_id, campaign_id, experiment_id)
        if not conversation_map:
            raise ConversationFlowError(
                "No conversation map exists for this experiment.",
                kind=ErrorKind.MAP_NOT_FOUND,
                hint="Open the experiment's flow editor to create one.",
                debug={"brand_id": brand_id, "campaign_id": campaign_id, "experiment_id": experiment_id},
            )
        return conversation_map

    def open_map(
        self,
        brand_id: str,
        campaign_id: str,
        experiment_id: str,
        name: Optional[str] = None,
    ) -> ConversationMap:
        """Return the experiment's map, creating one with the default graph."""
        existing = self.store.get_map_by_experiment(brand_id, campaign_id, experiment_id)
        if existing:
            return existing

        created = self.store.upsert_draft(new_map(brand_id, campaign_id, experiment_id, name))
        log.info("conversation_map_created", map_id=created.id, experiment_id=experiment_id)
        return created

    def save_draft(
        self,
        brand_id: str,
        campaign_id: str,
        experiment_id: str,
        raw_graph: Any,
        name: Optional[str] = None,
    ) -> DraftSaveResult:
        """Normalise and store a draft graph. Published fields are untouched."""
        result = parse_graph(raw_graph)
        current = self.open_map(brand_id, campaign_id, experiment_id, name)

        updated = current.model_copy(update={
            "name": (name or "").strip() or current.name,
            "draft_graph": result.graph,
            "updated_at": utc_now(),
        })
        saved = self.store.upsert_draft(updated)

        log.info(
            "conversation_draft_saved",
            map_id=saved.id,
            nodes=len(result.graph.nodes),
            edges=len(result.graph.edges),
            diagnostics=len(result.diagnostics),
        )
        return DraftSaveResult(conversation_map=saved, diagnostics=result.diagnostics)

    def publish(self, brand_id: str, campaign_id: str, experiment_id: str) -> ConversationMap:
        current = self.get_map(brand_id, campaign_id, experiment_id)
        published = self.store.publish(publish_map(current))
        log.info("conversation_map_published", map_id=published.id, revision=published.published_revision)
        return published

    def archive(self, brand_id: str, campaign_id: str, experiment_id: str) -> ConversationMap:
        """Retire the map. Running sessions keep their bound revision."""
        current = self.get_map(brand_id, campaign_id, experiment_id)
        archived = self.store.update_map_status(current.id, MapStatus.ARCHIVED)
        log.info("conversation_map_archived", map_id=current.id)
        return archived

    def get_published(self, brand_id: str, campaign_id: str, experiment_id: str) -> ConversationMap:
        """The map new sessions should use. Raises if nothing is published."""
        conversation_map = self.store.get_map_by_experiment(brand_id, campaign_id, experiment_id)
        if not conversation_map or not conversation_map.is_published:
            raise ConversationFlowError(
                "No published conversation map for this experiment.",
                kind=ErrorKind.MAP_NOT_PUBLISHED,
                hint="Publish the experiment's conversation map before launching a run.",
                debug={
                    "brand_id": brand_id,
                    "campaign_id": campaign_id,
                    "experiment_id": experiment_id,
                    "map_id": conversation_map.id if conversation_map else None,
                },
            )
        return conversation_map

    def graph_for_revision(self, map_id: str, revision: int) -> ConversationFlowGraph:
        graph = self.store.get_published_graph(map_id, revision)
        if graph is None:
            raise ConversationFlowError(
                "Published revision is missing.",
                kind=ErrorKind.MAP_NOT_FOUND,
                hint="The conversation map or its revision history was deleted.",
                debug={"map_id": map_id, "revision": revision},
            )
        return graph

    def graph_for_session(self, session: ConversationSession) -> ConversationFlowGraph:
        """The graph revision the session was bound to when it started."""
        return self.graph_for_revision(session.map_id, session.map_revision)
