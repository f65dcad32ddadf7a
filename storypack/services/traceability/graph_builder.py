"""Traceability graph construction.

Projects one pack version into source, story, ac, evidence and chunk nodes
joined by typed edges. The builder is a pure function over a fully loaded
``PackVersionData``; ``TraceabilityService`` does the loading.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from storypack.core.exceptions import GraphIntegrityError, NotFoundError
from storypack.models.evidence import confidence_priority, is_supporting, strongest_confidence
from storypack.models.traceability import (
    AcceptanceCriterionNode,
    ChunkData,
    ChunkNode,
    CriterionData,
    EvidenceNode,
    LinkData,
    PackVersionData,
    SourceData,
    SourceNode,
    StoryData,
    StoryNode,
    TraceabilityGraph,
    TraceEdge,
    TraceGraphStats,
)
from storypack.repositories.pack_repository import PackRepository, live_criteria, live_stories
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

SNIPPET_CHARS = 280

QA_PENALTY = {"error": 14, "warning": 8}
DEFAULT_QA_PENALTY = 4


def file_size_label(size_bytes: Optional[int]) -> str:
    """Human readable size, e.g. ``512B``, ``3KB``, ``1.5MB``."""
    if size_bytes is None:
        return "Unknown"
    if size_bytes < 1024:
        return f"{size_bytes}B"
    if size_bytes < 1024 * 1024:
        return f"{max(1, int(size_bytes / 1024 + 0.5))}KB"
    return f"{size_bytes / (1024 * 1024):.1f}MB"


def _round_percent(part: int, whole: int) -> int:
    if whole == 0:
        return 0
    return int(100.0 * part / whole + 0.5)


def _qa_penalty(severities: Sequence[str]) -> int:
    return sum(QA_PENALTY.get(severity.lower(), DEFAULT_QA_PENALTY) for severity in severities)


def _has_support(links: Sequence[LinkData]) -> bool:
    return any(is_supporting(link.confidence) for link in links)


def compute_stats(nodes: Sequence, edges: Sequence[TraceEdge]) -> TraceGraphStats:
    """Count nodes per kind and derive coverage in one pass over the nodes.

    Coverage is the share of ac nodes whose strongest evidence is better
    than an assumption.
    """
    counts = {"source": 0, "story": 0, "ac": 0, "evidence": 0, "chunk": 0}
    covered = 0
    for node in nodes:
        counts[node.kind] += 1
        if node.kind == "ac" and is_supporting(node.strongest_confidence):
            covered += 1

    return TraceGraphStats(
        sources=counts["source"],
        stories=counts["story"],
        acceptance_criteria=counts["ac"],
        evidence_links=counts["evidence"],
        chunks=counts["chunk"],
        coverage=_round_percent(covered, counts["ac"]),
    )


def check_integrity(nodes: Sequence, edges: Sequence[TraceEdge]) -> None:
    """Raise ``GraphIntegrityError`` on a dangling edge or an evidence count mismatch."""
    node_ids = {node.id for node in nodes}
    evidence_in_degree: Dict[str, int] = {}

    for edge in edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            raise GraphIntegrityError(f"Edge {edge.id} references a missing node")
        if edge.edge_type == "ac-to-evidence" and edge.source.startswith("ac:"):
            evidence_in_degree[edge.source] = evidence_in_degree.get(edge.source, 0) + 1

    for node in nodes:
        if node.kind == "ac" and evidence_in_degree.get(node.id, 0) != node.evidence_count:
            raise GraphIntegrityError(
                f"Node {node.id} has evidence_count {node.evidence_count} "
                f"but {evidence_in_degree.get(node.id, 0)} evidence edges"
            )


def build_traceability_graph(
    data: PackVersionData, generated_at: Optional[datetime] = None
) -> TraceabilityGraph:
    """Build the node/edge projection of one pack version.

    Deleted stories and criteria are left out. Evidence links citing a chunk
    that is not in ``data.chunks`` are skipped, so every emitted edge resolves.
    A version with no evidence yields only source, story and ac nodes.
    """
    chunks: Dict[str, ChunkData] = {chunk.id: chunk for chunk in data.chunks}
    sources: Dict[str, SourceData] = {source.id: source for source in data.sources}

    stories: List[StoryData] = sorted(
        (story for story in data.stories if not story.deleted), key=lambda s: s.sort_order
    )
    criteria: Dict[str, List[CriterionData]] = {
        story.id: sorted(
            (ac for ac in story.acceptance_criteria if not ac.deleted), key=lambda ac: ac.sort_order
        )
        for story in stories
    }

    def resolvable(links: Sequence[LinkData]) -> List[LinkData]:
        return [link for link in links if link.chunk_id in chunks]

    story_links = {story.id: resolvable(story.evidence_links) for story in stories}
    ac_links = {
        ac.id: resolvable(ac.evidence_links) for acs in criteria.values() for ac in acs
    }

    # Source ids referenced through evidence, in first-seen order
    cited_source_ids: Dict[str, None] = {}
    for story in stories:
        for link in story_links[story.id] + [x for ac in criteria[story.id] for x in ac_links[ac.id]]:
            cited_source_ids.setdefault(chunks[link.chunk_id].source_id, None)

    ordered_source_ids = list(dict.fromkeys(list(data.source_ids) + list(cited_source_ids)))
    source_nodes: List[SourceNode] = []
    for source_id in ordered_source_ids:
        source = sources.get(source_id)
        if source is None and source_id not in cited_source_ids:
            continue
        source_nodes.append(
            SourceNode(
                id=f"source:{source_id}",
                name=source.name if source else source_id,
                source_type=source.source_type if source else "unknown",
                chunk_count=source.chunk_count if source else 0,
                file_size=file_size_label(source.file_size_bytes if source else None),
            )
        )

    def source_name(source_id: str) -> str:
        source = sources.get(source_id)
        return source.name if source else source_id

    story_nodes: List[StoryNode] = []
    ac_nodes: List[AcceptanceCriterionNode] = []
    for story in stories:
        acs = criteria[story.id]
        with_evidence = sum(1 for ac in acs if _has_support(ac_links[ac.id]))
        coverage = _round_percent(with_evidence, len(acs))
        story_nodes.append(
            StoryNode(
                id=f"story:{story.id}",
                story_index=story.sort_order + 1,
                persona=story.persona,
                want=story.want,
                ac_count=len(acs),
                ac_with_evidence_count=with_evidence,
                evidence_coverage=coverage,
                quality_score=max(0, min(100, coverage - _qa_penalty(story.qa_flag_severities))),
            )
        )
        for ac in acs:
            links = ac_links[ac.id]
            ac_nodes.append(
                AcceptanceCriterionNode(
                    id=f"ac:{ac.id}",
                    criterion_index=ac.sort_order + 1,
                    given=ac.given,
                    when=ac.when,
                    then=ac.then,
                    evidence_count=len(links),
                    strongest_confidence=strongest_confidence(link.confidence for link in links),
                )
            )

    # (owner node id, link) for every evidence link, story-level links included
    owned_links = []
    for story in stories:
        owned_links.extend((f"story:{story.id}", link) for link in story_links[story.id])
        for ac in criteria[story.id]:
            owned_links.extend((f"ac:{ac.id}", link) for link in ac_links[ac.id])

    evidence_nodes: List[EvidenceNode] = []
    chunk_nodes: Dict[str, ChunkNode] = {}
    for _, link in owned_links:
        chunk = chunks[link.chunk_id]
        evidence_nodes.append(
            EvidenceNode(
                id=f"evidence:{link.id}",
                confidence=link.confidence,
                snippet=chunk.content[:SNIPPET_CHARS],
                source_name=source_name(chunk.source_id),
                source_id=chunk.source_id,
            )
        )
        if chunk.id not in chunk_nodes:
            source = sources.get(chunk.source_id)
            chunk_nodes[chunk.id] = ChunkNode(
                id=f"chunk:{chunk.id}",
                snippet=chunk.content[:SNIPPET_CHARS],
                source_name=source_name(chunk.source_id),
                source_id=chunk.source_id,
                source_type=source.source_type if source else "unknown",
                chunk_index=chunk.chunk_index,
                chunk_count=source.chunk_count if source else None,
            )

    edges: Dict[str, TraceEdge] = {}

    def add_edge(edge: TraceEdge) -> None:
        edges[edge.id] = edge

    for story in stories:
        links = story_links[story.id] + [x for ac in criteria[story.id] for x in ac_links[ac.id]]
        for source_id in dict.fromkeys(chunks[link.chunk_id].source_id for link in links):
            add_edge(
                TraceEdge(
                    id=f"edge:source-story:{source_id}:{story.id}",
                    source=f"source:{source_id}",
                    target=f"story:{story.id}",
                    edge_type="source-to-story",
                    label="informs",
                )
            )
        for ac in criteria[story.id]:
            add_edge(
                TraceEdge(
                    id=f"edge:story-ac:{story.id}:{ac.id}",
                    source=f"story:{story.id}",
                    target=f"ac:{ac.id}",
                    edge_type="story-to-ac",
                    label="defines",
                )
            )

    for owner, link in owned_links:
        add_edge(
            TraceEdge(
                id=f"edge:entity-evidence:{owner}:{link.id}",
                source=owner,
                target=f"evidence:{link.id}",
                edge_type="ac-to-evidence",
                confidence=link.confidence,
                label=f"supported by {link.confidence}",
            )
        )
        add_edge(
            TraceEdge(
                id=f"edge:evidence-chunk:{link.id}:{link.chunk_id}",
                source=f"evidence:{link.id}",
                target=f"chunk:{link.chunk_id}",
                edge_type="evidence-to-chunk",
                confidence=link.confidence,
                label="references",
            )
        )

    nodes = [*source_nodes, *story_nodes, *ac_nodes, *evidence_nodes, *chunk_nodes.values()]
    edge_list = list(edges.values())
    check_integrity(nodes, edge_list)

    return TraceabilityGraph(
        pack_id=data.pack_id,
        pack_name=data.pack_name,
        pack_version_id=data.pack_version_id,
        version_number=data.version_number,
        generated_at=generated_at or datetime.now(timezone.utc),
        nodes=nodes,
        edges=edge_list,
        stats=compute_stats(nodes, edge_list),
    )


def filter_graph(graph: TraceabilityGraph, min_confidence: str) -> TraceabilityGraph:
    """Keep only evidence at or above ``min_confidence``.

    Chunks no longer cited are dropped, ac nodes get their evidence counts and
    strongest tier recomputed, and stats are rebuilt, so the result is closed.
    """
    floor = confidence_priority(min_confidence)

    dropped_evidence = {
        node.id
        for node in graph.nodes
        if node.kind == "evidence" and confidence_priority(node.confidence) < floor
    }
    edges = [
        edge for edge in graph.edges
        if edge.source not in dropped_evidence and edge.target not in dropped_evidence
    ]
    cited_chunks = {edge.target for edge in edges if edge.edge_type == "evidence-to-chunk"}

    remaining_tiers: Dict[str, List[str]] = {}
    for edge in edges:
        if edge.edge_type == "ac-to-evidence" and edge.source.startswith("ac:"):
            remaining_tiers.setdefault(edge.source, []).append(edge.confidence)

    nodes = []
    for node in graph.nodes:
        if node.id in dropped_evidence:
            continue
        if node.kind == "chunk" and node.id not in cited_chunks:
            continue
        if node.kind == "ac":
            tiers = remaining_tiers.get(node.id, [])
            node = node.model_copy(
                update={"evidence_count": len(tiers), "strongest_confidence": strongest_confidence(tiers)}
            )
        nodes.append(node)

    check_integrity(nodes, edges)
    return graph.model_copy(update={"nodes": nodes, "edges": edges, "stats": compute_stats(nodes, edges)})


class TraceabilityService:
    """Loads a pack version and hands it to the graph builder."""

    def __init__(self, pack_repository: PackRepository):
        self.pack_repository = pack_repository

    async def build_for_version(
        self, pack_version_id: Optional[UUID] = None, pack_id: Optional[UUID] = None
    ) -> TraceabilityGraph:
        """Build the graph for a version, or for the latest version of ``pack_id``.

        Raises:
            NotFoundError: If the pack or version does not exist
        """
        if pack_version_id is not None:
            version = await self.pack_repository.get_version(pack_version_id)
        elif pack_id is not None:
            version = await self.pack_repository.get_latest_version(pack_id)
        else:
            raise NotFoundError("Either pack_version_id or pack_id is required")

        if version is None:
            raise NotFoundError(f"Pack version not found (version={pack_version_id}, pack={pack_id})")

        pack = await self.pack_repository.get_by_id(version.pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {version.pack_id} not found")

        data = await self.load_version_data(pack.name, version)
        graph = build_traceability_graph(data)

        LOGGER.info(
            f"Built traceability graph for version {version.id}",
            extra={"nodes": len(graph.nodes), "edges": len(graph.edges), "coverage": graph.stats.coverage},
        )
        return graph

    async def load_version_data(self, pack_name: str, version) -> PackVersionData:
        stories = live_stories(version)
        criteria = {story.id: live_criteria(story) for story in stories}
        criterion_ids = [ac.id for acs in criteria.values() for ac in acs]

        links = await self.pack_repository.get_evidence_links([s.id for s in stories], criterion_ids)
        chunks = await self.pack_repository.get_chunks(list({link.source_chunk_id for link in links}))
        flags = [
            flag for flag in await self.pack_repository.get_qa_flags(version.id)
            if flag.resolved_by is None
        ]

        source_ids = [str(sid) for sid in (version.source_ids or [])]
        needed_sources = set(source_ids) | {str(chunk.source_id) for chunk in chunks}
        source_rows = await self.pack_repository.get_sources_with_chunk_counts(
            [UUID(sid) for sid in needed_sources]
        )

        links_by_entity: Dict[UUID, List[LinkData]] = {}
        for link in links:
            links_by_entity.setdefault(link.entity_id, []).append(
                LinkData(id=str(link.id), chunk_id=str(link.source_chunk_id), confidence=link.confidence)
            )

        story_data = []
        for story in stories:
            entity_ids = {story.id} | {ac.id for ac in criteria[story.id]}
            story_data.append(
                StoryData(
                    id=str(story.id),
                    persona=story.persona,
                    want=story.want,
                    sort_order=story.sort_order,
                    evidence_links=links_by_entity.get(story.id, []),
                    qa_flag_severities=[f.severity for f in flags if f.entity_id in entity_ids],
                    acceptance_criteria=[
                        CriterionData(
                            id=str(ac.id),
                            given=ac.given,
                            when=ac.when,
                            then=ac.then,
                            sort_order=ac.sort_order,
                            evidence_links=links_by_entity.get(ac.id, []),
                        )
                        for ac in criteria[story.id]
                    ],
                )
            )

        return PackVersionData(
            pack_id=str(version.pack_id),
            pack_name=pack_name,
            pack_version_id=str(version.id),
            version_number=version.version_number,
            source_ids=source_ids,
            sources=[
                SourceData(
                    id=str(source.id),
                    name=source.name,
                    source_type=source.source_type,
                    chunk_count=count,
                    file_size_bytes=source.file_size_bytes,
                )
                for source, count in source_rows
            ],
            stories=story_data,
            chunks=[
                ChunkData(
                    id=str(chunk.id),
                    source_id=str(chunk.source_id),
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                )
                for chunk in chunks
            ],
        )
