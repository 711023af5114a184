"""
Story graph — the immutable branching structure every session walks.

Loaded once at startup from story-config.json. Structural problems that still
leave a playable graph (dangling option targets, orphaned nodes, decisions with
no options...) are collected into a ValidationReport and logged as warnings.
Only an unreadable/unparsable document or an undefined start node is fatal.
"""
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from models.story import NodeType, StoryConfig, StoryNode, VotingOption
from services.errors import StoryLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    context: Dict[str, str] = field(default_factory=dict)
    severity: str = "WARNING"

    def format(self) -> str:
        context = " ".join(f"{key}={value}" for key, value in self.context.items())
        suffix = f" ({context})" if context else ""
        return f"[{self.severity}] {self.code}: {self.message}{suffix}"


@dataclass(frozen=True)
class ValidationReport:
    issues: Tuple[ValidationIssue, ...] = ()
    orphaned_node_ids: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues

    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]


class StoryGraph:
    """Read-only node index plus the validation report produced at load time."""

    def __init__(self, config: StoryConfig, *, video_base_url: str = "/videos"):
        self._start_node_id = config.start_node_id
        self._video_base_url = video_base_url.rstrip("/")
        self._nodes: Dict[str, StoryNode] = {}
        issues: List[ValidationIssue] = []

        for node in config.nodes:
            if node.id in self._nodes:
                issues.append(ValidationIssue(
                    code="DUPLICATE_NODE_ID",
                    message="Duplicate story node id; the first definition is kept.",
                    context={"node_id": node.id},
                ))
                continue
            self._nodes[node.id] = node

        if self._start_node_id not in self._nodes:
            raise StoryLoadError(f"Start node '{self._start_node_id}' not found")

        issues.extend(self._check_nodes())
        orphaned = self._find_orphans()
        for node_id in orphaned:
            issues.append(ValidationIssue(
                code="ORPHANED_NODE",
                message="Node is unreachable from the start node.",
                context={"node_id": node_id},
            ))
        self._report = ValidationReport(issues=tuple(issues), orphaned_node_ids=tuple(orphaned))

    # ── Construction ──────────────────────────────────────────────────────────

    @classmethod
    def from_document(
        cls, document: Union[Mapping[str, Any], StoryConfig], *, video_base_url: str = "/videos"
    ) -> "StoryGraph":
        if isinstance(document, StoryConfig):
            return cls(document, video_base_url=video_base_url)
        try:
            config = StoryConfig.model_validate(document)
        except ValidationError as exc:
            raise StoryLoadError(f"Story configuration is malformed: {exc}") from exc
        return cls(config, video_base_url=video_base_url)

    # ── Validation ────────────────────────────────────────────────────────────

    def _check_nodes(self) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for node in self._nodes.values():
            if node.type == NodeType.DECISION and not node.options:
                issues.append(ValidationIssue(
                    code="DECISION_WITHOUT_OPTIONS",
                    message="Decision node has no options.",
                    context={"node_id": node.id},
                ))
            if node.type == NodeType.ENDING and node.options:
                issues.append(ValidationIssue(
                    code="ENDING_WITH_OPTIONS",
                    message="Ending node should not have options.",
                    context={"node_id": node.id},
                ))
            seen: Set[str] = set()
            for option in node.options:
                if option.id in seen:
                    issues.append(ValidationIssue(
                        code="DUPLICATE_OPTION_ID",
                        message="Option id is repeated within its node.",
                        context={"node_id": node.id, "option_id": option.id},
                    ))
                seen.add(option.id)
                if option.next_node_id not in self._nodes:
                    issues.append(ValidationIssue(
                        code="MISSING_OPTION_TARGET",
                        message="Option points to a non-existent node.",
                        context={
                            "node_id": node.id,
                            "option_id": option.id,
                            "referenced_id": option.next_node_id,
                        },
                    ))
        return issues

    def _find_orphans(self) -> List[str]:
        reachable: Set[str] = set()
        queue = deque([self._start_node_id])
        while queue:
            node_id = queue.popleft()
            if node_id in reachable or node_id not in self._nodes:
                continue
            reachable.add(node_id)
            queue.extend(opt.next_node_id for opt in self._nodes[node_id].options)
        return [node_id for node_id in self._nodes if node_id not in reachable]

    # ── Queries ───────────────────────────────────────────────────────────────

    @property
    def start_node_id(self) -> str:
        return self._start_node_id

    @property
    def report(self) -> ValidationReport:
        return self._report

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: str) -> Optional[StoryNode]:
        return self._nodes.get(node_id)

    def get_options(self, node_id: str) -> Tuple[VotingOption, ...]:
        node = self._nodes.get(node_id)
        if node is None or node.type == NodeType.ENDING:
            return ()
        return tuple(node.options)

    def is_ending(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        return node is not None and node.type == NodeType.ENDING

    def resolve_next(self, node_id: str, option_id: str) -> Optional[str]:
        node = self._nodes.get(node_id)
        if node is None:
            return None
        for option in node.options:
            if option.id == option_id:
                return option.next_node_id
        return None

    def video_ref(self, node_id: str) -> Optional[str]:
        node = self._nodes.get(node_id)
        if node is None:
            return None
        return f"{self._video_base_url}/{node.video_file}"

    def stats(self) -> Dict[str, int]:
        nodes = self._nodes.values()
        return {
            "totalNodes": len(self._nodes),
            "decisionNodes": sum(1 for n in nodes if n.type == NodeType.DECISION),
            "endingNodes": sum(1 for n in nodes if n.type == NodeType.ENDING),
            "orphanedNodes": len(self._report.orphaned_node_ids),
        }


def load_story_graph(path: Union[str, Path], *, video_base_url: str = "/videos") -> StoryGraph:
    """Read, parse and validate a story configuration file.

    Raises StoryLoadError when the file is missing, is not JSON, does not match
    the document shape, or names a start node that does not exist.
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise StoryLoadError(f"Story configuration {path} not found or invalid: {exc}") from exc

    graph = StoryGraph.from_document(document, video_base_url=video_base_url)
    logger.info("Loaded %d story nodes from %s", len(graph), path)
    if graph.report.ok:
        logger.info("Story graph validation passed")
    else:
        logger.warning("Story graph validation found %d issue(s):", len(graph.report.issues))
        for issue in graph.report.issues:
            logger.warning("  %s", issue.format())
    return graph
