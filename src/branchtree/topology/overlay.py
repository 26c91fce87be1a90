"""Read-time projection of designed edges onto an inferred snapshot."""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from branchtree.models.design import PlanningSession, TreeSpec
from branchtree.models.graph import would_create_cycle
from branchtree.models.snapshot import InferredEdge, ObservedSnapshot, ScanWarning

logger = structlog.get_logger(__name__)


def designed_branch_edges(
    sessions: Sequence[PlanningSession],
    tree_spec: Optional[TreeSpec] = None,
) -> List[Tuple[str, str]]:
    """Collect designed (parent, child) branch pairs in precedence order.

    Confirmed sessions come first (oldest first), the tree spec last, so a
    later source wins when two disagree about the same child.
    """
    pairs: List[Tuple[str, str]] = []
    confirmed = sorted(
        (session for session in sessions if session.is_confirmed),
        key=lambda s: (s.updated_at, s.id),
    )
    for session in confirmed:
        pairs.extend(session.branch_edges())
    if tree_spec is not None:
        pairs.extend(tree_spec.branch_edges())
    return pairs


def _latest_per_child(pairs: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    designed: Dict[str, str] = {}
    for parent, child in pairs:
        # Re-insert so iteration order follows the winning declaration.
        designed.pop(child, None)
        designed[child] = parent
    return designed


def apply_overlay(
    snapshot: ObservedSnapshot,
    sessions: Sequence[PlanningSession] = (),
    tree_spec: Optional[TreeSpec] = None,
) -> ObservedSnapshot:
    """Return a copy of ``snapshot`` with designed edges replacing inferred ones.

    The input snapshot is never modified. A designed edge replaces the
    inferred edge for the same child and is marked ``is_designed``. Designed
    edges naming branches that are not in the snapshot are ignored; one that
    would close a loop is dropped with a warning and the child keeps its
    inferred parent when that is still loop-free.

    Args:
        snapshot: Cached inferred snapshot
        sessions: Planning sessions for the same repository/base branch
        tree_spec: Tree spec for the same repository/base branch

    Returns:
        New ObservedSnapshot
    """
    known = set(snapshot.branches)
    root = snapshot.root_branch
    inferred = {edge.child: edge for edge in snapshot.edges}

    designed: Dict[str, str] = {}
    for child, parent in _latest_per_child(designed_branch_edges(sessions, tree_spec)).items():
        if parent not in known or child not in known:
            logger.debug("designed_edge_ignored", parent=parent, child=child, reason="unknown_branch")
            continue
        if child == root:
            logger.debug("designed_edge_ignored", parent=parent, child=child, reason="root_child")
            continue
        designed[child] = parent

    # Inferred edges of children without a designed parent stay as they are.
    parents: Dict[str, str] = {
        child: edge.parent for child, edge in inferred.items() if child not in designed
    }
    applied: Dict[str, str] = {}
    warnings: List[ScanWarning] = []

    for child, parent in designed.items():
        if would_create_cycle(parents, parent, child):
            warnings.append(
                ScanWarning(
                    code="DESIGNED_EDGE_CYCLE",
                    severity="warn",
                    message=f"Designed edge {parent} -> {child} would create a cycle and was ignored",
                    meta={"parent": parent, "child": child},
                )
            )
            logger.info("designed_edge_dropped", parent=parent, child=child, repo_id=snapshot.repo_id)
            continue
        parents[child] = parent
        applied[child] = parent

    # Children whose designed edge was dropped fall back to their inferred parent.
    for child in designed:
        if child in applied or child not in inferred:
            continue
        fallback = inferred[child].parent
        if not would_create_cycle(parents, fallback, child):
            parents[child] = fallback
        elif root is not None and not would_create_cycle(parents, root, child):
            parents[child] = root

    edges: List[InferredEdge] = []
    seen = set()
    for edge in snapshot.edges:
        child = edge.child
        seen.add(child)
        if child in applied:
            edges.append(
                InferredEdge(parent=applied[child], child=child, confidence="high", is_designed=True)
            )
        elif child in parents:
            if parents[child] == edge.parent:
                edges.append(edge.model_copy())
            else:
                edges.append(InferredEdge(parent=parents[child], child=child, confidence="low"))
    for child, parent in applied.items():
        if child not in seen:
            edges.append(InferredEdge(parent=parent, child=child, confidence="high", is_designed=True))

    return snapshot.model_copy(
        update={
            "edges": edges,
            "warnings": [w.model_copy(deep=True) for w in snapshot.warnings] + warnings,
        },
        deep=True,
    )
