"""Keeping a tree spec consistent when one of its branches is deleted."""

from typing import List, Tuple

import structlog

from branchtree.models.design import TreeSpec, TreeSpecEdge
from branchtree.models.snapshot import PayloadModel

logger = structlog.get_logger(__name__)


class ReparentedEdge(PayloadModel):
    """A child whose designed parent was rewritten."""

    child: str
    new_parent: str


def reparent_tree_spec(spec: TreeSpec, deleted: str) -> Tuple[TreeSpec, List[ReparentedEdge]]:
    """Remove ``deleted`` from a tree spec and hand its children to its parent.

    The deleted branch's own spec parent becomes the new parent of its
    children; a deleted branch without a spec parent passes its children to
    the spec's base branch. The input spec is not modified.

    Args:
        spec: Tree spec to rewrite
        deleted: Name of the deleted branch

    Returns:
        Tuple of (rewritten spec, list of rewritten edges)
    """
    parents = spec.parent_map()
    new_parent = parents.get(deleted, spec.base_branch)

    edges: List[TreeSpecEdge] = []
    changed: List[ReparentedEdge] = []
    for edge in spec.edges:
        if edge.child == deleted:
            continue
        if edge.parent != deleted:
            edges.append(edge.model_copy())
            continue
        if new_parent == deleted:
            # The base branch itself was deleted; its children become roots.
            logger.info("tree_spec_edge_dropped", repo_id=spec.repo_id, child=edge.child)
            continue
        edges.append(TreeSpecEdge(parent=new_parent, child=edge.child))
        changed.append(ReparentedEdge(child=edge.child, new_parent=new_parent))

    nodes = [node.model_copy() for node in spec.nodes if node.branch_name != deleted]
    rewritten = spec.model_copy(update={"nodes": nodes, "edges": edges}, deep=True)
    return rewritten, changed
