"""Best-effort parent inference from commit ancestry."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from branchtree.models.graph import would_create_cycle
from branchtree.models.snapshot import AheadBehind, InferredEdge

logger = structlog.get_logger(__name__)

# (branch, candidate) -> counts of branch relative to candidate
DistanceMatrix = Mapping[Tuple[str, str], AheadBehind]


@dataclass
class InferenceResult:
    """Edges chosen by the inferencer plus the distances behind each choice."""

    edges: List[InferredEdge] = field(default_factory=list)
    roots: List[str] = field(default_factory=list)
    ahead_behind: Dict[str, AheadBehind] = field(default_factory=dict)

    def parent_of(self, branch: str) -> Optional[str]:
        for edge in self.edges:
            if edge.child == branch:
                return edge.parent
        return None


@dataclass
class _Candidate:
    name: str
    counts: AheadBehind
    is_root: bool = False

    @property
    def sort_key(self) -> Tuple[int, bool, str]:
        # Equal distances prefer the root, then the smaller branch name.
        return (self.counts.distance, not self.is_root, self.name)


class TopologyInferencer:
    """Chooses one parent per non-root branch.

    For each branch, in name order, every other branch is a candidate parent.
    A candidate that already contains all of the branch's commits (it is a
    descendant) or that would close a loop with earlier choices is skipped.
    The nearest remaining candidate by ``ahead + behind`` wins; on a tie the
    root is preferred so branches that share its tip hang from it.
    """

    def __init__(self, high_confidence_margin: int = 1, high_confidence_max_behind: int = 0) -> None:
        """Initialize the inferencer.

        Args:
            high_confidence_margin: Minimum lead of the winner over the runner-up
            high_confidence_max_behind: Largest behind count still treated as fast-forward
        """
        self.high_confidence_margin = high_confidence_margin
        self.high_confidence_max_behind = high_confidence_max_behind

    def infer(
        self,
        branches: Sequence[str],
        root: Optional[str],
        distances: DistanceMatrix,
    ) -> InferenceResult:
        """Infer the branch forest.

        Args:
            branches: All local branch names
            root: Base/default branch the tree hangs from (None if absent locally)
            distances: Ahead/behind of each branch versus each candidate; missing
                pairs are not viable candidates

        Returns:
            InferenceResult with one edge per non-root branch that has a parent
        """
        result = InferenceResult()
        parents: Dict[str, str] = {}
        names = sorted(set(branches))

        if root is not None and root in names:
            result.roots.append(root)

        for branch in names:
            if branch == root:
                continue

            candidates = self._viable_candidates(branch, names, distances, parents, root)
            if not candidates:
                if root is not None and root in names:
                    parents[branch] = root
                    result.edges.append(InferredEdge(parent=root, child=branch, confidence="low"))
                    counts = distances.get((branch, root))
                    if counts is not None:
                        result.ahead_behind[branch] = counts
                else:
                    result.roots.append(branch)
                logger.debug("no_viable_parent", branch=branch)
                continue

            best = candidates[0]
            runner_up = candidates[1] if len(candidates) > 1 else None
            confidence = self._confidence(best, runner_up)

            parents[branch] = best.name
            result.edges.append(InferredEdge(parent=best.name, child=branch, confidence=confidence))
            result.ahead_behind[branch] = best.counts

        return result

    def _viable_candidates(
        self,
        branch: str,
        names: Sequence[str],
        distances: DistanceMatrix,
        parents: Mapping[str, str],
        root: Optional[str] = None,
    ) -> List[_Candidate]:
        candidates = []
        for name in names:
            if name == branch:
                continue
            counts = distances.get((branch, name))
            if counts is None:
                continue
            if counts.ahead == 0 and counts.behind > 0:
                # The candidate already has every commit of the branch: it is a descendant.
                continue
            if would_create_cycle(parents, name, branch):
                continue
            candidates.append(_Candidate(name=name, counts=counts, is_root=name == root))
        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    def _confidence(self, best: _Candidate, runner_up: Optional[_Candidate]) -> str:
        clear_lead = (
            runner_up is None
            or runner_up.counts.distance - best.counts.distance >= max(self.high_confidence_margin, 1)
        )
        fast_forward = (
            best.counts.ahead > 0 and best.counts.behind <= self.high_confidence_max_behind
        )
        return "high" if clear_lead and fast_forward else "low"


def candidate_pairs(branches: Sequence[str], root: Optional[str] = None) -> List[Tuple[str, str]]:
    """All ordered (branch, candidate) pairs the inferencer may ask about.

    The root never needs a parent, so it only appears as a candidate.
    """
    names = sorted(set(branches))
    return [
        (branch, other)
        for branch in names
        if branch != root
        for other in names
        if branch != other
    ]
