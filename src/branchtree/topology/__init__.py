"""Branch topology: parent inference and designed-edge overlay."""

from branchtree.topology.inference import InferenceResult, TopologyInferencer, candidate_pairs
from branchtree.topology.overlay import apply_overlay, designed_branch_edges

__all__ = [
    "TopologyInferencer",
    "InferenceResult",
    "candidate_pairs",
    "apply_overlay",
    "designed_branch_edges",
]
