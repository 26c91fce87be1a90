"""Data models for designed (author-specified) branch topology."""

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import Field, model_validator

from branchtree.models.graph import find_cycle, parent_map
from branchtree.models.snapshot import PayloadModel

SessionStatus = Literal["draft", "confirmed"]


class TaskNode(PayloadModel):
    """One task in a planning session."""

    id: str = Field(..., description="Opaque task id")
    title: str = Field("", description="Human title")
    branch_name: Optional[str] = Field(None, description="Branch implementing the task")


class DesignedEdge(PayloadModel):
    """Parent/child relationship between two task ids."""

    parent: str
    child: str


class PlanningSession(PayloadModel):
    """A designed task breakdown for one repository and base branch."""

    id: str = Field(..., description="Generated session id")
    repo_id: str = Field(..., description="Owning repository (owner/name)")
    base_branch: str = Field(..., description="Branch the plan builds on")
    title: str = Field("Untitled")
    status: SessionStatus = "draft"
    nodes: List[TaskNode] = Field(default_factory=list)
    edges: List[DesignedEdge] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_confirmed(self) -> bool:
        return self.status == "confirmed"

    def branch_edges(self) -> List[Tuple[str, str]]:
        """Translate task-id edges into (parent, child) branch-name pairs.

        Edges touching a task without a branch name, or an unknown task id,
        are skipped.
        """
        branch_by_task: Dict[str, str] = {
            node.id: node.branch_name for node in self.nodes if node.branch_name
        }
        pairs = []
        for edge in self.edges:
            parent = branch_by_task.get(edge.parent)
            child = branch_by_task.get(edge.child)
            if parent and child:
                pairs.append((parent, child))
        return pairs


class TreeSpecNode(PayloadModel):
    """A branch in a tree spec."""

    branch_name: str
    title: Optional[str] = None


class TreeSpecEdge(PayloadModel):
    """Parent/child relationship between two branch names."""

    parent: str
    child: str


class TreeSpec(PayloadModel):
    """Branch-name keyed designed tree for a repository/base-branch pair."""

    repo_id: str
    base_branch: str
    nodes: List[TreeSpecNode] = Field(default_factory=list)
    edges: List[TreeSpecEdge] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def _check_forest(self) -> "TreeSpec":
        cycle = find_cycle(self.parent_map())
        if cycle:
            raise ValueError(f"Tree spec edges contain a cycle: {' -> '.join(cycle)}")
        return self

    def parent_map(self) -> Dict[str, str]:
        return parent_map((edge.parent, edge.child) for edge in self.edges)

    def branch_edges(self) -> List[Tuple[str, str]]:
        return [(edge.parent, edge.child) for edge in self.edges]


class BranchNamingRule(PayloadModel):
    """Project naming convention for branches (regular expressions)."""

    patterns: List[str] = Field(default_factory=list, description="Accepted name patterns")
    examples: List[str] = Field(default_factory=list, description="Example names")
    is_active: bool = True
