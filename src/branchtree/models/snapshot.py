"""Data models for observed repository state."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from branchtree.models.graph import find_cycle, parent_map

SNAPSHOT_SCHEMA_VERSION = 1

Confidence = Literal["high", "low"]
Severity = Literal["warn", "error"]


class PayloadModel(BaseModel):
    """Base for models that travel in API payloads (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict using wire names."""
        return self.model_dump(mode="json", by_alias=True)


class AheadBehind(PayloadModel):
    """Commit counts of a branch relative to a comparison ref."""

    ahead: int = Field(0, ge=0, description="Commits only on the branch")
    behind: int = Field(0, ge=0, description="Commits only on the comparison ref")

    @property
    def distance(self) -> int:
        """Combined distance from the merge base."""
        return self.ahead + self.behind

    @property
    def diverged(self) -> bool:
        return self.ahead > 0 and self.behind > 0


class BranchRef(PayloadModel):
    """A local branch as listed by the branch collector."""

    name: str = Field(..., description="Short branch name")
    commit: str = Field(..., description="Tip commit SHA")
    last_commit_at: Optional[str] = Field(None, description="Committer date of the tip (ISO 8601)")


class PRInfo(PayloadModel):
    """Summary of a pull request on the code host."""

    number: int = Field(..., description="Pull request number")
    title: str = Field("", description="Pull request title")
    state: str = Field("OPEN", description="OPEN, CLOSED or MERGED")
    url: str = Field("", description="Web URL")
    branch: str = Field(..., description="Head branch name")
    is_draft: bool = Field(False, description="Whether the PR is a draft")
    labels: List[str] = Field(default_factory=list, description="Label names")
    review_decision: Optional[str] = Field(None, description="APPROVED, CHANGES_REQUESTED, ...")
    checks: Optional[Literal["SUCCESS", "FAILURE", "PENDING"]] = Field(
        None, description="Aggregated CI status"
    )


class WorktreeInfo(PayloadModel):
    """A checkout directory of the repository."""

    path: str = Field(..., description="Absolute worktree path")
    branch: Optional[str] = Field(None, description="Checked-out branch (None when detached)")
    commit: Optional[str] = Field(None, description="HEAD commit SHA")
    dirty: bool = Field(False, description="Whether the working tree has uncommitted changes")
    is_active: bool = Field(False, description="Whether an agent session is working here")
    active_agent: Optional[str] = Field(None, description="Agent named by the heartbeat file")
    prunable: bool = Field(False, description="Whether git reports the worktree as prunable")


class BranchNode(PayloadModel):
    """Per-branch view inside a snapshot."""

    branch_name: str = Field(..., description="Branch name")
    badges: List[str] = Field(default_factory=list, description="Status flags for display")
    commit: Optional[str] = Field(None, description="Tip commit SHA")
    last_commit_at: Optional[str] = Field(None, description="Tip committer date")
    ahead_behind: Optional[AheadBehind] = Field(None, description="Counts versus inferred parent")
    remote_ahead_behind: Optional[AheadBehind] = Field(
        None, description="Counts versus the remote-tracking ref"
    )
    no_upstream: bool = Field(False, description="True when the branch has no remote-tracking ref")
    pr: Optional[PRInfo] = None
    worktree: Optional[WorktreeInfo] = None
    description: Optional[str] = Field(None, description="git branch description")


class InferredEdge(PayloadModel):
    """Parent/child relationship between two branches."""

    parent: str
    child: str
    confidence: Confidence = "low"
    is_designed: bool = Field(False, description="Set when a designed edge replaced the inference")


class ScanWarning(PayloadModel):
    """An anomaly noticed while scanning or projecting a snapshot."""

    code: str = Field(..., description="Machine-readable warning code")
    severity: Severity = "warn"
    message: str = Field(..., description="Human-readable description")
    meta: Dict[str, Any] = Field(default_factory=dict)


class RestartInfo(PayloadModel):
    """How to resume work in the active worktree."""

    worktree_path: str
    cd_command: str
    restart_prompt_md: str


class ObservedSnapshot(PayloadModel):
    """Result of one repository scan.

    Every branch named by a node or an edge belongs to ``branches`` and the
    edges form a forest. Snapshots are replaced wholesale by the next scan.
    """

    schema_version: int = Field(SNAPSHOT_SCHEMA_VERSION, description="Serialization format")
    repo_id: str = Field(..., description="Repository identifier (owner/name)")
    default_branch: str = Field(..., description="Default branch of the remote")
    base_branch: str = Field(..., description="Configured base branch")
    branches: List[str] = Field(default_factory=list)
    nodes: List[BranchNode] = Field(default_factory=list)
    edges: List[InferredEdge] = Field(default_factory=list)
    prs: List[PRInfo] = Field(default_factory=list)
    worktrees: List[WorktreeInfo] = Field(default_factory=list)
    warnings: List[ScanWarning] = Field(default_factory=list)
    restart: Optional[RestartInfo] = None
    scanned_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_topology(self) -> "ObservedSnapshot":
        if self.schema_version != SNAPSHOT_SCHEMA_VERSION:
            raise ValueError(f"Unsupported snapshot schema version: {self.schema_version}")

        known = set(self.branches)
        for node in self.nodes:
            if node.branch_name not in known:
                raise ValueError(f"Node {node.branch_name} is not in the branch set")
        for edge in self.edges:
            for name in (edge.parent, edge.child):
                if name not in known:
                    raise ValueError(f"Edge {edge.parent} -> {edge.child} names unknown branch {name}")

        cycle = find_cycle(self.parent_map())
        if cycle:
            raise ValueError(f"Edges contain a cycle: {' -> '.join(cycle)}")
        return self

    def parent_map(self) -> Dict[str, str]:
        """Child -> parent mapping of the edge set."""
        return parent_map((edge.parent, edge.child) for edge in self.edges)

    def edge_for(self, child: str) -> Optional[InferredEdge]:
        for edge in self.edges:
            if edge.child == child:
                return edge
        return None

    def node_for(self, branch: str) -> Optional[BranchNode]:
        for node in self.nodes:
            if node.branch_name == branch:
                return node
        return None

    @property
    def root_branch(self) -> Optional[str]:
        """The branch the tree hangs from, if it exists locally."""
        if self.base_branch in self.branches:
            return self.base_branch
        if self.default_branch in self.branches:
            return self.default_branch
        return None
