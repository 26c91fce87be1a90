"""Persistent state for pins, planning sessions, tree specs and naming rules.

Everything lives in one JSON document (``state.json`` under the state
directory). Writes go through a temporary file and ``os.replace`` so a crash
never leaves a half-written file behind.
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from branchtree.errors import ConflictError, NotFoundError, ValidationError
from branchtree.models.design import BranchNamingRule, PlanningSession, TreeSpec, TreeSpecEdge
from branchtree.models.repository import RepositoryPin
from branchtree.models.snapshot import ObservedSnapshot
from branchtree.storage.config import StorageConfig

logger = structlog.get_logger(__name__)

STATE_FORMAT_VERSION = "1"


def tree_spec_key(repo_id: str, base_branch: str) -> str:
    return f"{repo_id}#{base_branch}"


def normalize_path(path: Union[str, Path]) -> str:
    """Canonical string form of a working-copy path (pin key)."""
    return str(Path(path).expanduser().resolve())


class BranchTreeState(BaseModel):
    """Root document of the state file."""

    version: str = Field(STATE_FORMAT_VERSION, description="State file format version")
    next_pin_id: int = Field(1, ge=1, description="Id assigned to the next registered pin")
    pins: Dict[str, RepositoryPin] = Field(
        default_factory=dict, description="Pins keyed by local path"
    )
    planning_sessions: Dict[str, PlanningSession] = Field(
        default_factory=dict, description="Sessions keyed by id"
    )
    tree_specs: Dict[str, TreeSpec] = Field(
        default_factory=dict, description="Tree specs keyed by repo id and base branch"
    )
    naming_rules: Dict[str, BranchNamingRule] = Field(
        default_factory=dict, description="Naming rules keyed by repo id"
    )


class StateStore:
    """Manages the persisted state document.

    Safe to share between the event loop and worker threads; every
    operation holds an internal lock for its read-modify-write.
    """

    def __init__(self, config: Optional[StorageConfig] = None, state_dir: Optional[Path] = None):
        """Initialize the state store.

        Args:
            config: Storage configuration (defaults to StorageConfig())
            state_dir: Overrides config.state_dir
        """
        self.config = config or StorageConfig()
        if state_dir is not None:
            self.config = self.config.model_copy(update={"state_dir": Path(state_dir)})
        self.state_file = self.config.state_file
        self._state: Optional[BranchTreeState] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load_or_create(self) -> BranchTreeState:
        """Load the existing state or create a new one.

        Raises:
            ValidationError: If the file was written by an unknown format version
        """
        with self._lock:
            if self._state is not None:
                return self._state

            self.config.ensure_state_dir()

            if not self.state_file.exists():
                self._state = BranchTreeState()
                return self._state

            try:
                with open(self.state_file, "r") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("state_file_unreadable", path=str(self.state_file), error=str(e))
                self._state = BranchTreeState()
                return self._state

            version = data.get("version") if isinstance(data, dict) else None
            if version != STATE_FORMAT_VERSION:
                raise ValidationError(
                    f"Unsupported state file version {version!r} in {self.state_file}"
                )

            try:
                self._state = BranchTreeState.model_validate(data)
            except PydanticValidationError as e:
                logger.warning("state_file_invalid", path=str(self.state_file), error=str(e))
                self._state = BranchTreeState()
            return self._state

    def save(self) -> None:
        """Save the current state to disk using an atomic write."""
        with self._lock:
            if self._state is None:
                return

            self.config.ensure_state_dir()
            fd, temp_path = tempfile.mkstemp(
                dir=self.config.state_dir, prefix=".state_", suffix=".json.tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(self._state.model_dump(mode="json"), f, indent=2)
                os.replace(temp_path, self.state_file)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise

    # ------------------------------------------------------------------
    # Repository pins
    # ------------------------------------------------------------------

    def register_pin(
        self,
        local_path: Union[str, Path],
        repo_id: str,
        base_branch: Optional[str] = None,
        label: Optional[str] = None,
    ) -> RepositoryPin:
        """Register a working copy, or refresh an existing registration.

        Registration is keyed by the resolved path; registering the same
        path again keeps the pin id and cached snapshot.
        """
        key = normalize_path(local_path)
        with self._lock:
            state = self.load_or_create()
            pin = state.pins.get(key)
            now = datetime.now()

            if pin is None:
                pin = RepositoryPin(
                    id=state.next_pin_id,
                    repo_id=repo_id,
                    local_path=key,
                    base_branch=base_branch,
                    label=label,
                    created_at=now,
                    last_used_at=now,
                )
                state.pins[key] = pin
                state.next_pin_id += 1
                logger.info("pin_registered", pin_id=pin.id, repo_id=repo_id, path=key)
            else:
                pin.repo_id = repo_id
                pin.last_used_at = now
                if base_branch:
                    pin.base_branch = base_branch
                if label:
                    pin.label = label

            self.save()
            return pin.model_copy()

    def get_pin(self, pin_id: int) -> RepositoryPin:
        """Look up a pin by id.

        Raises:
            NotFoundError: If no pin has this id
        """
        with self._lock:
            for pin in self.load_or_create().pins.values():
                if pin.id == pin_id:
                    return pin.model_copy()
        raise NotFoundError(f"Repository pin {pin_id} not found")

    def get_pin_by_path(self, local_path: Union[str, Path]) -> Optional[RepositoryPin]:
        with self._lock:
            pin = self.load_or_create().pins.get(normalize_path(local_path))
            return pin.model_copy() if pin is not None else None

    def list_pins(self) -> List[RepositoryPin]:
        with self._lock:
            pins = [pin.model_copy() for pin in self.load_or_create().pins.values()]
        return sorted(pins, key=lambda p: p.id)

    def save_snapshot(self, pin_id: int, snapshot: ObservedSnapshot) -> int:
        """Replace the cached snapshot of a pin.

        Returns:
            The new cached snapshot version (previous + 1)
        """
        payload = snapshot.model_dump_json(by_alias=True)
        with self._lock:
            state = self.load_or_create()
            for key, pin in state.pins.items():
                if pin.id == pin_id:
                    updated = pin.model_copy(
                        update={
                            "cached_snapshot_json": payload,
                            "cached_snapshot_version": pin.cached_snapshot_version + 1,
                            "last_used_at": datetime.now(),
                        }
                    )
                    state.pins[key] = updated
                    try:
                        self.save()
                    except Exception:
                        # Readers must keep seeing the last snapshot that reached disk
                        state.pins[key] = pin
                        raise
                    return updated.cached_snapshot_version
        raise NotFoundError(f"Repository pin {pin_id} not found")

    # ------------------------------------------------------------------
    # Planning sessions
    # ------------------------------------------------------------------

    def get_planning_session(self, session_id: str) -> PlanningSession:
        with self._lock:
            session = self.load_or_create().planning_sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Planning session {session_id} not found")
            return session.model_copy(deep=True)

    def upsert_planning_session(self, session: PlanningSession) -> PlanningSession:
        """Create or rewrite a draft session.

        Raises:
            ConflictError: If the stored session is already confirmed
        """
        with self._lock:
            state = self.load_or_create()
            existing = state.planning_sessions.get(session.id)
            if existing is not None and existing.is_confirmed:
                raise ConflictError(f"Planning session {session.id} is confirmed and cannot be edited")
            if session.is_confirmed:
                raise ConflictError("Sessions are confirmed with confirm_planning_session")

            stored = session.model_copy(deep=True, update={"updated_at": datetime.now()})
            state.planning_sessions[session.id] = stored
            self.save()
            return stored.model_copy(deep=True)

    def confirm_planning_session(
        self, session_id: str, branch_map: Optional[Mapping[str, str]] = None
    ) -> PlanningSession:
        """Move a session from draft to confirmed, fixing its branch names.

        Args:
            session_id: Session to confirm
            branch_map: Task id -> branch name assignments applied on confirmation

        Raises:
            NotFoundError: If the session does not exist
            ConflictError: If it is already confirmed
        """
        with self._lock:
            state = self.load_or_create()
            session = state.planning_sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Planning session {session_id} not found")
            if session.is_confirmed:
                raise ConflictError(f"Planning session {session_id} is already confirmed")

            nodes = []
            for node in session.nodes:
                branch = (branch_map or {}).get(node.id, node.branch_name)
                nodes.append(node.model_copy(update={"branch_name": branch}))

            confirmed = session.model_copy(
                deep=True,
                update={"nodes": nodes, "status": "confirmed", "updated_at": datetime.now()},
            )
            state.planning_sessions[session_id] = confirmed
            self.save()
            logger.info("planning_session_confirmed", session_id=session_id, repo_id=session.repo_id)
            return confirmed.model_copy(deep=True)

    def list_confirmed_sessions(
        self, repo_id: str, base_branch: Optional[str] = None
    ) -> List[PlanningSession]:
        with self._lock:
            sessions = [
                s.model_copy(deep=True)
                for s in self.load_or_create().planning_sessions.values()
                if s.is_confirmed
                and s.repo_id == repo_id
                and (base_branch is None or s.base_branch == base_branch)
            ]
        return sorted(sessions, key=lambda s: (s.updated_at, s.id))

    # ------------------------------------------------------------------
    # Tree specs
    # ------------------------------------------------------------------

    def get_tree_spec(self, repo_id: str, base_branch: str) -> Optional[TreeSpec]:
        with self._lock:
            spec = self.load_or_create().tree_specs.get(tree_spec_key(repo_id, base_branch))
            return spec.model_copy(deep=True) if spec is not None else None

    def list_tree_specs(self, repo_id: str) -> List[TreeSpec]:
        with self._lock:
            return [
                spec.model_copy(deep=True)
                for spec in self.load_or_create().tree_specs.values()
                if spec.repo_id == repo_id
            ]

    def save_tree_spec(self, spec: TreeSpec) -> TreeSpec:
        """Store a tree spec, replacing any previous one for the same key.

        Raises:
            ValidationError: If the edges do not form a forest
        """
        try:
            validated = TreeSpec.model_validate(spec.model_dump())
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid tree spec: {e}") from e

        validated.updated_at = datetime.now()
        with self._lock:
            state = self.load_or_create()
            state.tree_specs[tree_spec_key(validated.repo_id, validated.base_branch)] = validated
            self.save()
        return validated.model_copy(deep=True)

    def save_tree_specs(self, specs: Sequence[TreeSpec]) -> None:
        """Store several tree specs in one write."""
        validated = []
        for spec in specs:
            try:
                validated.append(TreeSpec.model_validate(spec.model_dump()))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid tree spec: {e}") from e

        with self._lock:
            state = self.load_or_create()
            for spec in validated:
                spec.updated_at = datetime.now()
                state.tree_specs[tree_spec_key(spec.repo_id, spec.base_branch)] = spec
            self.save()

    def replace_tree_spec_edges(
        self, repo_id: str, base_branch: str, edges: Sequence[TreeSpecEdge]
    ) -> TreeSpec:
        """Replace the edge set of a tree spec, creating the spec if needed."""
        spec = self.get_tree_spec(repo_id, base_branch) or TreeSpec(
            repo_id=repo_id, base_branch=base_branch
        )
        return self.save_tree_spec(spec.model_copy(update={"edges": list(edges)}))

    # ------------------------------------------------------------------
    # Naming rules
    # ------------------------------------------------------------------

    def get_naming_rule(self, repo_id: str) -> Optional[BranchNamingRule]:
        with self._lock:
            rule = self.load_or_create().naming_rules.get(repo_id)
            return rule.model_copy(deep=True) if rule is not None else None

    def set_naming_rule(self, repo_id: str, rule: BranchNamingRule) -> None:
        with self._lock:
            state = self.load_or_create()
            state.naming_rules[repo_id] = rule.model_copy(deep=True)
            self.save()
