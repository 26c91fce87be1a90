"""Service facade exposing the boundary operations as payload-in, payload-out calls.

Payloads use camelCase keys. Errors are raised as BranchTreeError subclasses;
``dispatch`` turns them into ``{"error": ..., "status": ...}`` bodies for a
transport layer.
"""

import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type, TypeVar

import structlog
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from branchtree.errors import (
    BranchTreeError,
    CommandError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from branchtree.extraction.runner import CommandRunner
from branchtree.lifecycle.branches import BranchLifecycle
from branchtree.models.config import Settings
from branchtree.models.design import BranchNamingRule, PlanningSession, TreeSpec
from branchtree.models.snapshot import PayloadModel
from branchtree.notify import Notifier
from branchtree.scanning.manager import ScanManager
from branchtree.storage.state import StateStore

logger = structlog.get_logger(__name__)

RequestT = TypeVar("RequestT", bound=PayloadModel)


class TriggerScanRequest(PayloadModel):
    local_path: Optional[str] = None
    active_path: Optional[str] = Field(None, description="Execution directory of the active session")


class CreateBranchRequest(PayloadModel):
    local_path: Optional[str] = None
    branch_name: Optional[str] = None
    base_branch: Optional[str] = None


class PushBranchRequest(PayloadModel):
    local_path: Optional[str] = None
    branch_name: Optional[str] = None
    force: bool = False
    worktree_path: Optional[str] = None


class RebaseBranchRequest(PayloadModel):
    local_path: Optional[str] = None
    branch_name: Optional[str] = None
    parent_branch: Optional[str] = None
    worktree_path: Optional[str] = None


class CheckDeletableRequest(PayloadModel):
    local_path: Optional[str] = None
    branch_name: Optional[str] = None


class DeleteBranchRequest(PayloadModel):
    local_path: Optional[str] = None
    branch_name: Optional[str] = None
    force: bool = False
    delete_remote: bool = False


def status_for(exc: BaseException) -> int:
    """HTTP-style status code for an exception."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ValidationError, ConflictError, CommandError)):
        return 400
    return 500


def error_payload(exc: BaseException) -> Dict[str, Any]:
    status = status_for(exc)
    message = str(exc) if status < 500 else f"Internal error: {exc}"
    return {"error": message, "status": status}


def parse_request(model: Type[RequestT], payload: Optional[Mapping[str, Any]]) -> RequestT:
    """Validate a request payload.

    Raises:
        ValidationError: If the payload is not an object or has malformed fields
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be an object")
    try:
        return model.model_validate(dict(payload))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid request: {e}") from e


def parse_pin_id(value: Any) -> int:
    """Accept an int or a decimal string; anything else is a client error."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid repository pin id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"\d+", value.strip(), re.ASCII):
        return int(value.strip())
    raise ValidationError(f"Invalid repository pin id: {value!r}")


class BranchTreeService:
    """Entry point for transports (CLI, HTTP adapters) and tests."""

    def __init__(
        self,
        store: Optional[StateStore] = None,
        settings: Optional[Settings] = None,
        runner: Optional[CommandRunner] = None,
        notifier: Optional[Notifier] = None,
        rescan_after_mutation: bool = True,
    ):
        """Initialize the service.

        Args:
            store: Persisted state (defaults to StateStore())
            settings: Application settings
            runner: Command runner for git/gh (defaults to ProcessRunner)
            notifier: Side channel for scan and branch events
            rescan_after_mutation: Start a background scan after each branch mutation
        """
        self.store = store or StateStore()
        self.settings = settings or Settings()
        self.notifier = notifier or Notifier()
        self.scans = ScanManager(self.store, settings=self.settings, runner=runner, notifier=self.notifier)
        self.branches = BranchLifecycle(self.scans)
        self.rescan_after_mutation = rescan_after_mutation

        self._operations: Dict[str, Callable[[Any], Awaitable[Dict[str, Any]]]] = {
            "scan": self.trigger_scan,
            "snapshot": self.read_snapshot,
            "create": self.create_branch,
            "push": self.push_branch,
            "rebase": self.rebase_branch,
            "check-deletable": self.check_deletable,
            "delete": self.delete_branch,
        }

    async def dispatch(self, operation: str, payload: Any) -> Tuple[int, Dict[str, Any]]:
        """Run an operation by name and return ``(status, body)``."""
        handler = self._operations.get(operation)
        if handler is None:
            return 404, {"error": f"Unknown operation: {operation}", "status": 404}
        try:
            return 200, await handler(payload)
        except BranchTreeError as e:
            logger.info("request_rejected", operation=operation, error=str(e))
            body = error_payload(e)
        except Exception as e:
            logger.exception("request_failed", operation=operation)
            body = error_payload(e)
        return body["status"], body

    # ------------------------------------------------------------------
    # Scans and snapshots
    # ------------------------------------------------------------------

    async def trigger_scan(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """``{localPath}`` -> ``{started, repoId}``; the scan itself runs in the background."""
        request = parse_request(TriggerScanRequest, payload)
        if not request.local_path:
            raise ValidationError("localPath is required")
        ticket = await self.scans.trigger_scan(request.local_path, active_path=request.active_path)
        return ticket.to_payload()

    async def read_snapshot(self, pin_id: Any) -> Dict[str, Any]:
        """Pin id -> ``{snapshot, version}`` with designed edges applied.

        ``snapshot`` is None while the pin has never been scanned.
        """
        pin = self.store.get_pin(parse_pin_id(pin_id))
        cached = self.scans.cache.read(pin.id)
        if cached is None:
            return {"snapshot": None, "version": pin.cached_snapshot_version}

        projected = self.scans.project(cached.snapshot)
        return {"snapshot": projected.to_payload(), "version": cached.version}

    async def list_pins(self) -> Dict[str, Any]:
        pins = []
        for pin in self.store.list_pins():
            payload = pin.to_payload()
            payload.pop("cachedSnapshotJson", None)
            pins.append(payload)
        return {"pins": pins}

    # ------------------------------------------------------------------
    # Branch lifecycle
    # ------------------------------------------------------------------

    async def create_branch(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        request = parse_request(CreateBranchRequest, payload)
        result = await self.branches.create_branch(
            request.local_path, request.branch_name, request.base_branch
        )
        await self._refresh(request.local_path)
        return result.to_payload()

    async def push_branch(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        request = parse_request(PushBranchRequest, payload)
        result = await self.branches.push_branch(
            request.local_path,
            request.branch_name,
            force=request.force,
            worktree_path=request.worktree_path,
        )
        await self._refresh(request.local_path)
        return result.to_payload()

    async def rebase_branch(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        request = parse_request(RebaseBranchRequest, payload)
        result = await self.branches.rebase_branch(
            request.local_path,
            request.branch_name,
            request.parent_branch,
            worktree_path=request.worktree_path,
        )
        await self._refresh(request.local_path)
        return result.to_payload()

    async def check_deletable(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        request = parse_request(CheckDeletableRequest, payload)
        result = await self.branches.check_deletable(request.local_path, request.branch_name)
        return result.to_payload()

    async def delete_branch(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        request = parse_request(DeleteBranchRequest, payload)
        result = await self.branches.delete_branch(
            request.local_path,
            request.branch_name,
            force=request.force,
            delete_remote=request.delete_remote,
        )
        await self._refresh(request.local_path)
        return result.to_payload()

    async def _refresh(self, local_path: Optional[str]) -> None:
        if not self.rescan_after_mutation or not local_path:
            return
        try:
            await self.scans.trigger_scan(local_path)
        except BranchTreeError as e:
            logger.warning("rescan_not_started", path=local_path, error=str(e))

    # ------------------------------------------------------------------
    # Designed topology inputs
    # ------------------------------------------------------------------

    async def save_planning_session(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            session = PlanningSession.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid planning session: {e}") from e
        return self.store.upsert_planning_session(session).to_payload()

    async def confirm_planning_session(
        self, session_id: str, branch_map: Optional[Mapping[str, str]] = None
    ) -> Dict[str, Any]:
        return self.store.confirm_planning_session(session_id, branch_map).to_payload()

    async def save_tree_spec(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            spec = TreeSpec.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid tree spec: {e}") from e
        return self.store.save_tree_spec(spec).to_payload()

    async def set_naming_rule(self, repo_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            rule = BranchNamingRule.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid naming rule: {e}") from e
        self.store.set_naming_rule(repo_id, rule)
        return rule.to_payload()

    async def close(self) -> None:
        await self.scans.wait_idle()
        self.scans.shutdown()
