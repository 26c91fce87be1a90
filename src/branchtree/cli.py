"""Command-line interface for branchtree."""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from branchtree.api import BranchTreeService
from branchtree.errors import BranchTreeError
from branchtree.logging_config import configure_logging
from branchtree.models.config import Settings

app = typer.Typer(
    name="branchtree",
    help="Branch topology tracking - scan repositories, infer branch trees, manage branches",
    add_completion=False,
)
console = Console()


def _run(action: Callable[[BranchTreeService], Awaitable[Any]], verbose: bool = False) -> Any:
    """Run an async action against a fresh service, reporting errors and exiting non-zero."""
    settings = Settings()
    configure_logging("DEBUG" if verbose else settings.log_level)

    async def runner() -> Any:
        service = BranchTreeService(settings=settings)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except BranchTreeError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


def _render_tree(snapshot: Dict[str, Any]) -> Tree:
    edges = snapshot.get("edges", [])
    nodes = {node["branchName"]: node for node in snapshot.get("nodes", [])}
    children: Dict[str, list] = {}
    has_parent = set()
    for edge in edges:
        children.setdefault(edge["parent"], []).append(edge)
        has_parent.add(edge["child"])

    def label(branch: str, edge: Optional[Dict[str, Any]] = None) -> str:
        node = nodes.get(branch, {})
        text = f"[bold]{branch}[/bold]"
        counts = node.get("aheadBehind")
        if counts:
            text += f" [dim]+{counts['ahead']}/-{counts['behind']}[/dim]"
        if edge is not None:
            if edge.get("isDesigned"):
                text += " [magenta](designed)[/magenta]"
            elif edge.get("confidence") == "low":
                text += " [yellow]?[/yellow]"
        badges = node.get("badges") or []
        if badges:
            text += " " + " ".join(f"[cyan]{b}[/cyan]" for b in badges)
        return text

    def add(parent_tree: Tree, branch: str) -> None:
        for edge in sorted(children.get(branch, []), key=lambda e: e["child"]):
            add(parent_tree.add(label(edge["child"], edge)), edge["child"])

    tree = Tree(f"[bold green]{snapshot['repoId']}[/bold green]")
    for branch in sorted(b for b in snapshot.get("branches", []) if b not in has_parent):
        add(tree.add(label(branch)), branch)
    return tree


@app.command()
def scan(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    active: Optional[Path] = typer.Option(None, "--active", "-a", help="Execution directory of the active session"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the scan to finish"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Scan a repository and cache its branch topology."""

    async def action(service: BranchTreeService) -> None:
        ticket = await service.scans.trigger_scan(repo_path, active_path=active)
        if not ticket.started:
            console.print(f"[yellow]Scan already in progress for {ticket.repo_id}[/yellow]")
            return
        console.print(f"[bold green]Scanning:[/bold green] {ticket.repo_id} (pin {ticket.pin_id})")
        if wait and ticket.task is not None:
            cached = await ticket.task
            snapshot = cached.snapshot
            console.print(
                f"[bold green]✓[/bold green] {len(snapshot.branches)} branches, "
                f"{len(snapshot.warnings)} warnings (version {cached.version})"
            )

    _run(action, verbose)


@app.command()
def show(
    pin_id: int = typer.Argument(..., help="Repository pin id (see `branchtree pins`)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw payload"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Show the cached branch tree with designed edges applied."""
    result = _run(lambda service: service.read_snapshot(pin_id), verbose)

    if as_json:
        console.print_json(json.dumps(result))
        return

    snapshot = result["snapshot"]
    if snapshot is None:
        console.print("[yellow]Not scanned yet. Run `branchtree scan` first.[/yellow]")
        return

    console.print(_render_tree(snapshot))
    console.print(f"[dim]version {result['version']}, scanned {snapshot.get('scannedAt')}[/dim]")

    if snapshot["warnings"]:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Severity")
        table.add_column("Code", style="cyan")
        table.add_column("Message")
        for warning in snapshot["warnings"]:
            color = "red" if warning["severity"] == "error" else "yellow"
            table.add_row(f"[{color}]{warning['severity']}[/{color}]", warning["code"], warning["message"])
        console.print(table)

    restart = snapshot.get("restart")
    if restart:
        console.print(f"\n[bold]Resume:[/bold] {restart['cdCommand']}")


@app.command()
def pins(verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")) -> None:
    """List registered repositories."""
    result = _run(lambda service: service.list_pins(), verbose)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Id", justify="right")
    table.add_column("Repository", style="cyan")
    table.add_column("Path")
    table.add_column("Base")
    table.add_column("Version", justify="right")
    for pin in result["pins"]:
        table.add_row(
            str(pin["id"]),
            pin["repoId"],
            pin["localPath"],
            pin.get("baseBranch") or "-",
            str(pin["cachedSnapshotVersion"]),
        )
    console.print(table)


@app.command()
def create(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    branch: str = typer.Argument(..., help="New branch name"),
    base: str = typer.Option(..., "--base", "-b", help="Branch to start from"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Create a branch."""
    payload = {"localPath": str(repo_path), "branchName": branch, "baseBranch": base}
    _run(lambda service: service.create_branch(payload), verbose)
    console.print(f"[bold green]✓[/bold green] Created {branch} from {base}")


@app.command()
def push(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    branch: str = typer.Argument(..., help="Branch to push"),
    force: bool = typer.Option(False, "--force", "-f", help="Force push with lease"),
    worktree: Optional[Path] = typer.Option(None, "--worktree", "-w", help="Worktree to push from"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Push a branch and set its upstream."""
    payload = {
        "localPath": str(repo_path),
        "branchName": branch,
        "force": force,
        "worktreePath": str(worktree) if worktree else None,
    }
    _run(lambda service: service.push_branch(payload), verbose)
    console.print(f"[bold green]✓[/bold green] Pushed {branch}")


@app.command()
def rebase(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    branch: str = typer.Argument(..., help="Branch to rebase"),
    parent: str = typer.Option(..., "--onto", "-p", help="Parent branch"),
    worktree: Optional[Path] = typer.Option(None, "--worktree", "-w", help="Worktree holding the branch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Rebase a branch onto its parent (aborts on conflict)."""
    payload = {
        "localPath": str(repo_path),
        "branchName": branch,
        "parentBranch": parent,
        "worktreePath": str(worktree) if worktree else None,
    }
    result = _run(lambda service: service.rebase_branch(payload), verbose)
    console.print(f"[bold green]✓[/bold green] Rebased {branch} onto {result['onto']}")


@app.command("check-deletable")
def check_deletable(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    branch: str = typer.Argument(..., help="Branch to check"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Tell whether a branch can be deleted safely."""
    payload = {"localPath": str(repo_path), "branchName": branch}
    result = _run(lambda service: service.check_deletable(payload), verbose)
    if result["deletable"]:
        console.print(f"[bold green]✓[/bold green] {branch} can be deleted")
    else:
        console.print(f"[yellow]{branch} should not be deleted:[/yellow] {result['reason']}")


@app.command()
def delete(
    repo_path: Path = typer.Argument(..., help="Path to the working copy"),
    branch: str = typer.Argument(..., help="Branch to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Delete unmerged branch and its worktree"),
    remote: bool = typer.Option(False, "--remote", "-r", help="Also delete the remote branch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Delete a branch and re-parent its children in the designed tree."""
    payload = {
        "localPath": str(repo_path),
        "branchName": branch,
        "force": force,
        "deleteRemote": remote,
    }
    result = _run(lambda service: service.delete_branch(payload), verbose)
    console.print(f"[bold green]✓[/bold green] Deleted {branch}")
    for edge in result["reparentedEdges"]:
        console.print(f"  {edge['child']} → {edge['newParent']}")
    for warning in result["warnings"]:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


if __name__ == "__main__":
    app()
