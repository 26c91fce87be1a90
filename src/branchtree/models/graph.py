"""Parent-map helpers shared by the snapshot, tree spec and overlay code."""

from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple


def parent_map(edges: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Build a child -> parent mapping from (parent, child) pairs.

    Args:
        edges: Iterable of (parent, child) tuples

    Returns:
        Dictionary keyed by child

    Raises:
        ValueError: If a child appears with more than one parent
    """
    parents: Dict[str, str] = {}
    for parent, child in edges:
        if child in parents and parents[child] != parent:
            raise ValueError(
                f"Branch {child} has more than one parent: {parents[child]}, {parent}"
            )
        parents[child] = parent
    return parents


def would_create_cycle(parents: Mapping[str, str], parent: str, child: str) -> bool:
    """Check whether adding parent -> child to the mapping closes a loop.

    Walks up from ``parent``; if ``child`` is found among its ancestors the
    new edge would make ``child`` its own ancestor.
    """
    if parent == child:
        return True

    seen: Set[str] = set()
    current: Optional[str] = parent
    while current is not None and current not in seen:
        if current == child:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


def find_cycle(parents: Mapping[str, str]) -> Optional[List[str]]:
    """Return the branches of the first cycle found, or None for a forest."""
    finished: Set[str] = set()
    for start in sorted(parents):
        path: List[str] = []
        on_path: Set[str] = set()
        current: Optional[str] = start
        while current is not None and current not in finished:
            if current in on_path:
                return path[path.index(current):]
            path.append(current)
            on_path.add(current)
            current = parents.get(current)
        finished.update(path)
    return None


def ancestors(parents: Mapping[str, str], branch: str) -> List[str]:
    """List the ancestors of a branch, nearest first."""
    result: List[str] = []
    seen: Set[str] = {branch}
    current = parents.get(branch)
    while current is not None and current not in seen:
        result.append(current)
        seen.add(current)
        current = parents.get(current)
    return result


def reachable_from(parents: Mapping[str, str], root: str) -> Set[str]:
    """Return every branch whose ancestor chain ends at ``root``."""
    children: Dict[str, List[str]] = {}
    for child, parent in parents.items():
        children.setdefault(parent, []).append(child)

    reached: Set[str] = set()
    stack = [root]
    while stack:
        node = stack.pop()
        for child in children.get(node, []):
            if child not in reached:
                reached.add(child)
                stack.append(child)
    return reached
