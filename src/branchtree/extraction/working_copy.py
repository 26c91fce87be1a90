"""Validation of user-supplied working-copy paths."""

from pathlib import Path
from typing import Union

import git
from git import Repo

from branchtree.errors import NotFoundError, ValidationError


def open_working_copy(local_path: Union[str, Path, None]) -> Path:
    """Resolve a path to the top-level directory of its git working copy.

    Args:
        local_path: Path supplied by the caller

    Returns:
        Absolute path of the working tree

    Raises:
        ValidationError: If the path is missing or not inside a git working copy
        NotFoundError: If the path does not exist
    """
    if local_path is None or not str(local_path).strip():
        raise ValidationError("localPath is required")

    path = Path(local_path).expanduser()
    if not path.exists():
        raise NotFoundError(f"Path does not exist: {path}")

    try:
        repo = Repo(path, search_parent_directories=True)
    except git.exc.InvalidGitRepositoryError as e:
        raise ValidationError(f"Not a git repository: {path}") from e
    except git.exc.NoSuchPathError as e:
        raise NotFoundError(f"Path does not exist: {path}") from e

    try:
        if repo.bare or repo.working_tree_dir is None:
            raise ValidationError(f"Bare repositories have no working copy: {path}")
        return Path(repo.working_tree_dir).resolve()
    finally:
        repo.close()
