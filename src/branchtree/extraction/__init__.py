"""Observation of repository state through external tools."""

from branchtree.extraction.observer import RepositoryObserver
from branchtree.extraction.runner import CommandResult, CommandRunner, ProcessRunner

__all__ = ["RepositoryObserver", "ProcessRunner", "CommandRunner", "CommandResult"]
