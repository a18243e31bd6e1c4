"""Type definitions shared by the orchestrator and its collaborators."""

from typing import Optional, TypedDict


class CommandResult(TypedDict):
    """Result of running an external command."""
    code: int
    stdout: str
    stderr: str


class TargetInfo(TypedDict, total=False):
    """Device chosen for a local run."""
    target: str
    sim_id: Optional[str]
