"""Mutable state owned by a single run."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from devicemedic.domain.models import RunPhase, Verdict
from devicemedic.domain.types import TargetInfo

if TYPE_CHECKING:
    from devicemedic.infra.farm import RemoteSession
    from devicemedic.infra.project import AppProject
    from devicemedic.infra.relay import RelayServer
    from devicemedic.orchestration.bridge import EventBridge


PHASE_ORDER: List[RunPhase] = list(RunPhase)


@dataclass
class RunState:
    """Everything a run acquires, in the order it acquires it.

    Phases only move forward. Any phase may jump straight to
    ``TEARING_DOWN``; ``DONE`` is terminal.
    """

    phase: RunPhase = RunPhase.IDLE
    project: Optional["AppProject"] = None
    previous_cwd: Optional[str] = None
    target: Optional[TargetInfo] = None
    relay: Optional["RelayServer"] = None
    session: Optional["RemoteSession"] = None
    bridge: Optional["EventBridge"] = None
    verdict: Verdict = Verdict.UNRESOLVED
    teardown_runs: int = 0
    history: List[RunPhase] = field(default_factory=lambda: [RunPhase.IDLE])

    @property
    def project_dir(self) -> Optional[Path]:
        return self.project.path if self.project is not None else None

    def advance(self, phase: RunPhase) -> None:
        if PHASE_ORDER.index(phase) <= PHASE_ORDER.index(self.phase):
            raise RuntimeError(f"Illegal run phase transition {self.phase.value} -> {phase.value}")
        if phase is RunPhase.DONE and self.phase is not RunPhase.TEARING_DOWN:
            raise RuntimeError("A run can only finish after tearing down")
        self.phase = phase
        self.history.append(phase)

    def resolve(self, passed: bool) -> Verdict:
        if self.verdict is not Verdict.UNRESOLVED:
            raise RuntimeError(f"Verdict already resolved as {self.verdict.value}")
        self.verdict = Verdict.PASSED if passed else Verdict.FAILED
        return self.verdict
