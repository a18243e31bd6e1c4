"""Shared fixtures: in-process fakes for everything outside the orchestrator."""

import asyncio
import io
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.console import Console

from devicemedic.domain.models import EventName, RunConfig
from devicemedic.infra.executor import CommandExecutor
from devicemedic.infra.project import AppProject
from devicemedic.infra.relay import RelayServer


class FakeProject(AppProject):
    """Project that skips the platform CLI but keeps real files on disk."""

    def __init__(self, root: Path):
        super().__init__(MagicMock(spec=CommandExecutor))
        self.root = root
        self.prepared = False
        self.removed = False

    def create(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix="project-", dir=self.root))
        (self.path / "www").mkdir()
        return self.path

    def prepare(self, config: RunConfig) -> None:
        self.prepared = True

    def remove(self) -> None:
        super().remove()
        self.removed = True


class RelayRecorder:
    """Hands out unbound relay servers and remembers the last one."""

    def __init__(self) -> None:
        self.relay: Optional[RelayServer] = None
        self.calls: List[Any] = []

    async def __call__(self, ports, external_url, use_tunnel) -> RelayServer:
        self.calls.append((ports, external_url, use_tunnel))
        self.relay = RelayServer(external_url=external_url, use_tunnel=use_tunnel)
        self.relay.port = ports[0]
        return self.relay

    def later(self, delay: float, name: EventName, payload: Optional[Dict[str, Any]] = None) -> None:
        """Emit an event on the current relay after ``delay`` seconds."""
        loop = asyncio.get_running_loop()

        def fire() -> None:
            assert self.relay is not None
            if name is not EventName.DISCONNECT:
                self.relay.mark_connected()
            self.relay.emit(name, payload or {})

        loop.call_later(delay, fire)


def jasmine_done(failed: int) -> Dict[str, Any]:
    return {"specResults": {"specFailed": failed, "specsExecuted": 3}}


@pytest.fixture(autouse=True)
def _restore_cwd(tmp_path, monkeypatch):
    # The runner changes directory into the project it scaffolds.
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def project(tmp_path) -> FakeProject:
    return FakeProject(tmp_path)


@pytest.fixture
def relays() -> RelayRecorder:
    return RelayRecorder()


@pytest.fixture
def executor() -> MagicMock:
    fake = MagicMock(spec=CommandExecutor)
    fake.exec_async = AsyncMock(return_value="")
    fake.exec_sync.return_value = {"code": 0, "stdout": "", "stderr": ""}
    return fake


@pytest.fixture
def chooser() -> MagicMock:
    fake = MagicMock()
    fake.choose_target = AsyncMock(return_value={"target": "emulator-5554"})
    return fake


@pytest.fixture
def console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False)


@pytest.fixture
def make_config():
    def _make(**overrides: Any) -> RunConfig:
        values: Dict[str, Any] = {
            "platform": "android",
            "action": "run",
            "connection_timeout": 5.0,
            "timeout": 30.0,
            "build_name": "medic-test-build",
        }
        values.update(overrides)
        return RunConfig(**values)

    return _make
