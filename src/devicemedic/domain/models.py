"""Domain models for device test runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


SUPPORTED_FARM_PLATFORMS = ("android", "ios")


class Action(str, Enum):
    """What the platform CLI is asked to do with the scaffolded app."""
    BUILD = "build"
    RUN = "run"
    EMULATE = "emulate"


class RunPhase(str, Enum):
    """Lifecycle phases of a single run, in order."""
    IDLE = "idle"
    SCAFFOLDING = "scaffolding"
    PREPARING = "preparing"
    SERVER_STARTING = "server_starting"
    EXECUTING = "executing"
    AWAITING_RESULT = "awaiting_result"
    TEARING_DOWN = "tearing_down"
    DONE = "done"


class Verdict(str, Enum):
    UNRESOLVED = "unresolved"
    PASSED = "passed"
    FAILED = "failed"


class EventName(str, Enum):
    """Test lifecycle events relayed from the device."""
    JASMINE_STARTED = "jasmineStarted"
    SPEC_STARTED = "specStarted"
    SPEC_DONE = "specDone"
    SUITE_STARTED = "suiteStarted"
    SUITE_DONE = "suiteDone"
    JASMINE_DONE = "jasmineDone"
    DEVICE_LOG = "deviceLog"
    DEVICE_INFO = "deviceInfo"
    DISCONNECT = "disconnect"


REPORTER_EVENTS = (
    EventName.JASMINE_STARTED,
    EventName.SPEC_STARTED,
    EventName.SPEC_DONE,
    EventName.SUITE_STARTED,
    EventName.SUITE_DONE,
    EventName.JASMINE_DONE,
)


class Event(BaseModel):
    """A single event on the relay channel.

    Events come either from the device socket or from the device farm
    poll bridge; both producers share this shape.
    """
    model_config = ConfigDict(frozen=True)

    name: EventName
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: str = "relay"

    @property
    def failure_count(self) -> Optional[int]:
        """Number of failed specs carried by a ``jasmineDone`` payload.

        ``None`` when the payload has no integer ``specResults.specFailed``.
        """
        spec_results = self.payload.get("specResults")
        if not isinstance(spec_results, dict):
            return None
        failed = spec_results.get("specFailed")
        if isinstance(failed, bool) or not isinstance(failed, int):
            return None
        return failed


class RunConfig(BaseModel):
    """Immutable description of one test run."""
    model_config = ConfigDict(frozen=True)

    platform: str
    action: Action = Action.RUN
    args: str = ""
    plugins: List[str] = Field(default_factory=list)
    output_dir: Optional[str] = None
    verbose: bool = False

    # Relay server
    ports: Tuple[int, int] = (8008, 8009)
    external_server_url: Optional[str] = None
    use_tunnel: bool = False

    # Device farm
    use_sauce: bool = False
    sauce_user: Optional[str] = None
    sauce_key: Optional[str] = None
    build_name: str = Field(
        default_factory=lambda: f"devicemedic-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
    )
    appium_version: str = "1.5.2"
    android_platform_version: str = "4.4"
    ios_platform_version: str = "9.3"
    poll_interval: float = 5.0

    # Timing (seconds)
    connection_timeout: float = 300.0
    timeout: float = 3600.0

    cleanup: bool = True
    log_mins: int = 10
    tcc_db: Optional[str] = None

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, value: Tuple[int, int]) -> Tuple[int, int]:
        low, high = value
        if low > high:
            raise ValueError(f"Invalid port range: {low}-{high}")
        return value

    @property
    def platform_id(self) -> str:
        """Platform name without any ``@version`` or path suffix."""
        return self.platform.split("@")[0].strip().lower()

    @property
    def should_wait_for_result(self) -> bool:
        return self.action in (Action.RUN, Action.EMULATE)


class FarmJob(BaseModel):
    """Job record returned by the device farm REST API."""
    id: str
    name: Optional[str] = None
    video_url: Optional[str] = None
    log_url: Optional[str] = None


class RunSummary(BaseModel):
    """Summary written next to the reporter output after each run."""
    platform: str
    action: Action
    build_name: str
    use_sauce: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    verdict: Verdict = Verdict.UNRESOLVED
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def total_duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
