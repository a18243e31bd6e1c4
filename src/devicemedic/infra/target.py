"""Choosing the local device or emulator to run against."""

import json
from typing import Dict, List, Optional

import structlog

from devicemedic.domain.errors import InfrastructureError
from devicemedic.domain.types import TargetInfo
from devicemedic.infra.executor import CommandExecutor

logger = structlog.get_logger()


def parse_adb_devices(output: str) -> List[str]:
    """Return serials of devices ``adb devices`` reports as ready."""
    serials: List[str] = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials


def _runtime_version(runtime_key: str) -> List[int]:
    # com.apple.CoreSimulator.SimRuntime.iOS-17-4 -> [17, 4]
    tail = runtime_key.rsplit(".", 1)[-1]
    numbers = []
    for part in tail.split("-")[1:]:
        try:
            numbers.append(int(part))
        except ValueError:
            break
    return numbers


def pick_ios_simulator(simctl_json: str) -> Optional[Dict[str, str]]:
    """Pick the iPhone simulator on the newest available runtime."""
    data = json.loads(simctl_json)
    best: Optional[Dict[str, str]] = None
    best_version: List[int] = []
    for runtime, devices in (data.get("devices") or {}).items():
        if "iOS" not in runtime:
            continue
        version = _runtime_version(runtime)
        for device in devices:
            if not device.get("isAvailable", True):
                continue
            if not str(device.get("name", "")).startswith("iPhone"):
                continue
            if best is None or version > best_version:
                best = {"name": device["name"], "udid": device["udid"]}
                best_version = version
    return best


class TargetChooser:
    """Resolves the device identifier for a local run."""

    def __init__(self, executor: CommandExecutor, project_dir: str, platform_id: str):
        self.executor = executor
        self.project_dir = project_dir
        self.platform_id = platform_id

    async def choose_target(self, use_emulator: bool) -> TargetInfo:
        logger.info(
            "Choosing target",
            platform=self.platform_id,
            use_emulator=use_emulator,
        )
        if self.platform_id == "android":
            target = self._choose_android(use_emulator)
        elif self.platform_id == "ios":
            target = self._choose_ios()
        elif self.platform_id == "windows":
            target = {"target": "emulator"}
        else:
            raise InfrastructureError(f"Target selection is not supported for {self.platform_id}")
        logger.info("Target chosen", platform=self.platform_id, **target)
        return target

    def _choose_android(self, use_emulator: bool) -> TargetInfo:
        result = self.executor.exec_sync("adb devices", cwd=self.project_dir)
        serials = parse_adb_devices(result["stdout"]) if result["code"] == 0 else []
        if use_emulator:
            serials = [s for s in serials if s.startswith("emulator-")]
        if serials:
            return {"target": serials[0]}

        if use_emulator:
            avds = self.executor.exec_sync("emulator -list-avds", cwd=self.project_dir)
            names = [line.strip() for line in avds["stdout"].splitlines() if line.strip()]
            if avds["code"] == 0 and names:
                return {"target": names[0]}

        raise InfrastructureError("No android device or emulator available to run the tests on")

    def _choose_ios(self) -> TargetInfo:
        result = self.executor.exec_sync(
            "xcrun simctl list devices available --json", cwd=self.project_dir
        )
        if result["code"] != 0:
            raise InfrastructureError(f"Unable to list iOS simulators: {result['stderr'].strip()}")
        simulator = pick_ios_simulator(result["stdout"])
        if simulator is None:
            raise InfrastructureError("No iPhone simulator available to run the tests on")
        return {"target": simulator["name"], "sim_id": simulator["udid"]}
