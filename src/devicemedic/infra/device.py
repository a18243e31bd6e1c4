"""Local device housekeeping: logs, uninstall, emulator shutdown, permissions."""

import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

import structlog

from devicemedic.domain.types import TargetInfo
from devicemedic.infra.executor import CommandExecutor

logger = structlog.get_logger()

DEFAULT_APP_NAME = "HelloCordova"
ANDROID_PACKAGE = "io.cordova.hellocordova"
IOS_BUNDLE_ID = "io.cordova.hellocordova"


class DeviceLogCollector:
    """Saves the device log of the last run into the output directory."""

    def __init__(
        self,
        executor: CommandExecutor,
        platform_id: str,
        project_dir: Path,
        output_dir: Path,
        target: Optional[TargetInfo] = None,
    ):
        self.executor = executor
        self.platform_id = platform_id
        self.project_dir = project_dir
        self.output_dir = output_dir
        self.target = target or {}

    def log_path(self) -> Path:
        return self.output_dir / f"device_{self.platform_id}.log"

    def collect(self, minutes: int) -> Optional[Path]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        if self.platform_id == "android":
            return self._collect_android(minutes)
        if self.platform_id == "ios":
            return self._collect_ios()
        logger.info("Log collection is not supported", platform=self.platform_id)
        return None

    def _collect_android(self, minutes: int) -> Optional[Path]:
        serial = self.target.get("target")
        device_flag = f"-s {serial} " if serial and serial.startswith("emulator-") else ""
        since = (datetime.now() - timedelta(minutes=minutes)).strftime("%m-%d %H:%M:%S.000")
        cmd = f"adb {device_flag}logcat -d -v time -t '{since}'"
        result = self.executor.exec_sync(cmd, cwd=self.project_dir)
        if result["code"] != 0:
            # Older adb builds only accept a line count for -t.
            result = self.executor.exec_sync(f"adb {device_flag}logcat -d -v time", cwd=self.project_dir)
        path = self.log_path()
        path.write_text(result["stdout"])
        logger.info("Device logs collected", path=str(path))
        return path

    def _collect_ios(self) -> Optional[Path]:
        sim_id = self.target.get("sim_id")
        if not sim_id:
            logger.warning("No simulator id known; skipping log collection")
            return None
        system_log = (
            Path.home() / "Library" / "Logs" / "CoreSimulator" / sim_id / "system.log"
        )
        if not system_log.exists():
            logger.warning("Simulator log not found", path=str(system_log))
            return None
        path = self.log_path()
        path.write_text(system_log.read_text(errors="replace"))
        logger.info("Device logs collected", path=str(path))
        return path


class AppUninstaller:
    def __init__(self, executor: CommandExecutor, project_dir: Path, platform_id: str):
        self.executor = executor
        self.project_dir = project_dir
        self.platform_id = platform_id

    def uninstall(self, target: Optional[TargetInfo], app_name: str = DEFAULT_APP_NAME) -> None:
        target = target or {}
        if self.platform_id == "android":
            serial = target.get("target")
            device_flag = f"-s {serial} " if serial and serial.startswith("emulator-") else ""
            cmd = f"adb {device_flag}uninstall {ANDROID_PACKAGE}"
        elif self.platform_id == "ios":
            sim_id = target.get("sim_id")
            if not sim_id:
                logger.warning("No simulator id known; skipping uninstall", app_name=app_name)
                return
            cmd = f"xcrun simctl uninstall {sim_id} {IOS_BUNDLE_ID}"
        else:
            logger.info("App uninstall is not supported", platform=self.platform_id)
            return
        result = self.executor.exec_sync(cmd, cwd=self.project_dir)
        if result["code"] != 0:
            logger.warning(
                "App uninstall failed",
                app_name=app_name,
                exit_code=result["code"],
                stderr=result["stderr"].strip(),
            )


class EmulatorKiller:
    KILL_COMMANDS = {
        "android": [
            "adb emu kill",
            "killall -9 qemu-system-x86_64 qemu-system-i386 emulator64-x86 emulator64-arm emulator",
        ],
        "ios": ["killall Simulator"],
        "windows": ["taskkill /F /IM XDE.exe /T"],
    }

    def __init__(self, executor: CommandExecutor, platform_id: str):
        self.executor = executor
        self.platform_id = platform_id

    def kill(self) -> None:
        for cmd in self.KILL_COMMANDS.get(self.platform_id, []):
            result = self.executor.exec_sync(cmd)
            if result["code"] == 0:
                logger.info("Emulator process killed", command=cmd)
                return
        logger.info("No emulator process was killed", platform=self.platform_id)


class IOSPermissions:
    """Pre-grants privacy permissions in a simulator TCC database."""

    def __init__(self, app_name: str, tcc_db: str, target: Optional[TargetInfo] = None):
        self.app_name = app_name
        self.tcc_db = tcc_db
        self.target = target or {}

    def resolve_db_path(self) -> Path:
        path = Path(os.path.expanduser(self.tcc_db))
        sim_id = self.target.get("sim_id")
        if "{sim_id}" in self.tcc_db and sim_id:
            path = Path(os.path.expanduser(self.tcc_db.format(sim_id=sim_id)))
        return path

    def grant(self, services: Iterable[str]) -> None:
        db_path = self.resolve_db_path()
        if not db_path.exists():
            logger.warning("TCC database not found; permissions not granted", path=str(db_path))
            return
        conn = sqlite3.connect(str(db_path))
        try:
            for service in services:
                conn.execute("DELETE FROM access WHERE service = ? AND client = ?", (service, IOS_BUNDLE_ID))
                conn.execute(
                    "INSERT INTO access (service, client, client_type, allowed, prompt_count) "
                    "VALUES (?, ?, 0, 1, 1)",
                    (service, IOS_BUNDLE_ID),
                )
                logger.info("Permission granted", service=service, app_name=self.app_name)
            conn.commit()
        finally:
            conn.close()
