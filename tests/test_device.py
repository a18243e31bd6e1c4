import sqlite3
from unittest.mock import MagicMock

from devicemedic.infra.device import (
    IOS_BUNDLE_ID,
    AppUninstaller,
    DeviceLogCollector,
    EmulatorKiller,
    IOSPermissions,
)
from devicemedic.infra.executor import CommandExecutor


def fake_executor(*results):
    executor = MagicMock(spec=CommandExecutor)
    executor.exec_sync.side_effect = [
        {"code": code, "stdout": stdout, "stderr": ""} for code, stdout in results
    ]
    return executor


def test_android_logs_are_saved(tmp_path):
    executor = fake_executor((0, "I/chromium: ready\n"))
    collector = DeviceLogCollector(executor, "android", tmp_path, tmp_path / "out", {"target": "emulator-5554"})

    path = collector.collect(5)

    assert path == tmp_path / "out" / "device_android.log"
    assert path.read_text() == "I/chromium: ready\n"
    cmd = executor.exec_sync.call_args.args[0]
    assert cmd.startswith("adb -s emulator-5554 logcat -d -v time -t '")


def test_android_logs_fall_back_without_time_filter(tmp_path):
    executor = fake_executor((1, ""), (0, "whole log"))
    collector = DeviceLogCollector(executor, "android", tmp_path, tmp_path)

    path = collector.collect(5)

    assert executor.exec_sync.call_args.args[0] == "adb logcat -d -v time"
    assert path.read_text() == "whole log"


def test_ios_logs_need_a_simulator(tmp_path):
    collector = DeviceLogCollector(fake_executor(), "ios", tmp_path, tmp_path, {"target": "iPhone 15"})
    assert collector.collect(5) is None


def test_uninstall_commands(tmp_path):
    executor = fake_executor((0, ""), (0, ""))
    AppUninstaller(executor, tmp_path, "android").uninstall({"target": "emulator-5554"})
    AppUninstaller(executor, tmp_path, "ios").uninstall({"target": "iPhone 15", "sim_id": "SIM"})

    cmds = [c.args[0] for c in executor.exec_sync.call_args_list]
    assert cmds == [
        "adb -s emulator-5554 uninstall io.cordova.hellocordova",
        "xcrun simctl uninstall SIM io.cordova.hellocordova",
    ]


def test_failed_uninstall_is_only_logged(tmp_path):
    executor = fake_executor((1, ""))
    AppUninstaller(executor, tmp_path, "android").uninstall(None)
    executor.exec_sync.assert_called_once()


def test_emulator_killer_stops_after_first_success():
    executor = fake_executor((1, ""), (0, ""))
    EmulatorKiller(executor, "android").kill()
    assert [c.args[0] for c in executor.exec_sync.call_args_list] == EmulatorKiller.KILL_COMMANDS["android"]


def test_ios_permissions_are_written_to_tcc_db(tmp_path):
    db = tmp_path / "SIM" / "TCC.db"
    db.parent.mkdir()
    conn = sqlite3.connect(str(db))
    conn.execute(
        "CREATE TABLE access (service TEXT, client TEXT, client_type INTEGER, allowed INTEGER, prompt_count INTEGER)"
    )
    conn.commit()
    conn.close()

    permissions = IOSPermissions("HelloCordova", str(tmp_path / "{sim_id}" / "TCC.db"), {"sim_id": "SIM"})
    permissions.grant(["kTCCServiceAddressBook"])
    permissions.grant(["kTCCServiceAddressBook"])

    conn = sqlite3.connect(str(db))
    rows = conn.execute("SELECT service, client, allowed FROM access").fetchall()
    conn.close()
    assert rows == [("kTCCServiceAddressBook", IOS_BUNDLE_ID, 1)]


def test_missing_tcc_db_is_skipped(tmp_path):
    IOSPermissions("HelloCordova", str(tmp_path / "missing.db")).grant(["kTCCServiceAddressBook"])
