"""Core orchestration logic for a single device test run."""

import asyncio
import inspect
import os
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog
from rich.console import Console

from devicemedic.domain.errors import (
    CommandError,
    ConfigurationError,
    ConnectionTimeoutError,
    DeviceDisconnectedError,
    InfrastructureError,
    RunTimeoutError,
)
from devicemedic.domain.models import (
    SUPPORTED_FARM_PLATFORMS,
    Action,
    Event,
    EventName,
    RunConfig,
    RunPhase,
    RunSummary,
    Verdict,
)
from devicemedic.infra.device import (
    DEFAULT_APP_NAME,
    AppUninstaller,
    DeviceLogCollector,
    EmulatorKiller,
    IOSPermissions,
)
from devicemedic.infra.executor import CommandExecutor
from devicemedic.infra.farm import (
    AppPackage,
    RemoteSession,
    SauceLabsClient,
    build_capabilities,
    describe_job,
)
from devicemedic.infra.filesystem import OutputDirectory, save_run_summary
from devicemedic.infra.project import AppProject
from devicemedic.infra.relay import RelayServer
from devicemedic.infra.reporters import get_reporters, inject_reporters
from devicemedic.infra.target import TargetChooser
from devicemedic.orchestration.bridge import EventBridge
from devicemedic.orchestration.state import RunState

logger = structlog.get_logger()

SAUCE_USER_ENV_VAR = "SAUCE_USERNAME"
SAUCE_KEY_ENV_VAR = "SAUCE_ACCESS_KEY"

PERMISSIONS_TO_GRANT = ["kTCCServiceAddressBook"]

RelayFactory = Callable[[Tuple[int, int], Optional[str], bool], Awaitable[RelayServer]]


def check_sauce_requirements(config: RunConfig) -> RunConfig:
    """Validate device farm options and return the configuration to run with.

    Unsupported farm platforms fall back to a local run with a warning; the
    other problems are fatal before any work starts.
    """
    if not config.use_sauce:
        return config
    if config.platform_id not in SUPPORTED_FARM_PLATFORMS:
        logger.warning(
            "Saucelabs only supports Android and iOS, falling back to testing locally.",
            platform=config.platform_id,
        )
        return config.model_copy(update={"use_sauce": False})
    if not config.sauce_key:
        raise ConfigurationError(
            "Saucelabs key not set. Please set it via environmental variable "
            f"{SAUCE_KEY_ENV_VAR} or pass it with the --sauce-key parameter."
        )
    if not config.sauce_user:
        raise ConfigurationError(
            "Saucelabs user not set. Please set it via environmental variable "
            f"{SAUCE_USER_ENV_VAR} or pass it with the --sauce-user parameter."
        )
    if not config.should_wait_for_result:
        raise ConfigurationError("A build-only action cannot be used with Saucelabs")
    return config


class MedicRunner:
    """Runs one test pass end to end. Instances are single use."""

    def __init__(
        self,
        config: RunConfig,
        *,
        executor: Optional[CommandExecutor] = None,
        project: Optional[AppProject] = None,
        relay_factory: Optional[RelayFactory] = None,
        target_chooser_factory: Optional[Callable[[str, str], TargetChooser]] = None,
        farm_client: Optional[SauceLabsClient] = None,
        session_factory: Optional[Callable[[RunConfig], RemoteSession]] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.executor = executor or CommandExecutor(verbose=config.verbose)
        self.project = project or AppProject(self.executor)
        self.relay_factory: RelayFactory = relay_factory or RelayServer.start
        self.target_chooser_factory = target_chooser_factory or (
            lambda project_dir, platform_id: TargetChooser(self.executor, project_dir, platform_id)
        )
        self.farm_client = farm_client
        self.session_factory = session_factory or (
            lambda cfg: RemoteSession(cfg.sauce_user or "", cfg.sauce_key or "")
        )
        self.console = console or Console()
        self.state = RunState()
        self._used = False

    async def run(self) -> bool:
        """Run the tests and return whether they all passed.

        Teardown runs before this returns or raises, whichever phase failed.
        """
        if self._used:
            raise RuntimeError("MedicRunner instances are single use")
        self._used = True

        self.config = check_sauce_requirements(self.config)
        if self.config.use_sauce and self.farm_client is None:
            self.farm_client = SauceLabsClient(self.config.sauce_user or "", self.config.sauce_key or "")

        summary = RunSummary(
            platform=self.config.platform,
            action=self.config.action,
            build_name=self.config.build_name,
            use_sauce=self.config.use_sauce,
            started_at=datetime.now(timezone.utc),
        )
        try:
            return await self._run_phases()
        except BaseException as e:
            summary.error_message = str(e) or type(e).__name__
            summary.error_type = type(e).__name__
            raise
        finally:
            finishing = asyncio.ensure_future(self._finish(summary))
            try:
                await asyncio.shield(finishing)
            except asyncio.CancelledError:
                # A cancelled run still tears down completely before giving up.
                await finishing
                raise

    async def _finish(self, summary: RunSummary) -> None:
        await self.teardown()
        summary.finished_at = datetime.now(timezone.utc)
        summary.verdict = self.state.verdict
        await self._attempt("save run summary", self._save_summary, summary)

    async def _run_phases(self) -> bool:
        self.state.advance(RunPhase.SCAFFOLDING)
        await self.create_temp_project()

        self.state.advance(RunPhase.PREPARING)
        # Off the loop so the outer timeout can fire while the platform CLI hangs.
        await asyncio.to_thread(self.project.prepare, self.config)

        self.state.advance(RunPhase.SERVER_STARTING)
        relay = await self.relay_factory(
            self.config.ports,
            self.config.external_server_url,
            self.config.use_tunnel,
        )
        self.state.relay = relay
        inject_reporters(relay, get_reporters(self.config.output_dir, self.console))
        self.subscribe_for_events(relay)
        # Subscribe before anything runs so no completion event is missed.
        results = relay.subscribe()

        connection_url = relay.get_connection_url(self.config.platform_id)
        await self.project.write_connection_url(connection_url)

        logger.info(
            "Start running tests",
            platform=self.config.platform_id,
            action=self.config.action.value,
            use_sauce=self.config.use_sauce,
        )
        self.state.advance(RunPhase.EXECUTING)
        if self.config.use_sauce:
            passed = await self.run_sauce_tests(results)
        else:
            passed = await self.run_local_tests(results)

        self.state.resolve(passed)
        return passed

    async def create_temp_project(self) -> Path:
        self.state.project = self.project
        path = await asyncio.to_thread(self.project.create)
        self.state.previous_cwd = os.getcwd()
        os.chdir(path)
        return path

    def subscribe_for_events(self, relay: RelayServer) -> None:
        def on_device_log(data: dict) -> None:
            msg = data.get("msg")
            line = msg[0] if isinstance(msg, list) and msg else msg
            logger.debug(f"device|console.{data.get('type', 'log')}: {line}")

        def on_device_info(data: dict) -> None:
            logger.info("Device info", device=data)

        relay.on(EventName.DEVICE_LOG, on_device_log)
        relay.on(EventName.DEVICE_INFO, on_device_info)

    # Local strategy

    async def run_local_tests(self, results: "asyncio.Queue[Event]") -> bool:
        command = await self.get_command_for_starting_tests()
        self.set_permissions()
        logger.info("Running command", command=command)
        await self._exec_or_fail(command, "unable to run tests")

        if not self.config.should_wait_for_result:
            logger.info("Build finished; not waiting for test results", command=command)
            return True

        self.state.advance(RunPhase.AWAITING_RESULT)
        return await self.wait_for_result(results)

    async def get_command_for_starting_tests(self) -> str:
        config = self.config
        cmd = f"cordova {config.action.value} {config.platform_id}"

        is_store_app = config.platform_id == "windows" and "appx=8.1-phone" not in config.args
        if config.action is Action.BUILD or is_store_app:
            # Store apps and plain builds have no device to pick.
            return f"{cmd} {config.args}".strip()

        chooser = self.target_chooser_factory(str(self.state.project_dir), config.platform_id)
        self.state.target = await chooser.choose_target(True)
        cmd += f" --target {shlex.quote(self.state.target['target'])}"

        # Without --emulator, `cordova run ios --target` waits for a physical
        # device of that name whenever one is plugged in.
        if config.platform_id == "ios":
            cmd += " --emulator"

        return f"{cmd} {config.args}".strip()

    def set_permissions(self) -> None:
        if self.config.platform_id != "ios" or not self.config.tcc_db:
            return
        logger.info("Setting required permissions")
        IOSPermissions(DEFAULT_APP_NAME, self.config.tcc_db, self.state.target).grant(PERMISSIONS_TO_GRANT)

    # Completion race

    async def wait_for_result(self, results: "asyncio.Queue[Event]") -> bool:
        """Race the connection watchdog against the result watcher.

        The first watcher to settle decides, except that a watchdog which saw
        a connection settles nothing and the result watcher keeps going.
        """
        watchdog = asyncio.create_task(self._watch_connection())
        watcher = asyncio.create_task(self._watch_results(results))
        try:
            done, _ = await asyncio.wait({watchdog, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if watcher in done:
                return watcher.result()
            watchdog.result()
            return await watcher
        finally:
            for task in (watchdog, watcher):
                _discard(task)

    async def _watch_connection(self) -> None:
        await asyncio.sleep(self.config.connection_timeout)
        relay = self.state.relay
        if relay is None or not relay.is_device_connected():
            logger.error(
                "Device never connected to relay server",
                timeout=self.config.connection_timeout,
            )
            raise ConnectionTimeoutError(self.config.connection_timeout)

    async def _watch_results(self, results: "asyncio.Queue[Event]") -> bool:
        logger.info("Waiting for test results")
        while True:
            event = await results.get()
            if event.name is EventName.JASMINE_DONE:
                failed = event.failure_count
                if failed is None:
                    logger.error("Test results carry no failure count", payload=event.payload)
                    raise InfrastructureError(
                        "Tests completed but the results did not report how many specs failed"
                    )
                logger.info("Tests have been completed", failed=failed, source=event.source)
                return failed == 0
            if event.name is EventName.DISCONNECT:
                raise DeviceDisconnectedError()

    # Remote strategy

    async def run_sauce_tests(self, results: "asyncio.Queue[Event]") -> bool:
        command = f"cordova build {self.config.platform_id}"
        logger.info("Running command", command=command)
        await self._exec_or_fail(command, "unable to build project")

        logger.info("Running sauce tests")
        package = AppPackage(self.project.path, self.config.platform_id)
        await package.package()
        if self.farm_client is None:
            raise InfrastructureError("No device farm client to upload the app with")
        await self.farm_client.upload_app(package.package_path, package.app_name)
        logger.info("App uploaded; starting tests", app_name=package.app_name)

        session = self.session_factory(self.config)
        self.state.session = session
        try:
            await session.init(build_capabilities(self.config, package.app_name))
            if not self.config.use_tunnel:
                await session.switch_to_webview()
                logger.info("Connecting to app")
                bridge = EventBridge(
                    session,
                    self.state.relay,
                    is_android=self.config.platform_id == "android",
                    interval=self.config.poll_interval,
                )
                self.state.bridge = bridge
                bridge.start()

            self.state.advance(RunPhase.AWAITING_RESULT)
            passed = await self.wait_for_result(results)
            logger.info("Tests finished", passed=passed)
            return passed
        except Exception as e:
            logger.info("Tests failed to complete; ending appium session", error=str(e))
            raise
        finally:
            await self.close_remote_session()
            await self._attempt("report sauce job", self.report_sauce_job)

    async def close_remote_session(self) -> None:
        bridge, self.state.bridge = self.state.bridge, None
        if bridge is not None:
            await bridge.stop()
        session, self.state.session = self.state.session, None
        if session is not None:
            try:
                await session.quit()
            except Exception as e:
                logger.warning("Failed to close remote session", error=str(e))

    async def report_sauce_job(self) -> None:
        if self.farm_client is None:
            return
        logger.info("Getting saucelabs job details")
        job = await self.farm_client.find_job(self.config.build_name)
        if job is None:
            logger.warning("Can not find saucelabs job. Logs and video will be unavailable.")
            return
        self.console.rule()
        for line in describe_job(job, self.config.platform_id):
            self.console.print(line)
        self.console.rule()

    # Teardown

    async def teardown(self) -> None:
        """Release everything the run acquired; every step is attempted."""
        self.state.advance(RunPhase.TEARING_DOWN)
        self.state.teardown_runs += 1
        logger.info("Completed tests", at=datetime.now().strftime("%H:%M:%S"))

        await self._attempt("close remote session", self.close_remote_session)

        # Plain builds and farm runs never touched a local device.
        if self.config.action is not Action.BUILD and not self.config.use_sauce:
            await self._attempt("collect device logs", self.collect_device_logs)
            await self._attempt("uninstall app", self.uninstall_app)
            await self._attempt("kill emulator", self.kill_emulator_process)

        await self._attempt("stop relay server", self._stop_relay)
        await self._attempt("clean up project", self.clean_up_project)
        self.state.advance(RunPhase.DONE)

    def collect_device_logs(self) -> None:
        logger.info("Collecting logs for the devices")
        project_dir = self.state.project_dir
        if project_dir is None:
            raise InfrastructureError("No project to collect logs for")
        output = OutputDirectory(self.config.output_dir, fallback=project_dir)
        collector = DeviceLogCollector(
            self.executor,
            self.config.platform_id,
            project_dir,
            output.path or project_dir,
            self.state.target,
        )
        collector.collect(self.config.log_mins)

    def uninstall_app(self) -> None:
        logger.info("Uninstalling the app")
        uninstaller = AppUninstaller(self.executor, self.state.project_dir, self.config.platform_id)
        uninstaller.uninstall(self.state.target, DEFAULT_APP_NAME)

    def kill_emulator_process(self) -> None:
        if not self.config.cleanup:
            return
        logger.info("Killing the emulator process")
        EmulatorKiller(self.executor, self.config.platform_id).kill()

    async def _stop_relay(self) -> None:
        relay = self.state.relay
        if relay is not None:
            await relay.stop()

    def clean_up_project(self) -> None:
        if not self.config.cleanup:
            return
        if self.state.previous_cwd is not None:
            os.chdir(self.state.previous_cwd)
        if self.state.project is not None:
            self.state.project.remove()

    async def _save_summary(self, summary: RunSummary) -> None:
        await save_run_summary(OutputDirectory(self.config.output_dir), summary)

    async def _exec_or_fail(self, command: str, context: str) -> str:
        try:
            return await self.executor.exec_async(command, cwd=self.state.project_dir)
        except CommandError as e:
            # Verbose mode already traced this output.
            if not self.config.verbose and e.output:
                self.console.print(e.output)
            logger.error(f"{context}; command log is available above", command=command, exit_code=e.code)
            raise InfrastructureError(f'Command "{command}" failed.') from e

    async def _attempt(self, step: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Teardown step failed", step=step, error=str(e))


def _discard(task: "asyncio.Task[Any]") -> None:
    """Cancel a losing watcher, or mark its outcome as seen."""
    if not task.done():
        task.cancel()
    elif not task.cancelled():
        task.exception()


async def run(config: RunConfig, **collaborators: Any) -> bool:
    """Run ``config`` under its outer timeout."""
    if config.timeout <= config.connection_timeout:
        logger.warning(
            "Run timeout is not longer than the connection timeout",
            timeout=config.timeout,
            connection_timeout=config.connection_timeout,
        )
    runner = MedicRunner(config, **collaborators)
    try:
        return await asyncio.wait_for(runner.run(), timeout=config.timeout)
    except asyncio.TimeoutError:
        logger.error("Run timed out", timeout=config.timeout, phase=runner.state.phase.value)
        raise RunTimeoutError(config.timeout) from None


def verdict_message(verdict: Verdict) -> str:
    if verdict is Verdict.PASSED:
        return "Tests passed"
    if verdict is Verdict.FAILED:
        return "Tests failed"
    return "Tests did not complete"
