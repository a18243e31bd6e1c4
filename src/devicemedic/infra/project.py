"""Scaffolding the disposable app project the tests run in."""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import aiofiles
import structlog

from devicemedic.domain.errors import CommandError, InfrastructureError
from devicemedic.domain.models import RunConfig
from devicemedic.infra.executor import CommandExecutor

logger = structlog.get_logger()

TEST_FRAMEWORK_PLUGIN = "cordova-plugin-test-framework"
DEVICE_PLUGIN = "cordova-plugin-device"

START_PAGE_FROM = 'src="index.html"'
START_PAGE_TO = 'src="cdvtests/index.html"'

# Path of the file the in-app client reads its report url from.
CONNECTION_FILE = Path("www") / "medic.json"


def bundled_plugins_dir() -> Path:
    """Directory holding the helper plugins installed next to the tested ones."""
    override = os.environ.get("MEDIC_PLUGINS_DIR")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[1] / "plugins"


def additional_plugins(config: RunConfig) -> List[str]:
    """Helper plugins every scaffolded project needs for this configuration."""
    plugins_dir = bundled_plugins_dir()
    plugins = [TEST_FRAMEWORK_PLUGIN, DEVICE_PLUGIN, str(plugins_dir / "medic-plugin")]
    if config.use_sauce and not config.use_tunnel:
        plugins.append(str(plugins_dir / "event-cache-plugin"))
    if config.platform_id == "windows":
        plugins.append(str(plugins_dir / "debug-mode-plugin"))
    if config.platform_id == "ios":
        plugins.append(str(plugins_dir / "ios-geolocation-permissions-plugin"))
    return plugins


class AppProject:
    """A throwaway app project created for one run."""

    def __init__(self, executor: CommandExecutor, path: Optional[Path] = None):
        self.executor = executor
        self.path = path

    def create(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix="devicemedic-"))
        logger.info("Creating temp project", path=str(self.path))
        self.executor.exec_checked(f"cordova create {self.path}")
        return self.path

    def prepare(self, config: RunConfig) -> None:
        """Install plugins, point the app at the test page and add the platform."""
        self.install_plugins(config.plugins)
        self.install_tests_for_existing_plugins()
        self.install_plugins(additional_plugins(config))
        self.set_up_start_page()
        self.install_platform(config.platform)
        self.check_platform_requirements(config.platform_id)

    def install_plugins(self, plugins: Iterable[str]) -> None:
        for plugin in plugins:
            logger.info("Installing plugin", plugin=plugin)
            try:
                self.executor.exec_checked(f"cordova plugin add {plugin}", cwd=self.path)
            except CommandError as e:
                raise InfrastructureError(f"Failed to install plugin {plugin}: {e.output.strip()}") from e

    def install_tests_for_existing_plugins(self) -> None:
        plugins_root = self._require_path() / "plugins"
        if not plugins_root.is_dir():
            return
        for plugin_dir in sorted(p for p in plugins_root.iterdir() if p.is_dir()):
            tests_dir = plugin_dir / "tests"
            if (tests_dir / "plugin.xml").exists():
                logger.info("Installing tests for plugin", plugin=plugin_dir.name)
                self.install_plugins([str(tests_dir)])

    def set_up_start_page(self) -> None:
        logger.info("Setting app start page to test page")
        config_xml = self._require_path() / "config.xml"
        text = config_xml.read_text()
        config_xml.write_text(text.replace(START_PAGE_FROM, START_PAGE_TO))

    def install_platform(self, platform: str) -> None:
        logger.info("Adding platform", platform=platform)
        self.executor.exec_checked(f"cordova platform add {platform}", cwd=self.path)

    def check_platform_requirements(self, platform_id: str) -> None:
        logger.info("Checking requirements for platform", platform=platform_id)
        result = self.executor.exec_sync(f"cordova requirements {platform_id}", cwd=self.path)
        if result["code"] != 0:
            raise InfrastructureError("Platform requirements check has failed!")

    async def write_connection_url(self, url: str) -> Path:
        """Write the relay url where the in-app client looks for it."""
        target = self._require_path() / CONNECTION_FILE
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing medic log url to project", url=url, path=str(target))
        async with aiofiles.open(target, "w") as f:
            await f.write(json.dumps({"logurl": url}))
        return target

    def remove(self) -> None:
        if self.path is None:
            return
        logger.info("Deleting the application", path=str(self.path))
        shutil.rmtree(self.path, ignore_errors=False)

    def _require_path(self) -> Path:
        if self.path is None:
            raise InfrastructureError("Project has not been created yet")
        return self.path
