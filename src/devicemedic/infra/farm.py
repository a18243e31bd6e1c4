"""Sauce Labs device farm: packaging, upload, webdriver session and job lookup."""

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import structlog

from devicemedic.domain.errors import InfrastructureError
from devicemedic.domain.models import SUPPORTED_FARM_PLATFORMS, Event, EventName, FarmJob, RunConfig

logger = structlog.get_logger()

SAUCE_HOST = "ondemand.saucelabs.com"
SAUCE_PORT = 80
SAUCE_REST_URL = "https://saucelabs.com/rest/v1"
SAUCE_JOB_URL = "https://saucelabs.com/beta/tests"
SAUCE_LOGCAT_URL = "https://saucelabs.com/jobs"

# Webdriver calls on a fresh farm device can be slow.
WEBDRIVER_TIMEOUT = httpx.Timeout(180.0)
WEBDRIVER_RETRIES = 5

# Drains the queue the event cache plugin fills inside the webview.
POLL_EVENTS_SCRIPT = (
    "var cache = window.__medicEventCache || [];"
    "window.__medicEventCache = [];"
    "return JSON.stringify(cache);"
)


def _unsupported(platform_id: str) -> InfrastructureError:
    return InfrastructureError(f"Unsupported platform for sauce labs testing: {platform_id}")


class AppPackage:
    """Where the built app lives and what it is called on the farm."""

    BINARY_NAMES = {"android": "android-debug.apk", "ios": "HelloCordova.app"}
    PACKAGE_NAMES = {"android": "android-debug.apk", "ios": "HelloCordova.zip"}
    APP_NAMES = {"android": "mobilespec.apk", "ios": "HelloCordova.zip"}
    PACKAGE_FOLDERS = {
        "android": Path("platforms") / "android" / "build" / "outputs" / "apk",
        "ios": Path("platforms") / "ios" / "build" / "emulator",
    }

    def __init__(self, project_dir: Path, platform_id: str):
        if platform_id not in SUPPORTED_FARM_PLATFORMS:
            raise _unsupported(platform_id)
        self.project_dir = project_dir
        self.platform_id = platform_id

    @property
    def folder(self) -> Path:
        return self.project_dir / self.PACKAGE_FOLDERS[self.platform_id]

    @property
    def binary_name(self) -> str:
        return self.BINARY_NAMES[self.platform_id]

    @property
    def binary_path(self) -> Path:
        return self.folder / self.binary_name

    @property
    def package_path(self) -> Path:
        return self.folder / self.PACKAGE_NAMES[self.platform_id]

    @property
    def app_name(self) -> str:
        return self.APP_NAMES[self.platform_id]

    async def package(self) -> Path:
        """Produce the uploadable artifact; only iOS needs zipping."""
        if self.platform_id == "ios":
            logger.info("Zipping app for upload", binary=str(self.binary_path))
            base_name = str(self.package_path.with_suffix(""))
            try:
                await asyncio.to_thread(
                    shutil.make_archive,
                    base_name,
                    "zip",
                    root_dir=str(self.folder),
                    base_dir=self.binary_name,
                )
            except OSError as e:
                raise InfrastructureError(f"Failed to zip {self.binary_path}: {e}") from e
        if not self.package_path.exists():
            raise InfrastructureError(f"Built app not found at {self.package_path}")
        return self.package_path


def build_capabilities(config: RunConfig, app_name: str) -> Dict[str, Any]:
    caps: Dict[str, Any] = {
        "name": config.build_name,
        "browserName": "",
        "appiumVersion": config.appium_version,
        "deviceOrientation": "portrait",
        "deviceType": "phone",
        "idleTimeout": "100",
        "app": f"sauce-storage:{app_name}",
    }
    if config.platform_id == "android":
        caps.update(
            deviceName="Android Emulator",
            platformVersion=config.android_platform_version,
            platformName="Android",
            appPackage="io.cordova.hellocordova",
            appActivity="io.cordova.hellocordova.MainActivity",
        )
    elif config.platform_id == "ios":
        caps.update(
            deviceName="iPhone Simulator",
            platformVersion=config.ios_platform_version,
            platformName="iOS",
            autoAcceptAlerts=True,
        )
    else:
        raise _unsupported(config.platform_id)
    return caps


def parse_polled_events(raw: Any) -> List[Event]:
    """Turn the cached-event payload returned by the webview into events."""
    if isinstance(raw, str):
        raw = json.loads(raw) if raw else []
    events: List[Event] = []
    for item in raw or []:
        try:
            name = EventName(item.get("eventName"))
        except (ValueError, AttributeError):
            logger.debug("Skipping unknown polled event", item=str(item)[:200])
            continue
        payload = item.get("eventObject") or {}
        if not isinstance(payload, dict):
            payload = {"value": payload}
        events.append(Event(name=name, payload=payload, source="farm"))
    return events


class SauceLabsClient:
    """REST calls against the farm account."""

    def __init__(self, user: str, key: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.user = user
        self.key = key
        self._transport = transport

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(auth=(self.user, self.key), transport=self._transport, **kwargs)

    async def upload_app(self, package_path: Path, app_name: str) -> None:
        logger.info("Uploading app to Sauce Storage", app_name=app_name, path=str(package_path))
        url = f"{SAUCE_REST_URL}/storage/{self.user}/{app_name}"
        content = await asyncio.to_thread(package_path.read_bytes)
        try:
            async with self._client(timeout=WEBDRIVER_TIMEOUT) as client:
                response = await client.post(
                    url,
                    params={"overwrite": "true"},
                    content=content,
                    headers={"Content-Type": "application/octet-stream"},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise InfrastructureError(f"Failed to upload {app_name} to Sauce Storage: {e}") from e

    async def find_job(self, build_name: str) -> Optional[FarmJob]:
        async with self._client(timeout=30.0) as client:
            response = await client.get(f"{SAUCE_REST_URL}/{self.user}/jobs", params={"full": "true"})
            response.raise_for_status()
            jobs = response.json()
        for job in jobs or []:
            if job.get("name") == build_name:
                return FarmJob.model_validate(job)
        return None


def describe_job(job: FarmJob, platform_id: str) -> List[str]:
    lines = [
        f"Job name: {job.name}",
        f"Job ID: {job.id}",
        f"Job URL: {SAUCE_JOB_URL}/{job.id}",
        f"Video: {job.video_url}",
        f"Appium logs: {job.log_url}",
    ]
    if platform_id == "android":
        lines.append(f"Logcat logs: {SAUCE_LOGCAT_URL}/{job.id}/logcat.log")
    return lines


class RemoteSession:
    """Minimal webdriver session on the farm's appium endpoint."""

    def __init__(
        self,
        user: str,
        key: str,
        host: str = SAUCE_HOST,
        port: int = SAUCE_PORT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_id: Optional[str] = None
        self._client = httpx.AsyncClient(
            base_url=f"http://{host}:{port}/wd/hub",
            auth=(user, key),
            timeout=WEBDRIVER_TIMEOUT,
            transport=transport or httpx.AsyncHTTPTransport(retries=WEBDRIVER_RETRIES),
        )

    async def _command(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        if self.session_id is None:
            raise InfrastructureError("Remote session is not open")
        response = await self._client.request(method, f"/session/{self.session_id}{path}", json=body)
        response.raise_for_status()
        return response.json().get("value")

    async def init(self, capabilities: Dict[str, Any]) -> str:
        logger.info("Connecting webdriver", device=capabilities.get("deviceName"))
        try:
            response = await self._client.post(
                "/session",
                json={
                    "desiredCapabilities": capabilities,
                    "capabilities": {"alwaysMatch": capabilities},
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            await self._client.aclose()
            raise InfrastructureError(f"Failed to start remote session: {e}") from e
        body = response.json()
        value = body.get("value") or {}
        self.session_id = body.get("sessionId") or value.get("sessionId")
        if not self.session_id:
            await self._client.aclose()
            raise InfrastructureError(f"Remote session did not return a session id: {body}")
        logger.info("Remote session started", session_id=self.session_id)
        return self.session_id

    async def switch_to_webview(self) -> str:
        contexts = await self._command("GET", "/contexts") or []
        webviews = [c for c in contexts if str(c).startswith("WEBVIEW")]
        if not webviews:
            raise InfrastructureError(f"No webview context available; contexts={contexts}")
        await self._command("POST", "/context", {"name": webviews[0]})
        return webviews[0]

    async def poll_for_events(self, is_android: bool) -> List[Event]:
        if is_android:
            # The android webview context is dropped whenever the app pauses.
            await self.switch_to_webview()
        raw = await self._command("POST", "/execute/sync", {"script": POLL_EVENTS_SCRIPT, "args": []})
        return parse_polled_events(raw)

    async def quit(self) -> None:
        try:
            if self.session_id is not None:
                await self._command("DELETE", "")
                logger.info("Remote session closed", session_id=self.session_id)
        finally:
            self.session_id = None
            await self._client.aclose()
