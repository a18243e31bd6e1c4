"""CLI entry point for the devicemedic test runner."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from devicemedic.domain.errors import ConfigurationError, MedicError
from devicemedic.domain.models import Action, RunConfig
from devicemedic.infra.filesystem import SUMMARY_FILE, load_run_summary
from devicemedic.orchestration.runner import (
    SAUCE_KEY_ENV_VAR,
    SAUCE_USER_ENV_VAR,
    check_sauce_requirements,
    run as run_orchestrator,
    verdict_message,
)

# Load environment variables
load_dotenv()

logger = structlog.get_logger()
console = Console()

app = typer.Typer(
    name="devicemedic",
    help="Run plugin test suites on local devices, emulators or a device farm",
    no_args_is_help=True,
)


def configure_logging(verbose: bool = False) -> None:
    log_level_name = "DEBUG" if verbose else str(os.environ.get("MEDIC_LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(
        level=log_level,
        handlers=[RichHandler()],
        force=True,
    )

    # Setup structured logging
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def parse_ports(value: str) -> List[int]:
    """Parse ``8008`` or ``8008-8009`` into an inclusive range."""
    low, _, high = value.partition("-")
    try:
        return [int(low), int(high or low)]
    except ValueError:
        raise typer.BadParameter(f"Invalid port range: {value!r}")


def build_config(config_file: Optional[Path], overrides: Dict[str, Any]) -> RunConfig:
    """Merge a JSON config file with command line overrides.

    Options left unset on the command line keep the file's value, then the
    environment's, then the model default.
    """
    data: Dict[str, Any] = {}
    if config_file is not None:
        if not config_file.exists():
            raise ConfigurationError(f"Config file not found: {config_file}")
        data = json.loads(config_file.read_text())

    env_defaults = {
        "sauce_user": os.environ.get(SAUCE_USER_ENV_VAR),
        "sauce_key": os.environ.get(SAUCE_KEY_ENV_VAR),
    }
    for key, value in env_defaults.items():
        if value and not data.get(key):
            data[key] = value

    for key, value in overrides.items():
        if value is None or (isinstance(value, list) and not value):
            continue
        data[key] = value

    if not data.get("platform"):
        raise ConfigurationError("A platform is required, e.g. --platform android")
    try:
        return RunConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _overrides(
    platform: Optional[str],
    action: Optional[Action],
    plugin: List[str],
    args: Optional[str],
    output_dir: Optional[str],
    ports: Optional[str],
    external_server_url: Optional[str],
    use_tunnel: Optional[bool],
    use_sauce: Optional[bool],
    sauce_user: Optional[str],
    sauce_key: Optional[str],
    build_name: Optional[str],
    connection_timeout: Optional[float],
    timeout: Optional[float],
    cleanup: Optional[bool],
    log_mins: Optional[int],
    tcc_db: Optional[str],
    verbose: Optional[bool],
) -> Dict[str, Any]:
    return {
        "platform": platform,
        "action": action,
        "plugins": plugin,
        "args": args,
        "output_dir": output_dir,
        "ports": parse_ports(ports) if ports else None,
        "external_server_url": external_server_url,
        "use_tunnel": use_tunnel,
        "use_sauce": use_sauce,
        "sauce_user": sauce_user,
        "sauce_key": sauce_key,
        "build_name": build_name,
        "connection_timeout": connection_timeout,
        "timeout": timeout,
        "cleanup": cleanup,
        "log_mins": log_mins,
        "tcc_db": tcc_db,
        "verbose": verbose,
    }


PlatformOpt = typer.Option(None, "--platform", help="Platform to test, e.g. android or ios@4.2.0")
ActionOpt = typer.Option(None, "--action", help="build, run or emulate (default: run)")
PluginOpt = typer.Option([], "--plugin", help="Plugin to test; repeat for several")
ArgsOpt = typer.Option(None, "--args", help="Extra arguments passed to the platform command")
OutputDirOpt = typer.Option(None, "--output-dir", help="Where reports and device logs are written")
PortsOpt = typer.Option(None, "--ports", help="Relay server port or range, e.g. 8008-8009")
ExternalUrlOpt = typer.Option(None, "--external-server-url", help="Url the device should report to")
TunnelOpt = typer.Option(None, "--use-tunnel/--no-tunnel", help="Reach the relay server through a tunnel")
SauceOpt = typer.Option(None, "--sauce/--no-sauce", help="Run on Sauce Labs instead of a local device")
SauceUserOpt = typer.Option(None, "--sauce-user", help=f"Sauce Labs user (or {SAUCE_USER_ENV_VAR})")
SauceKeyOpt = typer.Option(None, "--sauce-key", help=f"Sauce Labs access key (or {SAUCE_KEY_ENV_VAR})")
BuildNameOpt = typer.Option(None, "--build-name", help="Job name shown on Sauce Labs")
ConnectionTimeoutOpt = typer.Option(
    None, "--connection-timeout", help="Seconds to wait for the device to connect"
)
TimeoutOpt = typer.Option(None, "--timeout", help="Seconds before the whole run is abandoned")
CleanupOpt = typer.Option(None, "--cleanup/--no-cleanup", help="Remove the temp project after the run")
LogMinsOpt = typer.Option(None, "--log-mins", help="Minutes of device log to collect")
TccDbOpt = typer.Option(None, "--tcc-db", help="iOS simulator TCC.db to pre-grant permissions in")
VerboseOpt = typer.Option(None, "--verbose/--quiet", help="Trace every command's output")
ConfigOpt = typer.Option(None, "--config", help="JSON file with run options")


@app.command()
def run(
    platform: Optional[str] = PlatformOpt,
    action: Optional[Action] = ActionOpt,
    plugin: List[str] = PluginOpt,
    args: Optional[str] = ArgsOpt,
    output_dir: Optional[str] = OutputDirOpt,
    ports: Optional[str] = PortsOpt,
    external_server_url: Optional[str] = ExternalUrlOpt,
    use_tunnel: Optional[bool] = TunnelOpt,
    use_sauce: Optional[bool] = SauceOpt,
    sauce_user: Optional[str] = SauceUserOpt,
    sauce_key: Optional[str] = SauceKeyOpt,
    build_name: Optional[str] = BuildNameOpt,
    connection_timeout: Optional[float] = ConnectionTimeoutOpt,
    timeout: Optional[float] = TimeoutOpt,
    cleanup: Optional[bool] = CleanupOpt,
    log_mins: Optional[int] = LogMinsOpt,
    tcc_db: Optional[str] = TccDbOpt,
    verbose: Optional[bool] = VerboseOpt,
    config_file: Optional[Path] = ConfigOpt,
) -> None:
    """Scaffold a project, run the plugin tests and report the verdict."""
    configure_logging(bool(verbose))
    try:
        config = build_config(
            config_file,
            _overrides(
                platform, action, plugin, args, output_dir, ports, external_server_url,
                use_tunnel, use_sauce, sauce_user, sauce_key, build_name,
                connection_timeout, timeout, cleanup, log_mins, tcc_db, verbose,
            ),
        )
        logger.info(
            "Starting test run",
            platform=config.platform,
            action=config.action.value,
            plugins=config.plugins,
            use_sauce=config.use_sauce,
        )

        passed = asyncio.run(run_orchestrator(config, console=console))

    except KeyboardInterrupt:
        logger.warning("Test run interrupted by user")
        console.print("Aborted.")
        raise typer.Exit(130)

    except MedicError as e:
        logger.error("Test run failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        console.print(f"❌ Error: {e}")
        raise typer.Exit(1)

    except Exception as e:
        logger.error("Unexpected error during test run", error=str(e), exc_info=True)
        console.print(f"❌ Error: {e}")
        raise typer.Exit(1)

    if passed:
        console.print("✅ All tests passed")
    else:
        console.print("❌ Some tests failed")
        raise typer.Exit(1)


@app.command()
def check(
    platform: Optional[str] = PlatformOpt,
    action: Optional[Action] = ActionOpt,
    use_sauce: Optional[bool] = SauceOpt,
    use_tunnel: Optional[bool] = TunnelOpt,
    sauce_user: Optional[str] = SauceUserOpt,
    sauce_key: Optional[str] = SauceKeyOpt,
    config_file: Optional[Path] = ConfigOpt,
) -> None:
    """Validate run options without touching any device."""
    configure_logging()
    try:
        config = build_config(
            config_file,
            {
                "platform": platform,
                "action": action,
                "use_sauce": use_sauce,
                "use_tunnel": use_tunnel,
                "sauce_user": sauce_user,
                "sauce_key": sauce_key,
            },
        )
        effective = check_sauce_requirements(config)
    except MedicError as e:
        console.print(f"❌ Error: {e}")
        raise typer.Exit(1)

    mode = "Sauce Labs" if effective.use_sauce else "local"
    console.print(f"✅ Configuration is valid: {effective.action.value} {effective.platform_id} ({mode})")


@app.command()
def report(
    output_dir: str = typer.Option(..., "--output-dir", help="Output directory of a previous run"),
) -> None:
    """Show the summary of a previous run."""
    path = Path(output_dir) / SUMMARY_FILE
    if not path.exists():
        console.print(f"❌ No run summary found at {path}")
        raise typer.Exit(1)

    summary = load_run_summary(path)
    console.print(f"Platform: {summary.platform} ({summary.action.value})")
    console.print(f"Build: {summary.build_name}{' on Sauce Labs' if summary.use_sauce else ''}")
    console.print(f"Started: {summary.started_at.isoformat()}")
    if summary.total_duration_seconds is not None:
        console.print(f"Duration: {summary.total_duration_seconds:.1f}s")
    console.print(f"Result: {verdict_message(summary.verdict)}")
    if summary.error_message:
        console.print(f"Error ({summary.error_type}): {summary.error_message}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
