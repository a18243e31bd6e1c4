"""Error taxonomy for test runs."""

from typing import Optional


class MedicError(Exception):
    """Base class for every fatal run error."""


class ConfigurationError(MedicError):
    """Invalid combination of run options, raised before any work starts."""


class InfrastructureError(MedicError):
    """A build, upload, session or server step failed."""


class CommandError(InfrastructureError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: str, code: int, output: str = "", message: Optional[str] = None):
        self.command = command
        self.code = code
        self.output = output
        super().__init__(message or f'Command "{command}" failed with exit code {code}.')


class MedicTimeoutError(MedicError):
    """A deadline elapsed."""


class ConnectionTimeoutError(MedicTimeoutError):
    """The device never connected to the relay server."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(
            f"Seems like device not connected to local server in {seconds:g} secs"
        )


class RunTimeoutError(MedicTimeoutError):
    """The whole run exceeded its outer timeout."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(
            f"This test seems to be blocked :: timeout of {seconds:g} secs exceeded. Exiting ..."
        )


class DeviceDisconnectedError(MedicError):
    """The device dropped off before reporting results."""

    def __init__(self) -> None:
        super().__init__("device is disconnected before passing the tests")
