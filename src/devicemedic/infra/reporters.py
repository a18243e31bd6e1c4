"""Reporters that format the relayed test lifecycle events."""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from rich.console import Console

from devicemedic.domain.models import REPORTER_EVENTS

logger = structlog.get_logger()


class ConsoleReporter:
    """Prints spec progress and a summary to the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.failures: List[Dict[str, Any]] = []

    def jasmineStarted(self, data: Dict[str, Any]) -> None:
        total = data.get("totalSpecsDefined")
        self.console.print(f"Started running {total if total is not None else 'all'} specs")

    def suiteStarted(self, data: Dict[str, Any]) -> None:
        self.console.print(f"[bold]{data.get('fullName') or data.get('description', '')}[/bold]")

    def specDone(self, data: Dict[str, Any]) -> None:
        status = data.get("status")
        name = data.get("description", "")
        if status == "passed":
            self.console.print(f"  [green]✓[/green] {name}")
        elif status == "failed":
            self.failures.append(data)
            self.console.print(f"  [red]✗[/red] {name}")
        else:
            self.console.print(f"  [yellow]-[/yellow] {name} ({status})")

    def jasmineDone(self, data: Dict[str, Any]) -> None:
        results = data.get("specResults") or {}
        for failure in self.failures:
            self.console.print(f"[red]FAILED[/red] {failure.get('fullName', failure.get('description', ''))}")
            for expectation in failure.get("failedExpectations") or []:
                self.console.print(f"    {expectation.get('message', '')}")
        self.console.print(
            f"Executed {results.get('specsExecuted', 0)} specs, "
            f"{results.get('specFailed', 0)} failed"
        )


class JUnitReporter:
    """Writes a JUnit XML report once the run completes."""

    FILE_NAME = "junit-results.xml"

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self._suites: List[ET.Element] = []
        self._current: Optional[ET.Element] = None

    def suiteStarted(self, data: Dict[str, Any]) -> None:
        suite = ET.Element("testsuite", name=str(data.get("fullName") or data.get("description", "")))
        self._suites.append(suite)
        self._current = suite

    def specDone(self, data: Dict[str, Any]) -> None:
        if self._current is None:
            self.suiteStarted({"description": "default"})
        assert self._current is not None
        case = ET.SubElement(
            self._current,
            "testcase",
            name=str(data.get("description", "")),
            classname=str(self._current.get("name")),
        )
        status = data.get("status")
        if status == "failed":
            for expectation in data.get("failedExpectations") or [{}]:
                failure = ET.SubElement(case, "failure", message=str(expectation.get("message", "")))
                failure.text = str(expectation.get("stack", ""))
        elif status not in ("passed", None):
            ET.SubElement(case, "skipped")

    def jasmineDone(self, data: Dict[str, Any]) -> Path:
        root = ET.Element("testsuites")
        for suite in self._suites:
            cases = suite.findall("testcase")
            suite.set("tests", str(len(cases)))
            suite.set("failures", str(sum(1 for c in cases if c.find("failure") is not None)))
            suite.set("skipped", str(sum(1 for c in cases if c.find("skipped") is not None)))
            root.append(suite)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / self.FILE_NAME
        ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
        logger.info("JUnit report written", path=str(path))
        return path


def get_reporters(output_dir: Optional[str], console: Optional[Console] = None) -> List[Any]:
    reporters: List[Any] = [ConsoleReporter(console)]
    if output_dir:
        reporters.append(JUnitReporter(Path(output_dir)))
    return reporters


def inject_reporters(relay: Any, reporters: List[Any]) -> None:
    """Register each reporter's handlers on the relay for the events it implements."""
    for event in REPORTER_EVENTS:
        for reporter in reporters:
            handler = getattr(reporter, event.value, None)
            if callable(handler):
                relay.on(event, handler)
