import xml.etree.ElementTree as ET

from devicemedic.domain.models import EventName
from devicemedic.infra.relay import RelayServer
from devicemedic.infra.reporters import ConsoleReporter, JUnitReporter, get_reporters, inject_reporters


def play_suite(relay):
    relay.emit(EventName.JASMINE_STARTED, {"totalSpecsDefined": 3})
    relay.emit(EventName.SUITE_STARTED, {"description": "camera", "fullName": "camera"})
    relay.emit(EventName.SPEC_DONE, {"description": "takes a picture", "status": "passed"})
    relay.emit(
        EventName.SPEC_DONE,
        {
            "description": "rejects bad quality",
            "fullName": "camera rejects bad quality",
            "status": "failed",
            "failedExpectations": [{"message": "Expected 0 to be 1.", "stack": "at spec.js:10"}],
        },
    )
    relay.emit(EventName.SPEC_DONE, {"description": "uses flash", "status": "pending"})
    relay.emit(EventName.JASMINE_DONE, {"specResults": {"specsExecuted": 3, "specFailed": 1}})


def test_reporters_follow_the_relay(tmp_path, console):
    relay = RelayServer()
    inject_reporters(relay, get_reporters(str(tmp_path), console))

    play_suite(relay)

    output = console.file.getvalue()
    assert "Started running 3 specs" in output
    assert "FAILED camera rejects bad quality" in output
    assert "Expected 0 to be 1." in output
    assert "Executed 3 specs, 1 failed" in output

    root = ET.parse(tmp_path / JUnitReporter.FILE_NAME).getroot()
    suite = root.find("testsuite")
    assert suite.get("name") == "camera"
    assert suite.get("tests") == "3"
    assert suite.get("failures") == "1"
    assert suite.get("skipped") == "1"
    failure = suite.find("testcase[@name='rejects bad quality']/failure")
    assert failure.get("message") == "Expected 0 to be 1."


def test_junit_only_with_output_dir(console):
    reporters = get_reporters(None, console)
    assert len(reporters) == 1
    assert isinstance(reporters[0], ConsoleReporter)


def test_specs_outside_a_suite_get_a_default_suite(tmp_path):
    reporter = JUnitReporter(tmp_path)
    reporter.specDone({"description": "lonely", "status": "passed"})
    path = reporter.jasmineDone({})
    suite = ET.parse(path).getroot().find("testsuite")
    assert suite.get("name") == "default"
    assert suite.get("tests") == "1"
