import threading

from ralphloop.gateway import CommandGateway, VerificationGateway, parse_failure_metadata
from ralphloop.graph import Task
from ralphloop.safety import SafetyPreCheck


def _task(command=None):
    return Task(id="T1", verify=command)


def test_command_gateway_satisfies_protocol(tmp_path):
    assert isinstance(CommandGateway(tmp_path), VerificationGateway)


def test_no_command_passes(tmp_path):
    outcome = CommandGateway(tmp_path).run(_task(), timeout=5)
    assert outcome.success
    assert "No verification command" in outcome.diagnostics


def test_exit_zero_passes(tmp_path):
    outcome = CommandGateway(tmp_path).run(_task("echo all good"), timeout=5)
    assert outcome.success
    assert outcome.exit_code == 0
    assert "all good" in outcome.diagnostics


def test_nonzero_exit_is_failure_data(tmp_path):
    outcome = CommandGateway(tmp_path).run(_task("echo boom >&2; exit 3"), timeout=5)
    assert not outcome.success
    assert outcome.exit_code == 3
    assert "boom" in outcome.diagnostics


def test_task_id_is_exported(tmp_path):
    outcome = CommandGateway(tmp_path).run(_task('test "$RALPHLOOP_TASK_ID" = T1'), timeout=5)
    assert outcome.success


def test_failure_marker_becomes_metadata(tmp_path):
    command = """echo 'RALPHLOOP-FAILURE {"property_id": "P1", "expected": "3", "actual": "4"}'; exit 1"""
    outcome = CommandGateway(tmp_path).run(_task(command), timeout=5)
    assert outcome.metadata is not None
    assert outcome.metadata.property_id == "P1"
    assert outcome.metadata.actual == "4"


def test_timeout_kills_and_reports(tmp_path):
    outcome = CommandGateway(tmp_path).run(_task("sleep 5"), timeout=0.3)
    assert not outcome.success
    assert outcome.timed_out
    assert outcome.duration_ms < 5000
    assert "timed out" in outcome.diagnostics


def test_cancel_stops_running_check(tmp_path):
    gateway = CommandGateway(tmp_path)
    timer = threading.Timer(0.3, gateway.cancel)
    timer.start()
    try:
        outcome = gateway.run(_task("sleep 5"), timeout=10)
    finally:
        timer.cancel()
    assert not outcome.success
    assert "cancelled" in outcome.diagnostics
    assert outcome.duration_ms < 5000


def test_safety_denial_never_executes(tmp_path):
    marker = tmp_path / "ran"
    gateway = CommandGateway(tmp_path, safety=SafetyPreCheck())
    outcome = gateway.run(_task(f"touch {marker}; rm -rf {tmp_path}/nothing"), timeout=5)
    assert outcome.policy_blocked
    assert not outcome.success
    assert not marker.exists()


def test_default_command_used_when_task_has_none(tmp_path):
    outcome = CommandGateway(tmp_path, default_command="exit 2").run(_task(), timeout=5)
    assert outcome.exit_code == 2


def test_malformed_marker_ignored():
    assert parse_failure_metadata("RALPHLOOP-FAILURE {not json}") is None
    assert parse_failure_metadata("no marker here") is None
