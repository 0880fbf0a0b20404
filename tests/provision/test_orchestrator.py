"""Tests for StepOrchestrator: ordering, graceful degradation, abort."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tigspine.core.errors import ErrorContext, MaterializeError, SecretGenerationError, StepAbortedError
from tigspine.provision.orchestrator import RunState, Step, StepOrchestrator, describe_failure
from tigspine.provision.results import RunLedger, RunStatus, StepKind, StepStatus


def _state(total):
    return RunState(
        config=MagicMock(),
        settings=MagicMock(),
        ledger=RunLedger(total_steps=total),
        runner=MagicMock(),
        materializer=MagicMock(),
        installer=MagicMock(),
        compose=MagicMock(),
        validator=MagicMock(),
    )


def _ok(state):
    return None


def _fails(exc):
    def body(state):
        raise exc

    return body


class TestConstruction:
    def test_ordinals_must_be_contiguous(self):
        with pytest.raises(ValueError, match="ordinals"):
            StepOrchestrator([Step(1, "a", _ok), Step(3, "b", _ok)])

    def test_names_must_be_unique(self):
        with pytest.raises(ValueError, match="unique"):
            StepOrchestrator([Step(1, "a", _ok), Step(2, "a", _ok)])


class TestRun:
    def test_all_steps_succeed(self, log_text):
        order = []
        steps = [Step(i, f"step {i}", lambda s, i=i: order.append(i)) for i in (1, 2, 3)]
        ledger = StepOrchestrator(steps).run(_state(3))
        assert order == [1, 2, 3]
        assert ledger.status == RunStatus.SUCCESS
        text = log_text()
        assert "[INFO] [STEP 2/3] Starting: step 2" in text
        assert "[SUCCESS] [STEP 3/3] Completed: step 3" in text

    def test_recoverable_failure_continues(self, log_text):
        ran = []
        steps = [
            Step(1, "Docker Installation", _ok, StepKind.FOUNDATIONAL),
            Step(
                2,
                "Grafana Configuration",
                _fails(MaterializeError("disk full", context=ErrorContext(path="/opt/tig-stack/grafana"))),
            ),
            Step(3, "InfluxDB Configuration", lambda s: ran.append(3)),
        ]
        state = _state(3)
        ledger = StepOrchestrator(steps).run(state)

        assert ran == [3]
        assert ledger.status == RunStatus.PARTIAL_SUCCESS
        assert ledger.exit_code == 0
        assert ledger.failed_steps == [("Grafana Configuration", "disk full")]
        assert ledger.completed_steps == ["Docker Installation", "InfluxDB Configuration"]
        text = log_text()
        assert "[ERROR] [STEP 2/3] Failed: Grafana Configuration - disk full path=/opt/tig-stack/grafana" in text
        assert "Continuing with remaining installation steps..." in text

    def test_foundational_failure_aborts(self, log_text):
        later = MagicMock()
        steps = [
            Step(1, "Docker Installation", _fails(RuntimeError("no runtime")), StepKind.FOUNDATIONAL),
            Step(2, "Directory Structure Creation", later),
        ]
        ledger = StepOrchestrator(steps).run(_state(2))

        later.assert_not_called()
        assert ledger.status == RunStatus.FAILED
        assert ledger.exit_code == 1
        assert [o.name for o in ledger.attempted] == ["Docker Installation"]
        assert ledger.abort_reason == "Docker Installation: RuntimeError: no runtime"
        assert "Foundational step failed; aborting remaining steps" in log_text()

    def test_abort_leaves_unreached_steps_pending(self):
        steps = [
            Step(1, "Docker Installation", _ok, StepKind.FOUNDATIONAL),
            Step(2, "Directory Structure Creation", _fails(OSError("read-only")), StepKind.FOUNDATIONAL),
            Step(3, "Grafana Configuration", _ok),
            Step(4, "InfluxDB Configuration", _ok),
        ]
        ledger = StepOrchestrator(steps).run(_state(4))

        assert ledger.pending_steps == ["Grafana Configuration", "InfluxDB Configuration"]
        assert [o.status for o in ledger.outcomes] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]
        assert ledger.to_dict()["pending"] == ["Grafana Configuration", "InfluxDB Configuration"]
        assert ledger.is_partitioned()

    def test_foundational_failure_raises_step_aborted(self):
        root = RuntimeError("no runtime")
        step = Step(1, "Docker Installation", _fails(root), StepKind.FOUNDATIONAL)
        orchestrator = StepOrchestrator([step])
        state = _state(1)
        state.ledger.plan(1, step.name, step.kind)

        with pytest.raises(StepAbortedError) as excinfo:
            orchestrator._run_step(step, state)

        assert excinfo.value.message == "Docker Installation: RuntimeError: no runtime"
        assert excinfo.value.context.step == "Docker Installation"
        assert excinfo.value.__cause__ is root
        assert excinfo.value.foundational is True

    def test_steps_see_later_steps_pending(self):
        seen = []
        steps = [
            Step(1, "a", lambda s: seen.append(list(s.ledger.pending_steps))),
            Step(2, "b", _ok),
            Step(3, "c", _ok),
        ]
        ledger = StepOrchestrator(steps).run(_state(3))
        assert seen == [["b", "c"]]
        assert ledger.pending_steps == []

    def test_foundational_error_aborts_recoverable_step(self):
        later = MagicMock()
        steps = [
            Step(1, "Password Generation", _fails(SecretGenerationError("no entropy"))),
            Step(2, "Environment File Creation", later),
        ]
        ledger = StepOrchestrator(steps).run(_state(2))
        later.assert_not_called()
        assert ledger.status == RunStatus.FAILED

    def test_every_step_failing_recoverably_is_partial(self):
        steps = [Step(i, f"s{i}", _fails(ValueError("bad"))) for i in (1, 2, 3, 4)]
        ledger = StepOrchestrator(steps).run(_state(4))
        assert ledger.status == RunStatus.PARTIAL_SUCCESS
        assert len(ledger.failed_steps) == 4
        assert ledger.is_partitioned()


class TestDescribeFailure:
    def test_tig_error_uses_message(self):
        assert describe_failure(MaterializeError("disk full")) == "disk full"

    def test_other_errors_include_type(self):
        assert describe_failure(ValueError("bad")) == "ValueError: bad"
        assert describe_failure(KeyError()) == "KeyError"
