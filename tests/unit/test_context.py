"""Unit tests for the GitHub Actions run context."""

import json

import pytest

from infra_pipeline.core.context import CiContext, load_dispatch_inputs, resolve_trigger
from infra_pipeline.core.errors import ConfigurationError, NotFoundError
from infra_pipeline.core.state import TriggerKind


@pytest.fixture
def dispatch_event(tmp_path):
    path = tmp_path / "event.json"
    path.write_text(json.dumps({
        "inputs": {
            "environment": "qa",
            "plan": "true",
            "apply": "true",
            "destroy": "false",
            "comment": "release 42",
        }
    }))
    return path


class TestResolveTrigger:
    def test_push(self):
        assert resolve_trigger("push") == TriggerKind.PUSH

    def test_workflow_dispatch(self):
        assert resolve_trigger("workflow_dispatch") == TriggerKind.MANUAL

    def test_unsupported_event(self):
        with pytest.raises(ConfigurationError):
            resolve_trigger("pull_request")


class TestDispatchInputs:
    def test_reads_inputs(self, dispatch_event):
        inputs = load_dispatch_inputs(dispatch_event)

        assert inputs["environment"] == "qa"

    def test_push_payload_has_no_inputs(self, tmp_path):
        path = tmp_path / "push.json"
        path.write_text(json.dumps({"ref": "refs/heads/main"}))

        assert load_dispatch_inputs(path) == {}

    def test_missing_payload(self, tmp_path):
        with pytest.raises(NotFoundError):
            load_dispatch_inputs(tmp_path / "missing.json")


class TestCiContext:
    def test_manual_dispatch(self, dispatch_event):
        context = CiContext.from_environ({
            "GITHUB_EVENT_NAME": "workflow_dispatch",
            "GITHUB_EVENT_PATH": str(dispatch_event),
            "GITHUB_REF_NAME": "main",
            "DEPLOYMENT_APPROVED": "true",
        })

        assert context.trigger == TriggerKind.MANUAL
        assert context.environment == "qa"
        assert context.branch == "main"
        assert context.approval_satisfied is True
        assert context.requested_flags == {"plan": True, "apply": True, "destroy": False}

    def test_push_uses_target_environment(self):
        context = CiContext.from_environ({
            "GITHUB_EVENT_NAME": "push",
            "TARGET_ENVIRONMENT": "prod",
        })

        assert context.trigger == TriggerKind.PUSH
        assert context.environment == "prod"
        assert context.approval_satisfied is False
        assert context.requested_flags == {}

    def test_missing_environment(self):
        with pytest.raises(ConfigurationError, match="target environment"):
            CiContext.from_environ({"GITHUB_EVENT_NAME": "push"})

    def test_missing_event_name(self):
        with pytest.raises(ConfigurationError):
            CiContext.from_environ({})
