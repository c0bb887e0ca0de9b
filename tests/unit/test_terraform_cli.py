"""Unit tests for the Terraform CLI collaborator."""

import subprocess
from pathlib import Path

import pytest

from infra_pipeline.config import Settings
from infra_pipeline.core.state import Stage
from infra_pipeline.terraform import cli as terraform_cli
from infra_pipeline.terraform.cli import TerraformCli


@pytest.fixture
def tf(tmp_path) -> TerraformCli:
    return TerraformCli(working_dir=tmp_path, plan_dir=Path("plans"), timeout=30)


@pytest.fixture
def recorded(monkeypatch):
    """Replace subprocess.run and record its calls."""
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append({"cmd": cmd, **kwargs})
        return subprocess.CompletedProcess(cmd, 0, stdout="ok", stderr="")

    monkeypatch.setattr(terraform_cli.subprocess, "run", fake_run)
    return calls


class TestBuildCommand:
    def test_init_passes_backend_config(self, tf, registry):
        cmd = tf.build_command(Stage.INIT, registry.resolve("qa"))

        assert cmd[:4] == ["terraform", "init", "-input=false", "-reconfigure"]
        assert "-backend-config=key=qa.tfstate" in cmd
        assert "-backend-config=container_name=tfstate" in cmd
        assert cmd[-1] == "-no-color"

    def test_plan_writes_environment_plan_file(self, tf, registry):
        cmd = tf.build_command(Stage.PLAN, registry.resolve("uat"))

        assert "-var-file=environments/uat.tfvars" in cmd
        assert f"-out={Path('plans') / 'uat.tfplan'}" in cmd

    def test_apply_consumes_plan_file(self, tf, registry):
        env = registry.resolve("prod")

        cmd = tf.build_command(Stage.APPLY, env)

        assert cmd[1] == "apply"
        assert "-auto-approve" in cmd
        assert str(tf.plan_file(env)) in cmd

    def test_destroy_uses_var_file(self, tf, registry):
        cmd = tf.build_command(Stage.DESTROY, registry.resolve("dev"))

        assert cmd[1] == "destroy"
        assert "-var-file=environments/dev.tfvars" in cmd

    def test_fmt_and_validate(self, tf, registry):
        env = registry.resolve("dev")

        assert tf.build_command(Stage.FMT, env)[1:4] == ["fmt", "-check", "-recursive"]
        assert tf.build_command(Stage.VALIDATE, env)[1] == "validate"


class TestRun:
    def test_success(self, tf, registry, recorded, tmp_path):
        invocation = tf.run(Stage.PLAN, registry.resolve("dev"), env={"ARM_USE_OIDC": "true"})

        assert invocation.succeeded
        assert invocation.stdout == "ok"
        assert recorded[0]["cwd"] == str(tmp_path)
        assert recorded[0]["env"]["ARM_USE_OIDC"] == "true"
        assert recorded[0]["env"]["TF_IN_AUTOMATION"] == "1"
        assert recorded[0]["timeout"] == 30
        assert (tmp_path / "plans").is_dir()

    def test_nonzero_exit_keeps_output(self, tf, registry, monkeypatch):
        def fake_run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 1, stdout="partial", stderr="Error: bad")

        monkeypatch.setattr(terraform_cli.subprocess, "run", fake_run)

        invocation = tf.run(Stage.VALIDATE, registry.resolve("dev"))

        assert not invocation.succeeded
        assert invocation.returncode == 1
        assert invocation.diagnostic == "partial\nError: bad"

    def test_timeout(self, tf, registry, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(terraform_cli.subprocess, "run", fake_run)

        invocation = tf.run(Stage.PLAN, registry.resolve("dev"))

        assert invocation.returncode == terraform_cli.TIMEOUT_RETURNCODE
        assert "timed out" in invocation.stderr

    def test_missing_binary(self, tf, registry, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(terraform_cli.subprocess, "run", fake_run)

        invocation = tf.run(Stage.INIT, registry.resolve("dev"))

        assert invocation.returncode == terraform_cli.NOT_FOUND_RETURNCODE
        assert "not found" in invocation.stderr


def test_from_settings():
    settings = Settings(
        terraform_binary="/usr/local/bin/terraform",
        stage_timeout_seconds=60,
        _env_file=None,
    )

    tf = TerraformCli.from_settings(settings)

    assert tf.binary == "/usr/local/bin/terraform"
    assert tf.timeout == 60
