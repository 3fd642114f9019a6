"""Tests for the command line interface."""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from converge.cli.main import cli


def declaration(**overrides):
    data = {
        "project": {"name": "orders", "environment": "test"},
        "provider": {"project": "orders-test", "region": "local", "options": {"propagation_reads": 1}},
        "settings": {
            "state_path": ".converge/state.json",
            "retry": {"max_attempts": 2, "base_delay": 0, "max_delay": 0},
            "convergence": {"max_attempts": 3, "base_delay": 0, "max_delay": 0},
        },
        "resources": [
            {"kind": "service_account", "name": "app", "attributes": {"account_id": "orders"}},
            {"kind": "secret", "name": "token", "attributes": {"generate": {"length": 24}}},
            {
                "kind": "iam_binding",
                "name": "access",
                "attributes": {
                    "target": {"ref": "secret.token"},
                    "role": "roles/secretmanager.secretAccessor",
                    "member": {"ref": "service_account.app.member"},
                },
            },
            {
                "kind": "container_service",
                "name": "app",
                "attributes": {
                    "image": "orders:1",
                    "service_account": {"ref": "service_account.app.email"},
                },
                "depends_on": ["iam_binding.access"],
            },
        ],
        "outputs": {
            "url": "container_service.app.url",
            "account": "service_account.app.email",
            "token": {"ref": "secret.token.value", "sensitive": True},
        },
    }
    data.update(overrides)
    return data


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(runner, tmp_path, monkeypatch):
    """Runs every command inside a directory holding converge.yaml."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "converge.yaml").write_text(yaml.safe_dump(declaration()))
    return tmp_path


def invoke(runner, *args, input=None):
    return runner.invoke(cli, ["--log-level", "error", *args], input=input, catch_exceptions=False)


class TestPlanAndApply:
    """Tests for plan and apply commands."""

    def test_plan_on_empty_state(self, runner, workspace) -> None:
        result = invoke(runner, "plan")
        assert result.exit_code == 0
        assert "4 to create" in result.output
        assert not (workspace / ".converge" / "state.json").exists()

    def test_apply_then_plan_is_clean(self, runner, workspace) -> None:
        result = invoke(runner, "apply")
        assert result.exit_code == 0, result.output
        assert (workspace / ".converge" / "state.json").exists()

        result = invoke(runner, "plan")
        assert result.exit_code == 0
        assert "0 to create" in result.output
        assert "4 unchanged" in result.output

    def test_apply_sequential(self, runner, workspace) -> None:
        result = invoke(runner, "apply", "--sequential", "--max-workers", "1")
        assert result.exit_code == 0, result.output

    def test_apply_failure_exits_non_zero(self, runner, workspace) -> None:
        data = declaration()
        data["provider"]["options"]["propagation_reads"] = 10
        (workspace / "converge.yaml").write_text(yaml.safe_dump(data))

        result = invoke(runner, "apply")

        assert result.exit_code == 1
        assert "failed" in result.output
        assert "blocked" in result.output

    def test_cycle_exits_non_zero(self, runner, workspace) -> None:
        data = declaration()
        data["resources"][0]["depends_on"] = ["container_service.app"]
        (workspace / "converge.yaml").write_text(yaml.safe_dump(data))

        result = invoke(runner, "plan")

        assert result.exit_code == 1
        assert "Circular dependency" in result.output

    def test_missing_declaration(self, runner, workspace) -> None:
        result = invoke(runner, "--file", "missing.yaml", "plan")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_invalid_declaration(self, runner, workspace) -> None:
        (workspace / "converge.yaml").write_text(yaml.safe_dump({"resources": []}))
        result = invoke(runner, "plan")
        assert result.exit_code == 1
        assert "project" in result.output

    def test_corrupt_state_exits_non_zero(self, runner, workspace) -> None:
        state = workspace / ".converge" / "state.json"
        state.parent.mkdir(parents=True)
        state.write_text("{")

        result = invoke(runner, "apply")

        assert result.exit_code == 1
        assert "state recover" in result.output

    def test_undecodable_state_exits_non_zero(self, runner, workspace) -> None:
        state = workspace / ".converge" / "state.json"
        state.parent.mkdir(parents=True)
        state.write_bytes(b"\xff\xfe\x00garbage\x80")

        result = invoke(runner, "plan")

        assert result.exit_code == 1
        assert "state recover" in result.output


class TestOutput:
    """Tests for the output command."""

    def test_json_masks_sensitive_values(self, runner, workspace) -> None:
        invoke(runner, "apply")

        result = invoke(runner, "output", "--format", "json")

        values = json.loads(result.output)
        assert values["account"] == "orders@orders-test.iam.gserviceaccount.com"
        assert values["url"].startswith("https://app-")
        assert values["token"] == "<sensitive>"

    def test_show_sensitive(self, runner, workspace) -> None:
        invoke(runner, "apply")

        result = invoke(runner, "output", "token", "--show-sensitive")

        assert result.exit_code == 0
        assert len(result.output.strip()) == 24

    def test_single_output(self, runner, workspace) -> None:
        invoke(runner, "apply")
        result = invoke(runner, "output", "account")
        assert result.output.strip() == "orders@orders-test.iam.gserviceaccount.com"

    def test_unknown_output(self, runner, workspace) -> None:
        invoke(runner, "apply")
        result = invoke(runner, "output", "nope")
        assert result.exit_code == 1

    def test_no_outputs_before_apply(self, runner, workspace) -> None:
        result = invoke(runner, "output")
        assert result.exit_code == 0
        assert "No outputs" in result.output


class TestDestroy:
    """Tests for the destroy command."""

    def test_destroy_with_confirmation_declined(self, runner, workspace) -> None:
        invoke(runner, "apply")
        result = invoke(runner, "destroy", input="n\n")
        assert "Destruction cancelled" in result.output
        assert "container_service.app" in invoke(runner, "state", "list").output

    def test_destroy_yes(self, runner, workspace) -> None:
        invoke(runner, "apply")

        result = invoke(runner, "destroy", "--yes")

        assert result.exit_code == 0, result.output
        assert "No resources recorded" in invoke(runner, "state", "list").output
        assert json.loads(invoke(runner, "output", "--format", "json").output) == {}

    def test_destroy_nothing(self, runner, workspace) -> None:
        result = invoke(runner, "destroy", "--yes")
        assert result.exit_code == 0
        assert "No recorded resources" in result.output


class TestStateCommands:
    """Tests for state list/recover/reset."""

    def test_list(self, runner, workspace) -> None:
        invoke(runner, "apply")
        result = invoke(runner, "state", "list")
        assert "service_account.app" in result.output
        assert "iam_binding.access" in result.output

    def test_recover(self, runner, workspace) -> None:
        invoke(runner, "apply")
        (workspace / ".converge" / "state.json").write_text("{")

        result = invoke(runner, "state", "recover")

        assert result.exit_code == 0, result.output
        assert "State recovered" in result.output
        assert invoke(runner, "state", "list").exit_code == 0

    def test_recover_without_backup(self, runner, workspace) -> None:
        result = invoke(runner, "state", "recover")
        assert result.exit_code == 1
        assert "No state backup" in result.output

    def test_reset(self, runner, workspace) -> None:
        invoke(runner, "apply")
        (workspace / ".converge" / "state.json").write_text("{")

        result = invoke(runner, "state", "reset", "--yes")

        assert result.exit_code == 0
        assert "No resources recorded" in invoke(runner, "state", "list").output

    def test_explicit_state_path(self, runner, workspace) -> None:
        invoke(runner, "--state", "custom.json", "apply")
        assert Path(workspace / "custom.json").exists()
