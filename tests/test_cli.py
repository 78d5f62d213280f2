import json

import pytest
from click.testing import CliRunner

import cli as cli_module
from fakes import RW, FakeAzureDevOps, relation
from services.azure_devops_service import AzureDevOpsAuthenticationError


@pytest.fixture
def ado():
    wiql = {"workItemRelations": [relation(None, 1), relation(1, 2), relation(1, 3)]}
    fields = {
        1: {"System.Title": "Feature", "System.WorkItemType": "Feature", "System.State": "Active"},
        2: {"System.Title": "Task", RW: 3},
        3: {"System.Title": "Task", RW: 4},
    }
    return FakeAzureDevOps(wiql=wiql, fields=fields)


@pytest.fixture
def files(tmp_path, ado, monkeypatch):
    monkeypatch.setattr(cli_module, "AzureDevOpsService", lambda *args, **kwargs: ado)
    monkeypatch.setattr(cli_module, "setup_logging", lambda **kwargs: None)
    monkeypatch.setenv("AZURE_DEVOPS_ORG", "contoso")
    monkeypatch.setenv("AZURE_DEVOPS_PROJECT", "Web")
    monkeypatch.setenv("AZURE_DEVOPS_PAT", "secret")

    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"fieldsToRollup": [RW], "batchSize": 10, "maxUpdates": 10}))
    backlog = tmp_path / "backlog.json"
    backlog.write_text(json.dumps({"areaPaths": ["Web"], "capacity": 5}))
    return str(settings), str(backlog)


def test_rollup_defaults_to_safe_mode(files, ado):
    settings, backlog = files

    result = CliRunner().invoke(cli_module.cli, ["--settings", settings, "rollup", "-c", backlog])

    assert result.exit_code == 0, result.output
    assert "Safe mode enabled" in result.output
    assert "1\tundefined\t7\tTrue\tFeature\tActive\t\"Feature\"" in result.output
    assert "Count of work items updated: 0" in result.output
    assert ado.batches == []


def test_rollup_apply_with_cap(files, ado):
    settings, backlog = files

    result = CliRunner().invoke(cli_module.cli,
                                ["--settings", settings, "rollup", "-c", backlog, "--apply", "-f", "1"])

    assert result.exit_code == 0, result.output
    assert "Capping updates to max of 1." in result.output
    assert "Count of work items updated: 1" in result.output
    assert len(ado.batches) == 1


def test_rollup_saves_plan_workbook(files, tmp_path):
    settings, backlog = files
    plan_file = tmp_path / "plan.xlsx"

    result = CliRunner().invoke(cli_module.cli, ["--settings", settings, "rollup", "-c", backlog,
                                                 "--plan-file", str(plan_file)])

    assert result.exit_code == 0, result.output
    assert plan_file.exists()


def test_rollup_needs_config_or_query(files):
    settings, _ = files

    result = CliRunner().invoke(cli_module.cli, ["--settings", settings, "rollup"])

    assert result.exit_code == 2
    assert "Either --config or --queryid is required." in result.output


def test_rollup_rejects_safe_with_apply(files):
    settings, backlog = files

    result = CliRunner().invoke(cli_module.cli,
                                ["--settings", settings, "rollup", "-c", backlog, "--safe", "--apply"])

    assert result.exit_code == 2


def test_rollup_reports_authentication_failure(files, ado):
    settings, backlog = files
    ado.run_error = AzureDevOpsAuthenticationError("Invalid Azure DevOps PAT token.")

    result = CliRunner().invoke(cli_module.cli, ["--settings", settings, "rollup", "-c", backlog])

    assert result.exit_code == 1
    assert "Invalid Azure DevOps PAT token." in result.output


def test_projection(files, ado):
    settings, backlog = files
    ado.wiql = {"workItems": [{"id": 2}, {"id": 3}]}

    result = CliRunner().invoke(cli_module.cli, ["--settings", settings, "projection", "-c", backlog,
                                                 "-i", "Web\\Q1"])

    assert result.exit_code == 0, result.output
    assert "--------------Cutline: Capacity: 5, Cost: 3--------------" in result.output
