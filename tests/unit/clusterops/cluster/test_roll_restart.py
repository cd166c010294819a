import io
import logging
from pathlib import Path
from unittest import mock

import pytest

from clusterops.cluster.roll_restart import RollRestartNodes, parser_type_list
from clusterops.libs.common import TestUtils
from clusterops.libs.maintenance import AvailabilityMode, CMSHTTPAPI
from clusterops.libs.nodes import InvalidFilter
from clusterops.libs.restarters import RemoteTool
from clusterops.libs.rolling import InvalidRestartOptions, RunStateStore

CATALOG_REPLY = {
    "nodes": [
        {"node_id": 1, "host": "storage1.example.org", "port": 19001, "kind": "storage"},
        {"node_id": 2, "host": "storage2.example.org", "port": 19001, "kind": "storage"},
        {"node_id": 50000, "host": "compute1.example.org", "port": 31001, "kind": "compute", "tenant": "/db1"},
    ]
}


def get_config_dir(tmp_path: Path) -> Path:
    config_dir = tmp_path / "spicerack"
    (config_dir / "cookbooks").mkdir(parents=True)
    (config_dir / "cookbooks" / "clusterops.yaml").write_text(
        f"cms_url: https://cms.example.org/api/\nstate_dir: {tmp_path / 'state'}\npoll_interval_seconds: 1\n"
    )
    return config_dir


def get_fake_proc(returncode: int = 0) -> mock.MagicMock:
    fake_proc = mock.MagicMock()
    fake_proc.__enter__.return_value = fake_proc
    fake_proc.__exit__.return_value = False
    fake_proc.stdout = io.StringIO("")
    fake_proc.stderr = io.StringIO("")
    fake_proc.wait.return_value = returncode
    return fake_proc


def get_runner(tmp_path: Path, argv, dry_run: bool = False):
    spicerack = TestUtils.get_fake_spicerack(config_dir=get_config_dir(tmp_path), dry_run=dry_run)
    cookbook = RollRestartNodes(spicerack)
    args = cookbook.argument_parser().parse_args(argv)
    return cookbook.get_runner(args)


def get_fake_api(status: str = "granted") -> mock.MagicMock:
    fake_api = mock.create_autospec(CMSHTTPAPI, instance=True)
    fake_api.list_nodes.return_value = CATALOG_REPLY
    fake_api.create_task.return_value = {"task_uid": "task-1", "status": status, "reason": f"{status} by test"}
    return fake_api


def test_parser_type_list():
    assert parser_type_list("db1, db2,,db3 ") == ["db1", "db2", "db3"]


def test_argument_parser_defaults():
    args = RollRestartNodes(TestUtils.get_fake_spicerack()).argument_parser().parse_args([])

    assert args.hosts == []
    assert args.tenants == []
    assert args.exclude_hosts == []
    assert args.availability_mode == AvailabilityMode.STRONG
    assert args.restart_duration == 3
    assert args.restart_retry_number == 3
    assert not args.continue_run
    assert args.run_id is None
    assert args.ssh_tool is None


def test_argument_parser_repeated_and_comma_separated_lists():
    parser = RollRestartNodes(TestUtils.get_fake_spicerack()).argument_parser()

    args = parser.parse_args(
        ["--hosts", "1,2", "--hosts", "3", "--availability-mode", "weak", "--ssh-tool", "pssh", "--continue"]
    )

    assert args.hosts == ["1", "2", "3"]
    assert args.availability_mode == AvailabilityMode.WEAK
    assert args.ssh_tool == RemoteTool.PSSH
    assert args.continue_run


@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_rejects_mixed_hosts(_, tmp_path):
    with pytest.raises(InvalidFilter):
        get_runner(tmp_path, ["--hosts", "storage1.example.org,2"])


@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_rejects_negative_duration(_, tmp_path):
    with pytest.raises(InvalidRestartOptions):
        get_runner(tmp_path, ["--restart-duration", "-1"])


@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_runtime_description(_, tmp_path):
    runner = get_runner(tmp_path, ["--hosts", "1,2", "--run-id", "maintenance-42", "--availability-mode", "force"])

    assert runner.runtime_description == "maintenance-42 for 1,2 in force mode"


@mock.patch("clusterops.libs.restarters.subprocess.Popen", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.CMSHTTPAPI", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_dry_run_only_prints_the_plan(mocked_ensure_shell, mocked_api_class, mocked_popen, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    fake_api = get_fake_api()
    mocked_api_class.from_config.return_value = fake_api
    runner = get_runner(tmp_path, ["--exclude-hosts", "2"], dry_run=True)

    assert runner.run() == 0

    mocked_ensure_shell.assert_not_called()
    fake_api.create_task.assert_not_called()
    mocked_popen.assert_not_called()
    assert "Would restart 2 nodes, in this order:" in caplog.text
    assert "compute node 50000 (compute1.example.org)" in caplog.text
    assert not (tmp_path / "state").exists()


@mock.patch("clusterops.libs.restarters.subprocess.Popen", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.CMSHTTPAPI", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_restarts_all_the_nodes(mocked_ensure_shell, mocked_api_class, mocked_popen, tmp_path):
    fake_api = get_fake_api()
    mocked_api_class.from_config.return_value = fake_api
    mocked_popen.side_effect = lambda *_args, **_kwargs: get_fake_proc()
    runner = get_runner(tmp_path, ["--run-id", "run1", "--internal-units", "--ssh-args", "nssh --yes"])

    assert runner.run() == 0

    mocked_ensure_shell.assert_called_once_with()
    assert fake_api.create_task.call_count == 3
    assert [popen_call[0][0][0] for popen_call in mocked_popen.call_args_list] == ["nssh", "nssh", "nssh"]
    assert "kikimr-multi@31001" in mocked_popen.call_args_list[2][0][0][3]
    state = RunStateStore(tmp_path / "state").load("run1")
    assert state.target_node_ids == [1, 2, 50000]


@mock.patch("clusterops.libs.restarters.subprocess.Popen", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.CMSHTTPAPI", autospec=True)
@mock.patch("clusterops.cluster.roll_restart.ensure_shell_is_durable", autospec=True)
def test_runner_returns_failure_when_nodes_are_exhausted(_, mocked_api_class, mocked_popen, tmp_path, caplog):
    fake_api = get_fake_api(status="rejected")
    mocked_api_class.from_config.return_value = fake_api
    runner = get_runner(tmp_path, ["--hosts", "1", "--restart-retry-number", "2"])

    assert runner.run() == 1

    assert fake_api.create_task.call_count == 2
    mocked_popen.assert_not_called()
    assert "Some nodes were not restarted" in caplog.text
