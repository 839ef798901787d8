"""Tests for container command construction and step preparation."""

import json
import logging
import shutil
import stat
import time
from unittest.mock import MagicMock

import pytest

from iacrunner.config import RunnerConfig
from iacrunner.exceptions import ConfigurationError, ExecutionError, SecretError
from iacrunner.exec.dispatcher import ContainerCommand, ExecutionDispatcher, LocalRuntime
from iacrunner.exec.runner import TaskRunner
from iacrunner.security.secrets import SecretCipher, SecretsMasker


class TestExecutionDispatcher:

    def setup_method(self):
        self.dispatcher = ExecutionDispatcher(runtime=None, default_image="worker:latest")

    def test_env_is_sorted_and_prefixed(self, make_request):
        request = make_request(
            environment_vars={"B": "2", "A": "1"},
            terraform_vars={"size": "small"},
        )

        env = self.dispatcher.build_env(request)

        assert env == [
            "A=1",
            "B=2",
            "TF_PLUGIN_CACHE_DIR=/cloudiac/cache/plugins",
            "TF_VAR_size=small",
        ]

    def test_plugin_cache_can_be_overridden(self, make_request):
        env = self.dispatcher.build_env(make_request(environment_vars={"TF_PLUGIN_CACHE_DIR": "/tmp/c"}))
        assert "TF_PLUGIN_CACHE_DIR=/tmp/c" in env

    def test_env_independent_of_insertion_order(self, make_request):
        one = make_request(environment_vars={"X": "1", "Y": "2"})
        two = make_request(environment_vars={"Y": "2", "X": "1"})
        assert self.dispatcher.build_env(one) == self.dispatcher.build_env(two)

    def test_command(self, make_request, tmp_path):
        command = self.dispatcher.build_command(make_request(step=2, step_type="apply", timeout=600), tmp_path)

        assert command.image == "worker:latest"
        assert command.commands == ["sh", "-c", "sh step2/script.sh >>step2/step.log 2>&1"]
        assert command.timeout == 600
        assert command.workdir == "/cloudiac/workspace"
        assert command.host_workdir == str(tmp_path)

    def test_debug_traces_script(self, make_request, tmp_path):
        request = make_request(environment_vars={"CLOUDIAC_DEBUG": "true"})
        command = self.dispatcher.build_command(request, tmp_path)
        assert command.commands[2].startswith("sh -x step0/script.sh")

    def test_image_override(self, make_request, tmp_path):
        command = self.dispatcher.build_command(make_request(docker_image="custom:1"), tmp_path)
        assert command.image == "custom:1"

    def test_dispatch_records_step_info(self, make_request, tmp_path):
        runtime = MagicMock()
        runtime.start.return_value = "abc123"
        (tmp_path / "step1").mkdir()
        dispatcher = ExecutionDispatcher(runtime, default_image="worker:latest")

        handle = dispatcher.dispatch(make_request(step=1, step_type="plan"), tmp_path)

        assert handle == "abc123"
        runtime.start.assert_called_once()
        info = json.loads((tmp_path / "step1" / "step-info.json").read_text())
        assert info["containerHandle"] == "abc123"

    def test_step_info_write_failure_is_logged(self, make_request, tmp_path, caplog):
        runtime = MagicMock()
        runtime.start.return_value = "abc123"
        dispatcher = ExecutionDispatcher(runtime, default_image="worker:latest")

        with caplog.at_level(logging.ERROR):
            handle = dispatcher.dispatch(make_request(step=4, step_type="plan"), tmp_path)

        assert handle == "abc123"
        assert "write step info" in caplog.text

    def test_runtime_start_failure_is_execution_error(self, make_request, tmp_path):
        runtime = MagicMock()
        runtime.start.side_effect = OSError("docker daemon unreachable")
        (tmp_path / "step0").mkdir()
        dispatcher = ExecutionDispatcher(runtime, default_image="worker:latest")

        with pytest.raises(ExecutionError) as exc_info:
            dispatcher.dispatch(make_request(), tmp_path)

        assert exc_info.value.to_error()["type"] == "execution_error"
        assert "docker daemon unreachable" in exc_info.value.message
        assert not (tmp_path / "step0" / "step-info.json").exists()

    def test_runtime_wait_failure_is_execution_error(self):
        runtime = MagicMock()
        runtime.wait.side_effect = RuntimeError("container vanished")
        dispatcher = ExecutionDispatcher(runtime, default_image="worker:latest")

        with pytest.raises(ExecutionError) as exc_info:
            dispatcher.wait("abc123", 60)

        assert exc_info.value.context == {"handle": "abc123"}


class TestTaskRunner:

    def setup_method(self):
        self.key = SecretCipher.generate_key()
        self.cipher = SecretCipher(self.key)

    def make_runner(self, tmp_path, runtime, masker=None):
        config = RunnerConfig(storage_path=str(tmp_path / "storage"), secret_key=self.key)
        return TaskRunner(config, runtime, masker=masker)

    def test_run_prepares_and_dispatches(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)

        run = runner.run(make_request(timeout=60))

        workspace = tmp_path / "storage" / "p1" / "e1" / "t1"
        assert run.workspace == workspace
        assert run.handle == "container-1"
        assert run.script_path == workspace / "step0" / "script.sh"
        assert "git clone https://example.com/repo.git code" in run.script_path.read_text()
        assert stat.S_IMODE(run.script_path.stat().st_mode) == 0o755

        info = json.loads((workspace / "step0" / "step-info.json").read_text())
        assert info == {"envId": "e1", "taskId": "t1", "step": 0, "containerHandle": "container-1"}
        assert fake_runtime.started[0].host_workdir == str(workspace)

    def test_secrets_are_decrypted(self, tmp_path, fake_runtime, make_request):
        masker = SecretsMasker()
        runner = self.make_runner(tmp_path, fake_runtime, masker)
        request = make_request(
            private_key=self.cipher.encrypt("PRIVATE KEY"),
            terraform_vars={"password": self.cipher.encrypt("hunter2")},
        )

        run = runner.run(request)

        assert (run.workspace / "ssh_key").read_text() == "PRIVATE KEY\n"
        assert "TF_VAR_password=hunter2" in fake_runtime.started[0].env
        assert masker.mask_text("hunter2 PRIVATE KEY") == "*** ***"
        # the caller's request still carries the encrypted values
        assert request.env.terraform_vars["password"].startswith("secret:")

    def test_bad_private_key_fails_before_workspace(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)

        with pytest.raises(SecretError) as exc_info:
            runner.run(make_request(private_key="secret:garbage"))

        assert exc_info.value.message.startswith("decrypt private key")
        assert not (tmp_path / "storage").exists()
        assert fake_runtime.started == []

    def test_bad_variable_fails_before_workspace(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)

        with pytest.raises(SecretError):
            runner.run(make_request(environment_vars={"TOKEN": "secret:garbage"}))

        assert not (tmp_path / "storage").exists()

    def test_render_error_fails_before_workspace(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)

        with pytest.raises(ConfigurationError):
            runner.run(make_request(repo_address=""))

        assert not (tmp_path / "storage").exists()

    def test_retry_of_first_step_starts_clean(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)
        first = runner.run(make_request())
        (first.workspace / "code").mkdir()

        again = runner.run(make_request(retry_attempt=1))

        assert again.workspace == first.workspace
        assert not (again.workspace / "code").exists()

    def test_later_step_uses_workspace(self, tmp_path, fake_runtime, make_request):
        runner = self.make_runner(tmp_path, fake_runtime)
        runner.run(make_request())

        run = runner.run(make_request(step=1, step_type="plan", workdir=""))

        assert run.script_path.parent.name == "step1"
        assert "terraform plan" in run.script_path.read_text()


@pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")
class TestLocalRuntime:

    def test_exit_code(self, tmp_path):
        runtime = LocalRuntime()
        handle = runtime.start(ContainerCommand(
            image="ignored", env=["OUT=hello"], commands=["sh", "-c", "echo $OUT > out.txt; exit 3"],
            host_workdir=str(tmp_path),
        ))

        status = runtime.wait(handle)

        assert status.exit_code == 3
        assert not status.timed_out
        assert (tmp_path / "out.txt").read_text().strip() == "hello"

    def test_timeout(self, tmp_path):
        runtime = LocalRuntime()
        handle = runtime.start(ContainerCommand(
            image="ignored", commands=["sh", "-c", "sleep 5"], host_workdir=str(tmp_path),
        ))

        status = runtime.wait(handle, timeout=0.2)

        assert status.timed_out
        assert status.exit_code == 124

    def test_timeout_kills_child_processes(self, tmp_path):
        runtime = LocalRuntime()
        handle = runtime.start(ContainerCommand(
            image="ignored",
            commands=["sh", "-c", "(sleep 1; echo late > late.txt) & sleep 5"],
            host_workdir=str(tmp_path),
        ))

        status = runtime.wait(handle, timeout=0.2)
        time.sleep(1.5)

        assert status.timed_out
        assert not (tmp_path / "late.txt").exists()
