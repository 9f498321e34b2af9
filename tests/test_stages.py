import base64
import logging
import threading

import pytest

from anka_executor.config import Settings
from anka_executor.errors import (
    BuildFailure,
    ConfigurationError,
    ExecutorError,
    InstanceStateError,
    NotFoundError,
    OperationCancelled,
    TransientError,
    is_transient,
)
from anka_executor.models import VM, Instance, InstanceState, Node, PortForwardingRule
from anka_executor.schemas import StartupScriptCondition
from anka_executor.services import stages


JOB_URL = "https://gitlab.com/group/repo/-/jobs/77"


JOB_ALIASES = {
    "job_id": "CUSTOM_ENV_CI_JOB_ID",
    "job_url": "CUSTOM_ENV_CI_JOB_URL",
    "job_status": "CUSTOM_ENV_CI_JOB_STATUS",
}


def make_settings(**overrides):
    values = {
        "controller_url": "http://controller.test",
        "job_id": "77",
        "job_url": JOB_URL,
        "template_id": "tmpl-1",
    }
    values.update(overrides)
    return Settings(
        **{JOB_ALIASES.get(key, key): value for key, value in values.items()}
    )


def started_instance(ssh=True, vm=True):
    rules = [PortForwardingRule(guest_port=22, host_port=10022, protocol="tcp")]
    return Instance(
        id="i1",
        external_id=JOB_URL,
        state=InstanceState.STARTED,
        node_id="n1",
        vm_info=VM(name="vm-1", port_forwarding=rules if ssh else []) if vm else None,
    )


class FakeController:
    def __init__(self, instance=None, lookup_error=None):
        self.stop_event = threading.Event()
        self.instance = instance or started_instance()
        self.lookup_error = lookup_error
        self.created = []
        self.terminated: list[str] = []
        self.template_lookups: list[str] = []

    def get_template_id_by_name(self, name):
        self.template_lookups.append(name)
        return "tmpl-from-name"

    def create_instance(self, request):
        self.created.append(request)
        return "i1"

    def get_instance_by_external_id(self, external_id):
        if self.lookup_error is not None:
            raise self.lookup_error
        assert external_id == self.instance.external_id
        return self.instance

    def get_node(self, node_id):
        return Node(id=node_id, name="mac-mini-1", ip="10.0.0.5")

    def terminate_instance_with_retry(self, instance_id):
        self.terminated.append(instance_id)


@pytest.fixture
def scheduled(monkeypatch):
    calls = []

    def fake_wait(controller, instance_id, **kwargs):
        calls.append((instance_id, kwargs))
        instance = started_instance()
        instance.node = controller.get_node(instance.node_id)
        return instance

    monkeypatch.setattr(
        "anka_executor.services.stages.wait_for_instance_to_be_scheduled", fake_wait
    )
    return calls


def test_config_defaults_to_job_directories():
    output = stages.execute_config(make_settings())
    assert output["builds_dir"] == "/tmp/build/77"
    assert output["cache_dir"] == "/tmp/cache/77"
    assert output["builds_dir_is_shared"] is False
    assert output["driver"]["name"] == "Anka Cloud Gitlab Executor"
    assert output["driver"]["version"]


def test_config_honours_configured_directories():
    output = stages.execute_config(
        make_settings(builds_dir="/Users/anka/builds", cache_dir="/Users/anka/cache")
    )
    assert output["builds_dir"] == "/Users/anka/builds"
    assert output["cache_dir"] == "/Users/anka/cache"


def test_prepare_creates_instance_and_waits(scheduled):
    controller = FakeController()
    settings = make_settings(
        template_tag="v3", node_group_id="g1", priority=5, vm_vcpu=4, vm_vram_mb=8192
    )
    instance = stages.execute_prepare(settings, controller)

    assert instance.id == "i1"
    assert instance.node is not None
    request = controller.created[0]
    assert request.template_id == "tmpl-1"
    assert request.external_id == JOB_URL
    assert request.tag == "v3"
    assert request.node_group_id == "g1"
    assert request.priority == 5
    assert request.vcpu == 4
    assert request.vram_mb == 8192
    assert base64.b64decode(request.startup_script) == b"sleep 5"
    assert request.startup_script_monitoring is True
    assert request.startup_script_timeout == 300
    assert request.startup_script_condition == StartupScriptCondition.WAIT_FOR_NETWORK
    assert controller.template_lookups == []
    assert scheduled[0][0] == "i1"
    assert scheduled[0][1]["poll_interval_sec"] == settings.poll_interval_sec


def test_prepare_falls_back_to_job_id_as_external_id(scheduled):
    controller = FakeController()
    stages.execute_prepare(make_settings(job_url=""), controller)
    assert controller.created[0].external_id == "77"


def test_prepare_resolves_template_name(scheduled, caplog):
    controller = FakeController()
    settings = make_settings(template_id="", template_name="sequoia")
    with caplog.at_level(logging.WARNING):
        stages.execute_prepare(settings, controller)
    assert controller.template_lookups == ["sequoia"]
    assert controller.created[0].template_id == "tmpl-from-name"
    assert "template names are not guaranteed to be unique" in caplog.text


def test_prepare_requires_a_template(scheduled):
    controller = FakeController()
    with pytest.raises(ConfigurationError, match="template"):
        stages.execute_prepare(make_settings(template_id=""), controller)
    assert controller.created == []


def test_prepare_wraps_scheduling_failure_as_transient(monkeypatch):
    def failing_wait(controller, instance_id, **kwargs):
        raise InstanceStateError(
            "instance i1 is in an unexpected state: Error",
            instance_id=instance_id,
            state="Error",
        )

    monkeypatch.setattr(
        "anka_executor.services.stages.wait_for_instance_to_be_scheduled",
        failing_wait,
    )
    with pytest.raises(TransientError) as exc_info:
        stages.execute_prepare(make_settings(), FakeController())
    assert is_transient(exc_info.value)
    assert isinstance(exc_info.value.__cause__, InstanceStateError)


def test_prepare_propagates_cancellation(monkeypatch):
    def cancelled_wait(controller, instance_id, **kwargs):
        raise OperationCancelled()

    monkeypatch.setattr(
        "anka_executor.services.stages.wait_for_instance_to_be_scheduled",
        cancelled_wait,
    )
    with pytest.raises(OperationCancelled):
        stages.execute_prepare(make_settings(), FakeController())


class FakeRunner:
    def __init__(self, exit_status=0):
        self.exit_status = exit_status
        self.calls = []

    def __call__(self, host, port, username, password, script, **kwargs):
        self.calls.append((host, port, username, password, script.read(), kwargs))
        return self.exit_status


@pytest.fixture
def script_path(tmp_path):
    path = tmp_path / "script"
    path.write_bytes(b"#!/bin/bash\necho hello\n")
    return str(path)


def test_run_streams_script_over_ssh(script_path, tmp_path):
    runner = FakeRunner()
    stdout = (tmp_path / "out").open("wb")
    with stdout:
        stages.execute_run(
            make_settings(ssh_user_name="builder", ssh_password="secret"),
            FakeController(),
            script_path,
            "build_script",
            runner=runner,
            stdout=stdout,
            stderr=stdout,
        )
    host, port, username, password, script, kwargs = runner.calls[0]
    assert (host, port) == ("10.0.0.5", 10022)
    assert (username, password) == ("builder", "secret")
    assert script == b"#!/bin/bash\necho hello\n"
    assert kwargs["stdout"] is stdout


def test_run_uses_default_credentials(script_path):
    runner = FakeRunner()
    stages.execute_run(
        make_settings(), FakeController(), script_path, "build_script", runner=runner
    )
    assert runner.calls[0][2:4] == ("anka", "admin")


def test_run_non_zero_exit_is_build_failure(script_path):
    with pytest.raises(BuildFailure) as exc_info:
        stages.execute_run(
            make_settings(),
            FakeController(),
            script_path,
            "build_script",
            runner=FakeRunner(exit_status=3),
        )
    assert exc_info.value.exit_status == 3


def test_run_without_vm(script_path):
    controller = FakeController(instance=started_instance(vm=False))
    with pytest.raises(InstanceStateError):
        stages.execute_run(
            make_settings(), controller, script_path, "step", runner=FakeRunner()
        )


def test_run_without_ssh_port(script_path):
    controller = FakeController(instance=started_instance(ssh=False))
    runner = FakeRunner()
    with pytest.raises(NotFoundError, match="ssh port"):
        stages.execute_run(
            make_settings(), controller, script_path, "step", runner=runner
        )
    assert runner.calls == []


def test_run_with_missing_script(tmp_path):
    runner = FakeRunner()
    with pytest.raises(ExecutorError, match="failed to open script"):
        stages.execute_run(
            make_settings(),
            FakeController(),
            str(tmp_path / "missing"),
            "step",
            runner=runner,
        )
    assert runner.calls == []


def test_cleanup_terminates_instance():
    controller = FakeController()
    stages.execute_cleanup(make_settings(), controller)
    assert controller.terminated == ["i1"]


def test_cleanup_keeps_failed_job_vm_alive():
    controller = FakeController()
    settings = make_settings(keep_alive_on_error=True, job_status="failed")
    stages.execute_cleanup(settings, controller)
    assert controller.terminated == []


def test_cleanup_keep_alive_ignored_for_successful_job():
    controller = FakeController()
    settings = make_settings(keep_alive_on_error=True, job_status="success")
    stages.execute_cleanup(settings, controller)
    assert controller.terminated == ["i1"]


@pytest.mark.parametrize("state", ["Terminated", "Terminating"])
def test_cleanup_skips_instance_already_going_away(state):
    error = InstanceStateError("not usable", instance_id="i9", state=state)
    controller = FakeController(lookup_error=error)
    stages.execute_cleanup(make_settings(), controller)
    assert controller.terminated == []


def test_cleanup_terminates_instance_in_error():
    error = InstanceStateError("not usable", instance_id="i9", state="Error")
    controller = FakeController(lookup_error=error)
    stages.execute_cleanup(make_settings(), controller)
    assert controller.terminated == ["i9"]


def test_cleanup_propagates_missing_instance():
    controller = FakeController(lookup_error=NotFoundError("not found"))
    with pytest.raises(NotFoundError):
        stages.execute_cleanup(make_settings(), controller)
