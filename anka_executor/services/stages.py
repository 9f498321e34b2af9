import base64
import logging
import sys
import threading
from collections.abc import Callable
from importlib.metadata import PackageNotFoundError, version
from typing import Any, BinaryIO

from anka_executor.clients.controller import ControllerClient
from anka_executor.clients.ssh import run_script
from anka_executor.config import JOB_STATUS_FAILED, Settings
from anka_executor.errors import (
    BuildFailure,
    ConfigurationError,
    ExecutorError,
    InstanceStateError,
    NotFoundError,
    OperationCancelled,
    TransientError,
)
from anka_executor.models import Instance, InstanceState
from anka_executor.schemas import CreateInstanceRequest, StartupScriptCondition
from anka_executor.services.controller import Controller
from anka_executor.services.scheduling import wait_for_instance_to_be_scheduled


logger = logging.getLogger(__name__)

DRIVER_NAME = "Anka Cloud Gitlab Executor"
PACKAGE_NAME = "anka-gitlab-executor"

DEFAULT_SSH_USER_NAME = "anka"
DEFAULT_SSH_PASSWORD = "admin"

# the VM already waits for network, this covers services still coming up
STARTUP_SCRIPT = "sleep 5"
STARTUP_SCRIPT_TIMEOUT_SEC = 5 * 60

HIGHLIGHT = {"highlight": True}

ScriptRunner = Callable[..., int]


def get_version() -> str:
    try:
        return version(PACKAGE_NAME)
    except PackageNotFoundError:
        return "0.0.0.dev0"


def build_controller(
    settings: Settings,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> Controller:
    client = ControllerClient(settings.client_config(), stop_event=stop_event, log=log)
    return Controller(
        client, retry=settings.retry_policy(), stop_event=stop_event, log=log
    )


def execute_config(settings: Settings) -> dict[str, Any]:
    return {
        "builds_dir": settings.builds_dir or f"/tmp/build/{settings.job_id}",
        "cache_dir": settings.cache_dir or f"/tmp/cache/{settings.job_id}",
        "builds_dir_is_shared": False,
        "driver": {"name": DRIVER_NAME, "version": get_version()},
    }


def execute_prepare(
    settings: Settings,
    controller: Controller,
    *,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> Instance:
    log = log or logger
    log.debug("running prepare stage")

    template_id = settings.template_id
    template = template_id
    if not template_id:
        if not settings.template_name:
            raise ConfigurationError(
                "either template id or template name must be specified"
            )
        log.warning(
            "please consider using template id instead of template name as "
            "template names are not guaranteed to be unique"
        )
        template_id = controller.get_template_id_by_name(settings.template_name)
        log.info(
            "template with id %r and name %r will be used",
            template_id,
            settings.template_name,
            extra=HIGHLIGHT,
        )
        template = settings.template_name

    request = CreateInstanceRequest(
        template_id=template_id,
        external_id=settings.external_id,
        tag=settings.template_tag,
        node_id=settings.node_id,
        priority=settings.priority,
        node_group_id=settings.node_group_id,
        startup_script=base64.b64encode(STARTUP_SCRIPT.encode()).decode("ascii"),
        startup_script_monitoring=True,
        startup_script_timeout=STARTUP_SCRIPT_TIMEOUT_SEC,
        startup_script_condition=StartupScriptCondition.WAIT_FOR_NETWORK,
        vcpu=settings.vm_vcpu,
        vram_mb=settings.vm_vram_mb,
    )
    log.info(
        "Creating macOS VM with Template %r and Tag %r -- please be patient...",
        template,
        settings.template_tag or "(latest)",
        extra=HIGHLIGHT,
    )
    log.debug("payload %r", request.to_payload())
    instance_id = controller.create_instance(request)

    try:
        instance = wait_for_instance_to_be_scheduled(
            controller,
            instance_id,
            poll_interval_sec=settings.poll_interval_sec,
            stop_event=stop_event,
            log=log,
        )
    except OperationCancelled:
        raise
    except ExecutorError as exc:
        raise TransientError(
            f"failed to wait for instance {instance_id!r} to be scheduled: {exc}"
        ) from exc

    vm_name = instance.vm_info.name if instance.vm_info else ""
    node_name = instance.node.name if instance.node else ""
    node_ip = instance.node.ip if instance.node else ""
    log.info(
        "VM %s (%s) is ready for work on node %s (%s)",
        vm_name,
        instance.id,
        node_name,
        node_ip,
        extra=HIGHLIGHT,
    )
    return instance


def execute_run(
    settings: Settings,
    controller: Controller,
    script_path: str,
    stage: str,
    *,
    runner: ScriptRunner = run_script,
    stdout: BinaryIO | None = None,
    stderr: BinaryIO | None = None,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> None:
    log = log or logger
    log.info("running run stage %s", stage)

    instance = controller.get_instance_by_external_id(settings.external_id)
    log.debug("instance id: %s", instance.id)
    if instance.vm_info is None:
        raise InstanceStateError(
            f"instance {instance.id} has no VM",
            instance_id=instance.id,
            state=instance.state.value,
        )

    ssh_port = instance.vm_info.ssh_port()
    if ssh_port is None:
        raise NotFoundError(f"could not find ssh port forwarded for vm {instance.id}")
    log.debug("node SSH port to VM: %d", ssh_port)

    node = controller.get_node(instance.node_id)
    log.debug("node IP: %s", node.ip)

    try:
        script = open(script_path, "rb")
    except OSError as exc:
        raise ExecutorError(
            f"failed to open script file at {script_path!r}: {exc}"
        ) from exc
    with script:
        log.debug("gitlab script path: %s", script_path)
        exit_status = runner(
            node.ip,
            ssh_port,
            settings.ssh_user_name or DEFAULT_SSH_USER_NAME,
            settings.ssh_password or DEFAULT_SSH_PASSWORD,
            script,
            stdout=stdout or sys.stdout.buffer,
            stderr=stderr or sys.stderr.buffer,
            stop_event=stop_event,
            log=log,
        )
    if exit_status != 0:
        raise BuildFailure(exit_status)


def execute_cleanup(
    settings: Settings,
    controller: Controller,
    *,
    log: logging.Logger | None = None,
) -> None:
    log = log or logger
    log.debug("running cleanup stage")

    if settings.keep_alive_on_error and settings.job_status == JOB_STATUS_FAILED:
        log.info("keeping VM alive on error", extra=HIGHLIGHT)
        return

    try:
        instance_id = controller.get_instance_by_external_id(settings.external_id).id
    except InstanceStateError as exc:
        if exc.state in {
            InstanceState.TERMINATED.value,
            InstanceState.TERMINATING.value,
        }:
            log.info("instance %s is already %s", exc.instance_id, exc.state)
            return
        # an instance stuck in Error still holds resources on the node
        log.warning("terminating instance %s in state %s", exc.instance_id, exc.state)
        instance_id = exc.instance_id
    log.debug("instance id: %s", instance_id)

    controller.terminate_instance_with_retry(instance_id)
    log.info("issued termination request for instance %s", instance_id)
