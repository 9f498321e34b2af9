import logging
import threading

from anka_executor.errors import InstanceStateError, OperationCancelled
from anka_executor.models import Instance, InstanceState
from anka_executor.services.controller import Controller
from anka_executor.state_machine import can_transition


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 10.0


def wait_for_instance_to_be_scheduled(
    controller: Controller,
    instance_id: str,
    *,
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> Instance:
    """Poll the controller until ``instance_id`` is Started.

    Returns the instance with its node resolved. There is no upper bound on
    how long this waits; setting ``stop_event`` is the only way out of an
    instance that never leaves Scheduling/Pulling.
    """
    log = log or logger
    stop_event = stop_event or controller.stop_event
    previous: InstanceState | None = None

    while True:
        if stop_event.wait(poll_interval_sec):
            raise OperationCancelled(
                f"cancelled while waiting for instance {instance_id} to be scheduled"
            )

        instance = controller.get_instance(instance_id)
        state = instance.state
        log.info("instance %s is in state %r", instance_id, state.value)
        if previous is not None and not can_transition(previous, state):
            log.warning(
                "instance %s moved from %s to %s unexpectedly",
                instance_id,
                previous.value,
                state.value,
            )
        previous = state

        if state == InstanceState.SCHEDULING:
            continue
        if state == InstanceState.PULLING:
            if instance.progress:
                log.info("pulling progress: %.0f%%", instance.progress * 100)
            continue
        if state == InstanceState.STARTED:
            instance.node = controller.get_node(instance.node_id)
            return instance

        raise InstanceStateError(
            f"instance {instance_id} is in an unexpected state: {state.value}",
            instance_id=instance_id,
            state=state.value,
        )
