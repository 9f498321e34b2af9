import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import ValidationError

from anka_executor.clients.controller import ControllerClient
from anka_executor.clients.http import RetryPolicy, with_retry
from anka_executor.errors import (
    InstanceStateError,
    InvalidRequestError,
    MalformedResponseError,
    NotFoundError,
)
from anka_executor.models import Instance, InstanceWrapper, Node, Template
from anka_executor.schemas import (
    CreateInstanceRequest,
    Envelope,
    TerminateInstanceRequest,
)
from anka_executor.state_machine import is_usable


logger = logging.getLogger(__name__)

INSTANCE_PATH = "/api/v1/vm"
NODE_PATH = "/api/v1/node"
TEMPLATES_PATH = "/api/v1/registry/vm"

MIN_PRIORITY = 1
MAX_PRIORITY = 10000

T = TypeVar("T")


def _decode(raw: bytes, body_type: Any) -> Any:
    try:
        envelope = Envelope[body_type].model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedResponseError(detail=str(exc), body=raw) from exc
    return envelope.body


class Controller:
    """Instance, node and template operations on top of the controller API."""

    def __init__(
        self,
        client: ControllerClient,
        *,
        retry: RetryPolicy | None = None,
        stop_event: threading.Event | None = None,
        log: logging.Logger | None = None,
    ):
        self.client = client
        self.retry = retry or RetryPolicy()
        self.stop_event = stop_event or client.stop_event
        self.log = log or logger

    def _with_retry(self, operation: Callable[[], T]) -> T:
        return with_retry(
            self.retry, operation, stop_event=self.stop_event, log=self.log
        )

    def create_instance(self, request: CreateInstanceRequest) -> str:
        if request.priority != 0 and not (
            MIN_PRIORITY <= request.priority <= MAX_PRIORITY
        ):
            raise InvalidRequestError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}. "
                f"Got {request.priority}"
            )

        payload = request.to_payload()
        raw = self.client.post(INSTANCE_PATH, payload)
        instance_ids = _decode(raw, list[str]) or []
        if not instance_ids:
            raise MalformedResponseError(
                detail="no instance id returned for created instance", body=raw
            )
        self.log.debug("created instance %s", instance_ids[0])
        return instance_ids[0]

    def get_instance(self, instance_id: str) -> Instance:
        def fetch() -> Instance:
            raw = self.client.get(INSTANCE_PATH, {"id": instance_id})
            instance = _decode(raw, Instance)
            if instance is None:
                raise MalformedResponseError(
                    detail=f"instance {instance_id} missing from response", body=raw
                )
            return instance

        return self._with_retry(fetch)

    def get_all_instances(self) -> list[Instance]:
        def fetch() -> list[Instance]:
            raw = self.client.get(INSTANCE_PATH)
            wrappers: list[InstanceWrapper] = _decode(raw, list[InstanceWrapper]) or []
            self.log.debug("got %d instances back from controller", len(wrappers))
            instances = []
            for wrapper in wrappers:
                if wrapper.vm is None:
                    self.log.debug("skipping instance %s without vm data", wrapper.id)
                    continue
                instances.append(wrapper.vm)
            return instances

        return self._with_retry(fetch)

    def get_instance_by_external_id(self, external_id: str) -> Instance:
        instances = self.get_all_instances()
        if not instances:
            raise NotFoundError(
                f"no instances returned from controller while looking for "
                f"external id {external_id}"
            )

        matching = [i for i in instances if i.external_id == external_id]
        if not matching:
            raise NotFoundError(f"instance with external id {external_id} not found")

        # A retried CI job leaves the failed instance behind under the same
        # external id, so the first live one wins over Error/Terminated.
        for instance in matching:
            if is_usable(instance.state):
                if len(matching) > 1:
                    self.log.debug(
                        "%d instances share external id %s, using %s (%s)",
                        len(matching),
                        external_id,
                        instance.id,
                        instance.state.value,
                    )
                return instance

        found = matching[0]
        raise InstanceStateError(
            f"instance with external id {external_id} exists but is not in a "
            f"usable state (found state: {found.state.value})",
            instance_id=found.id,
            state=found.state.value,
        )

    def terminate_instance(self, instance_id: str) -> None:
        payload = TerminateInstanceRequest(id=instance_id).model_dump()
        raw = self.client.delete(INSTANCE_PATH, payload)
        _decode(raw, Any)

    def terminate_instance_with_retry(self, instance_id: str) -> None:
        self._with_retry(lambda: self.terminate_instance(instance_id))

    def get_node(self, node_id: str) -> Node:
        def fetch() -> Node:
            raw = self.client.get(NODE_PATH, {"id": node_id})
            nodes: list[Node] = _decode(raw, list[Node]) or []
            if not nodes:
                raise NotFoundError(f"node {node_id} not found")
            return nodes[0]

        return self._with_retry(fetch)

    def get_template_id_by_name(self, template_name: str) -> str:
        def fetch() -> list[Template]:
            raw = self.client.get(TEMPLATES_PATH, {"apiVer": "v1"})
            return _decode(raw, list[Template]) or []

        for template in self._with_retry(fetch):
            if template.name == template_name:
                return template.id
        raise NotFoundError(f"template {template_name!r} not found")
