from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class InstanceState(str, Enum):
    SCHEDULING = "Scheduling"
    PULLING = "Pulling"
    STARTED = "Started"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"
    ERROR = "Error"
    PUSHING = "Pushing"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # the controller sends null for unset fields, fall back to the defaults
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class PortForwardingRule(_WireModel):
    guest_port: int
    host_port: int
    protocol: str


class VM(_WireModel):
    name: str = ""
    port_forwarding: list[PortForwardingRule] = Field(default_factory=list)

    def forwarded_port(self, guest_port: int, protocol: str = "tcp") -> int | None:
        port = None
        for rule in self.port_forwarding:
            if rule.guest_port == guest_port and rule.protocol == protocol:
                port = rule.host_port
        return port

    def ssh_port(self) -> int | None:
        return self.forwarded_port(22)


class Node(_WireModel):
    id: str = Field(alias="node_id")
    name: str = Field(default="", alias="node_name")
    ip: str = Field(default="", alias="ip_address")


class Template(_WireModel):
    id: str
    name: str
    size: int = 0
    arch: str = ""


class Instance(_WireModel):
    id: str = Field(alias="instance_id")
    external_id: str = ""
    state: InstanceState = Field(alias="instance_state")
    node_id: str = ""
    vm_info: VM | None = Field(default=None, alias="vminfo")
    progress: float | None = None
    # resolved client-side once the instance is Started
    node: Node | None = None


class InstanceWrapper(_WireModel):
    id: str = Field(alias="instance_id")
    external_id: str = ""
    vm: Instance | None = None
