from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field


STATUS_OK = "OK"

BodyT = TypeVar("BodyT")


class Envelope(BaseModel, Generic[BodyT]):
    """Every controller response: ``{"status", "message", "body"}``."""

    status: str
    message: str = ""
    body: BodyT | None = None


class StartupScriptCondition(str, Enum):
    WAIT_FOR_NETWORK = "wait-for-network"
    NO_WAIT = "no-wait"


class CreateInstanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: str = Field(alias="vmid")
    external_id: str = ""
    tag: str = ""
    node_id: str = ""
    priority: int = 0
    node_group_id: str = Field(default="", alias="group_id")
    startup_script: str = ""
    startup_script_monitoring: bool = Field(default=False, alias="script_monitoring")
    startup_script_timeout: int = Field(default=0, alias="script_timeout")
    startup_script_condition: StartupScriptCondition | None = None
    vcpu: int = 0
    vram_mb: int = Field(default=0, alias="vram")

    def to_payload(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, mode="json")
        # unset optional fields are left out of the request entirely
        return {
            key: value
            for key, value in data.items()
            if key == "vmid" or value not in (None, "", 0, False)
        }


class TerminateInstanceRequest(BaseModel):
    id: str
