"""Typed messages exchanged between the dev session and the worker process."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

ROLLOUT_SESSION_ID_ENV = "LMNR_ROLLOUT_SESSION_ID"
ROLLOUT_STATE_SERVER_ADDRESS_ENV = "LMNR_ROLLOUT_STATE_SERVER_ADDRESS"

WorkerArgs = list[Any] | dict[str, Any]
LogLevel = Literal["info", "debug", "error", "warn"]


class WorkerConfig(BaseModel):
    """Snapshot of everything the worker needs to run one rollout.

    Serialized as camelCase JSON on the worker's stdin. Exactly one of
    ``file_path`` and ``module_path`` is expected.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    file_path: str | None = None
    module_path: str | None = None
    function_name: str | None = None
    args: WorkerArgs = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    cache_server_port: int
    base_url: str
    project_api_key: str | None = None
    http_port: int
    grpc_port: int


class WorkerLogMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["log"] = "log"
    level: LogLevel
    message: str


class WorkerResultMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["result"] = "result"
    data: Any = None


class WorkerErrorMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    error: str
    stack: str | None = None


WorkerMessage = Annotated[
    WorkerLogMessage | WorkerResultMessage | WorkerErrorMessage,
    Field(discriminator="type"),
]

worker_message_adapter: TypeAdapter[WorkerMessage] = TypeAdapter(WorkerMessage)


class RolloutParam(BaseModel):
    """Parameter of a rollout function as announced to the dashboard."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str | None = None
    required: bool | None = None
    nested: list["RolloutParam"] | None = None
    default: str | None = None


class FunctionMetadata(BaseModel):
    """Name and parameters of the served rollout function."""

    model_config = ConfigDict(frozen=True)

    name: str
    params: list[RolloutParam] = Field(default_factory=list)
