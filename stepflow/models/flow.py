"""
Flow Models

Pydantic models for flow documents. A Flow is validated once when it is
loaded; each step's kind is decided there so executors never re-inspect
which protocol fields are present. The one run-time refinement is SQL: a
statement whose template renders blank hands the step to the next kind.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .. import config


class StepKind(str, Enum):
    """Protocol a step talks to"""
    SQL = "sql"
    MONGO = "mongo"
    GRPC = "grpc"
    HTTP = "http"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_text_map(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _as_text(v) for k, v in value.items()}
    return value


def _as_text_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [_as_text(value)]
    if isinstance(value, list):
        return [_as_text(v) for v in value]
    return value


class MongoStep(BaseModel):
    """Document-store operation. Payload fields are Extended JSON templates."""
    uri: str = ""
    database: str = ""
    collection: str = ""
    operation: str = ""
    filter: str = ""
    document: str = ""
    update: str = ""
    pipeline: str = ""
    command: str = ""
    limit: int = 0

    @field_validator("uri", "database", "collection", "operation", "filter", "document",
                     "update", "pipeline", "command", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("limit", mode="before")
    @classmethod
    def coerce_limit(cls, value: Any) -> Any:
        return 0 if value is None else value


class GrpcStep(BaseModel):
    """Unary or streaming RPC described by a fully-qualified method name."""
    target: str = ""
    method: str = ""
    request: str = ""
    format: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    reflection_metadata: Dict[str, str] = Field(default_factory=dict)
    use_tls: bool = False
    skip_tls_verify: bool = False
    ca_cert: str = ""
    client_cert: str = ""
    client_key: str = ""
    server_name: str = ""
    proto_sets: List[str] = Field(default_factory=list)
    proto_files: List[str] = Field(default_factory=list)
    proto_paths: List[str] = Field(default_factory=list)
    use_reflection: Optional[bool] = None  # unset means enabled
    expect_code: str = ""

    @field_validator("target", "method", "request", "format", "ca_cert", "client_cert",
                     "client_key", "server_name", "expect_code", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("metadata", "reflection_metadata", mode="before")
    @classmethod
    def coerce_maps(cls, value: Any) -> Any:
        return _as_text_map(value)

    @field_validator("proto_sets", "proto_files", "proto_paths", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> Any:
        return _as_text_list(value)

    @property
    def reflection_enabled(self) -> bool:
        return self.use_reflection is None or self.use_reflection


class Step(BaseModel):
    """
    One flow step.

    HTTP and SQL fields live directly on the step; document-store and RPC
    steps carry a `mongo` or `grpc` block. `kind` is computed on validation.
    """
    name: str = ""
    skip: bool = False
    wait: str = ""
    export: bool = False
    timeout_seconds: int = 0
    save: Dict[str, str] = Field(default_factory=dict)

    # HTTP
    method: str = ""
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    expect_status: int = 0

    # SQL
    sql: str = ""
    database_url: str = ""
    expect_affected_rows: int = 0

    mongo: Optional[MongoStep] = None
    grpc: Optional[GrpcStep] = None

    kind: Optional[StepKind] = None

    @field_validator("name", "wait", "method", "url", "body", "sql", "database_url", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("headers", "save", mode="before")
    @classmethod
    def coerce_maps(cls, value: Any) -> Any:
        return _as_text_map(value)

    @field_validator("timeout_seconds", "expect_status", "expect_affected_rows", mode="before")
    @classmethod
    def coerce_ints(cls, value: Any) -> Any:
        return 0 if value is None else value

    @model_validator(mode='after')
    def classify(self) -> 'Step':
        """Apply the default timeout and decide which protocol the step uses."""
        if self.timeout_seconds <= 0:
            self.timeout_seconds = config.get_default_timeout()

        self.kind = classify_step(self)
        if self.kind is None and not self.skip:
            raise ValueError("step requires one of sql/mongo/grpc/http fields")

        return self


def classify_step(step: Step, include_sql: bool = True) -> Optional[StepKind]:
    """
    Decide a step's kind: SQL, then document store, then RPC, then HTTP.

    At load time SQL wins whenever SQL text is present. The runner confirms
    it against the rendered text and calls this again with include_sql=False
    when the statement renders blank.

    Returns:
        StepKind, or None when no protocol fields are present
    """
    if include_sql and step.sql.strip():
        return StepKind.SQL
    if step.mongo is not None:
        return StepKind.MONGO
    if step.grpc is not None:
        return StepKind.GRPC
    if step.method.strip() and step.url.strip():
        return StepKind.HTTP
    return None


class Flow(BaseModel):
    """A flow document: initial variables plus ordered steps"""
    vars: Dict[str, str] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)

    @field_validator("vars", mode="before")
    @classmethod
    def coerce_vars(cls, value: Any) -> Any:
        return _as_text_map(value)

    @field_validator("steps", mode="before")
    @classmethod
    def coerce_steps(cls, value: Any) -> Any:
        return [] if value is None else value
