"""Runtime configuration of the deployed service.

Kept apart from the deployment settings: it is resolved from its own file
(``.env``) and never shares a namespace with ``.env.dev``.
"""

from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from ecr_pipeline.resolver import ConfigSnapshot, ConfigValue
from ecr_pipeline.utils import parse_bool

RUNTIME_DEFAULTS: dict[str, Optional[str]] = {
    "DB_HOST": "localhost",
    "DB_PORT": "3306",
    "DB_USER": None,
    "DB_PASSWORD": None,
    "DB_NAME": None,
    "MCP_MAX_POOL_SIZE": "10",
    "MCP_READ_ONLY": "true",
    "SERVER_HOST": "127.0.0.1",
    "SERVER_PORT": "30003",
    "SERVER_TRANSPORT": "stdio",
    "SERVER_BASEPATH": "",
}


def normalize_mount_path(path: str) -> str:
    """Single leading slash, no trailing slash; ``""`` mounts at the root."""
    path = path.strip().strip("/")
    return f"/{path}" if path else ""


class RuntimeSettings(BaseModel):
    db_host: str
    db_port: int
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    db_name: Optional[str] = None
    max_pool_size: int
    read_only: bool
    host: str
    port: int
    transport: Literal["stdio", "sse", "http"]
    base_path: str = ""

    @field_validator("base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        return normalize_mount_path(value)

    @field_validator("max_pool_size")
    @classmethod
    def _positive_pool(cls, value: int) -> int:
        if value < 1:
            raise ValueError("pool size must be at least 1")
        return value


def resolve_runtime(snapshot: ConfigSnapshot) -> tuple[RuntimeSettings, dict[str, ConfigValue]]:
    values = snapshot.resolve_all(RUNTIME_DEFAULTS)
    raw = {key: value.value for key, value in values.items()}
    settings = RuntimeSettings(
        db_host=raw["DB_HOST"],
        db_port=raw["DB_PORT"],
        db_user=raw["DB_USER"],
        db_password=raw["DB_PASSWORD"],
        db_name=raw["DB_NAME"],
        max_pool_size=raw["MCP_MAX_POOL_SIZE"],
        read_only=parse_bool(raw["MCP_READ_ONLY"]),
        host=raw["SERVER_HOST"],
        port=raw["SERVER_PORT"],
        transport=raw["SERVER_TRANSPORT"],
        base_path=raw["SERVER_BASEPATH"],
    )
    return settings, values
