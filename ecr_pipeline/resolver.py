"""Layered configuration resolution.

Every setting is resolved from four ordered tiers: the built-in default,
a key=value file, the process environment and explicit overrides (command
flags). The last tier holding a value wins. An empty string is a value;
``None`` means the tier does not supply the key.
"""

import logging
from collections.abc import Mapping
from enum import IntEnum
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict

from ecr_pipeline.errors import ConfigFileNotFound

logger = logging.getLogger(__name__)


class ConfigTier(IntEnum):
    DEFAULT = 0
    FILE = 1
    ENVIRONMENT = 2
    OVERRIDE = 3


class ConfigValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[str]
    source: ConfigTier

    @property
    def is_set(self) -> bool:
        return bool(self.value)


def resolve(
    key: str,
    default: Optional[str] = None,
    file_value: Optional[str] = None,
    env_value: Optional[str] = None,
    override_value: Optional[str] = None,
) -> ConfigValue:
    value, source = default, ConfigTier.DEFAULT
    for tier, candidate in (
        (ConfigTier.FILE, file_value),
        (ConfigTier.ENVIRONMENT, env_value),
        (ConfigTier.OVERRIDE, override_value),
    ):
        if candidate is not None:
            value, source = candidate, tier
    return ConfigValue(key=key, value=value, source=source)


def load_config_file(path: Path, required: bool = True) -> dict[str, Optional[str]]:
    """Read a key=value file.

    A missing required file raises ``ConfigFileNotFound`` before any key is
    looked at; a missing optional file yields an empty tier.
    """
    path = Path(path)
    if not path.is_file():
        if required:
            raise ConfigFileNotFound(path)
        logger.debug("No config file at %s", path)
        return {}
    logger.info("Loading configuration from %s", path)
    # Values are taken verbatim, without ${VAR} expansion.
    return dict(dotenv_values(path, interpolate=False))


class ConfigSnapshot:
    """An explicit, immutable view over the three non-default tiers."""

    def __init__(
        self,
        file: Optional[Mapping[str, Optional[str]]] = None,
        environment: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Optional[str]]] = None,
    ):
        self._file = dict(file or {})
        self._environment = dict(environment or {})
        self._overrides = dict(overrides or {})

    @classmethod
    def load(
        cls,
        path: Optional[Path],
        environment: Mapping[str, str],
        overrides: Optional[Mapping[str, Optional[str]]] = None,
        required: bool = True,
    ) -> "ConfigSnapshot":
        file_values = load_config_file(path, required=required) if path else {}
        return cls(file=file_values, environment=environment, overrides=overrides)

    def resolve(self, key: str, default: Optional[str] = None) -> ConfigValue:
        return resolve(
            key,
            default,
            file_value=self._file.get(key),
            env_value=self._environment.get(key),
            override_value=self._overrides.get(key),
        )

    def resolve_all(self, defaults: Mapping[str, Optional[str]]) -> dict[str, ConfigValue]:
        return {key: self.resolve(key, default) for key, default in defaults.items()}
