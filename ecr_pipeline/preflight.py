"""Local, offline checks run before any external action.

Every violation is collected before failing so the operator gets the full
remediation list from a single run.
"""

import logging
from collections.abc import Iterable
from pathlib import Path

from ecr_pipeline.errors import MissingArtifact, MissingConfig
from ecr_pipeline.resolver import ConfigSnapshot

logger = logging.getLogger(__name__)


class PreflightValidator:
    def __init__(self, snapshot: ConfigSnapshot):
        self.snapshot = snapshot

    def missing_keys(self, required_keys: Iterable[str]) -> list[str]:
        return [key for key in required_keys if not self.snapshot.resolve(key).is_set]

    @staticmethod
    def missing_paths(required_paths: Iterable[Path], required_files: Iterable[Path] = ()) -> list[str]:
        """Paths may be files or directories; ``required_files`` must be regular files."""
        missing = [str(path) for path in required_files if not Path(path).is_file()]
        missing += [str(path) for path in required_paths if not Path(path).exists()]
        return missing

    def validate(
        self,
        required_keys: Iterable[str] = (),
        required_paths: Iterable[Path] = (),
        required_files: Iterable[Path] = (),
    ):
        logger.info("Validating required configuration...")
        keys = self.missing_keys(required_keys)
        paths = self.missing_paths(required_paths, required_files)

        for key in keys:
            logger.error("%s is not set", key)
        for path in paths:
            logger.error("Required file not found: %s", path)

        if keys:
            raise MissingConfig(keys, paths)
        if paths:
            raise MissingArtifact(paths)
        logger.info("Preflight checks passed")
