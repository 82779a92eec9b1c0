"""Publish, pull and local build flows.

Each flow is a strictly linear sequence of stages. The first failing stage
stops the run and is reported through ``PipelineFailed``.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import docker
import requests
from docker.client import DockerClient
from docker.errors import DockerException

from ecr_pipeline.builder import ImageBuilder
from ecr_pipeline.errors import DeployError, EngineUnavailable, InvalidConfig
from ecr_pipeline.preflight import PreflightValidator
from ecr_pipeline.registry import RegistryGateway
from ecr_pipeline.resolver import ConfigSnapshot
from ecr_pipeline.settings import (
    PUBLISH_KEYS,
    PULL_KEYS,
    deploy_settings,
    local_build_settings,
)

logger = logging.getLogger(__name__)

PROJECT_ARTIFACTS = ("pyproject.toml", "src")


class Stage(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BUILDING = "building"
    AUTHENTICATING = "authenticating"
    REPOSITORY_CHECK = "repository_check"
    PUSHING = "pushing"
    PULLING = "pulling"
    DONE = "done"
    FAILED = "failed"


PUBLISH_STAGES = [
    Stage.VALIDATING,
    Stage.BUILDING,
    Stage.AUTHENTICATING,
    Stage.REPOSITORY_CHECK,
    Stage.PUSHING,
]
PULL_STAGES = [Stage.VALIDATING, Stage.AUTHENTICATING, Stage.REPOSITORY_CHECK, Stage.PULLING]
BUILD_STAGES = [Stage.VALIDATING, Stage.BUILDING]


class PipelineFailed(Exception):
    def __init__(self, stage: Stage, error: DeployError):
        self.stage = stage
        self.error = error
        super().__init__(f"{stage.value} failed: {error}")


class PipelineRun:
    """Tracks one invocation through its stages. Owns no persistent state."""

    def __init__(self, name: str, stages: list[Stage]):
        self.name = name
        self.stages = stages
        self.state = Stage.IDLE
        self.history = [Stage.IDLE]
        self.failure: Optional[PipelineFailed] = None
        self.result: Any = None

    @contextmanager
    def stage(self, stage: Stage):
        completed = len(self.history) - 1
        if (
            self.state in (Stage.DONE, Stage.FAILED)
            or completed >= len(self.stages)
            or self.stages[completed] != stage
        ):
            raise RuntimeError(f"{self.name}: cannot enter {stage.value} from {self.state.value}")

        self.state = stage
        self.history.append(stage)
        logger.info("[%s] %s (%d/%d)", self.name, stage.value, completed + 1, len(self.stages))
        try:
            yield
        except DeployError as exc:
            self.state = Stage.FAILED
            self.history.append(Stage.FAILED)
            self.failure = PipelineFailed(stage, exc)
            raise self.failure from exc

    def finish(self, result: Any = None) -> "PipelineRun":
        self.state = Stage.DONE
        self.history.append(Stage.DONE)
        self.result = result
        logger.info("[%s] completed successfully", self.name)
        return self


def connect_docker() -> DockerClient:
    try:
        return docker.from_env()
    except (DockerException, requests.exceptions.RequestException) as exc:
        raise EngineUnavailable(f"Docker daemon is not running: {exc}") from exc


def _dockerfile(snapshot: ConfigSnapshot, root: Path) -> Path:
    return root / snapshot.resolve("DOCKERFILE", "Dockerfile").value


def _settings(factory, snapshot: ConfigSnapshot, root: Path):
    try:
        return factory(snapshot, root)
    except ValueError as exc:
        raise InvalidConfig(str(exc)) from exc


def publish(
    snapshot: ConfigSnapshot,
    root: Path,
    docker_client: Optional[DockerClient] = None,
    ecr_client=None,
) -> PipelineRun:
    """Validate, build, authenticate, ensure the repository and push."""
    run = PipelineRun("publish", PUBLISH_STAGES)

    with run.stage(Stage.VALIDATING):
        PreflightValidator(snapshot).validate(
            PUBLISH_KEYS,
            [root / name for name in PROJECT_ARTIFACTS],
            [_dockerfile(snapshot, root)],
        )
        settings = _settings(deploy_settings, snapshot, root)

    reference = settings.reference
    with run.stage(Stage.BUILDING):
        docker_client = docker_client or connect_docker()
        builder = ImageBuilder(docker_client, settings.builder_name, settings.skip_scan)
        aliases = [settings.local_reference] if settings.local_reference else []
        builder.build(settings.target, reference, aliases=aliases)

    gateway = RegistryGateway(docker_client, ecr_client=ecr_client, builder=builder)
    with run.stage(Stage.AUTHENTICATING):
        gateway.authenticate(settings.credentials, cli_login=settings.target.multi_platform)

    with run.stage(Stage.REPOSITORY_CHECK):
        gateway.ensure_repository(settings.repo_name)

    with run.stage(Stage.PUSHING):
        gateway.push(reference, settings.target.platforms, settings.target)

    return run.finish(reference)


def pull(
    snapshot: ConfigSnapshot,
    root: Path,
    docker_client: Optional[DockerClient] = None,
    ecr_client=None,
) -> PipelineRun:
    """Validate, authenticate, check the repository exists and pull."""
    run = PipelineRun("pull", PULL_STAGES)

    with run.stage(Stage.VALIDATING):
        PreflightValidator(snapshot).validate(PULL_KEYS)
        settings = _settings(deploy_settings, snapshot, root)

    reference = settings.reference
    with run.stage(Stage.AUTHENTICATING):
        docker_client = docker_client or connect_docker()
        gateway = RegistryGateway(docker_client, ecr_client=ecr_client)
        gateway.authenticate(settings.credentials)

    with run.stage(Stage.REPOSITORY_CHECK):
        gateway.require_repository(settings.repo_name)

    with run.stage(Stage.PULLING):
        gateway.pull(reference, check_repository=False)

    return run.finish(reference)


def build(
    snapshot: ConfigSnapshot,
    root: Path,
    docker_client: Optional[DockerClient] = None,
) -> PipelineRun:
    """Build the image locally without touching any registry."""
    run = PipelineRun("build", BUILD_STAGES)

    with run.stage(Stage.VALIDATING):
        PreflightValidator(snapshot).validate(
            (), required_files=[_dockerfile(snapshot, root), root / "pyproject.toml"]
        )
        settings = _settings(local_build_settings, snapshot, root)

    with run.stage(Stage.BUILDING):
        docker_client = docker_client or connect_docker()
        builder = ImageBuilder(docker_client, settings.builder_name, settings.skip_scan)
        image = builder.build(settings.target, settings.reference)

    return run.finish(image)
