"""ECR authentication, repository lifecycle and image push/pull."""

import base64
import logging
import subprocess
from enum import Enum
from typing import Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from docker.client import DockerClient
from docker.errors import DockerException
from docker.errors import NotFound as DockerNotFound
from pydantic import BaseModel

from ecr_pipeline.builder import ImageBuilder
from ecr_pipeline.errors import (
    AuthFailed,
    BuildFailed,
    NotFound,
    PullFailed,
    PushFailed,
    RepositoryFailed,
)
from ecr_pipeline.settings import BuildTarget, ImageReference, RegistryCredentials
from ecr_pipeline.utils import run_command

logger = logging.getLogger(__name__)

REGISTRY_TIMEOUT = 30
NOT_FOUND_MARKERS = ("manifest unknown", "not found")


class RepositoryStatus(Enum):
    EXISTED = "existed"
    CREATED = "created"


class RegistrySession(BaseModel):
    registry: str
    username: str
    password: str

    @property
    def auth_config(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


def ecr_client_for(credentials: RegistryCredentials, timeout: float = REGISTRY_TIMEOUT):
    session = boto3.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
        region_name=credentials.region,
    )
    config = Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": 1},
    )
    return session.client("ecr", config=config)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class RegistryGateway:
    """Talks to one ECR registry on behalf of a single pipeline run.

    Repository creation is check-then-create and is not atomic. A concurrent
    creator is tolerated: ``RepositoryAlreadyExistsException`` counts as the
    repository having existed.
    """

    def __init__(
        self,
        docker_client: DockerClient,
        ecr_client=None,
        builder: Optional[ImageBuilder] = None,
        timeout: float = REGISTRY_TIMEOUT,
    ):
        self.docker_client = docker_client
        self.ecr_client = ecr_client
        self.builder = builder
        self.timeout = timeout
        self.session: Optional[RegistrySession] = None

    def authenticate(self, credentials: RegistryCredentials, cli_login: bool = False) -> RegistrySession:
        if self.ecr_client is None:
            self.ecr_client = ecr_client_for(credentials, self.timeout)

        registry = credentials.registry_host
        logger.info("Logging into ECR registry %s", registry)
        try:
            token = self.ecr_client.get_authorization_token()
            encoded = token["authorizationData"][0]["authorizationToken"]
        except (ClientError, BotoCoreError) as exc:
            raise AuthFailed(f"Could not get an ECR authorization token: {exc}") from exc
        username, _, password = base64.b64decode(encoded).decode().partition(":")

        try:
            self.docker_client.login(username=username, password=password, registry=registry)
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise AuthFailed(f"Docker login to {registry} failed: {exc}") from exc

        if cli_login:
            # buildx reads credentials from the docker CLI config, not the SDK client.
            try:
                result = run_command(
                    ["docker", "login", "--username", username, "--password-stdin", registry],
                    timeout=self.timeout,
                    input=password,
                )
            except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
                raise AuthFailed(f"docker login to {registry} failed: {exc}") from exc
            if result.returncode != 0:
                raise AuthFailed(result.stderr.strip())

        self.session = RegistrySession(registry=registry, username=username, password=password)
        logger.info("Successfully authenticated to %s.", registry)
        return self.session

    def _require_session(self) -> RegistrySession:
        if self.session is None:
            raise AuthFailed("Not authenticated to the registry")
        return self.session

    def repository_exists(self, name: str) -> bool:
        try:
            self.ecr_client.describe_repositories(repositoryNames=[name])
        except ClientError as exc:
            if _error_code(exc) == "RepositoryNotFoundException":
                return False
            raise RepositoryFailed(f"Could not look up ECR repository {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise RepositoryFailed(f"Could not look up ECR repository {name}: {exc}") from exc
        return True

    def ensure_repository(self, name: str) -> RepositoryStatus:
        self._require_session()
        if self.repository_exists(name):
            logger.info("ECR repository %s exists.", name)
            return RepositoryStatus.EXISTED

        logger.info("Creating ECR repository: %s", name)
        try:
            self.ecr_client.create_repository(repositoryName=name)
        except ClientError as exc:
            if _error_code(exc) == "RepositoryAlreadyExistsException":
                logger.info("ECR repository %s was created concurrently.", name)
                return RepositoryStatus.EXISTED
            raise RepositoryFailed(f"Could not create ECR repository {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise RepositoryFailed(f"Could not create ECR repository {name}: {exc}") from exc
        return RepositoryStatus.CREATED

    def require_repository(self, name: str):
        """Read-only existence check; never creates."""
        self._require_session()
        if not self.repository_exists(name):
            logger.error("ECR repository %s does not exist.", name)
            raise NotFound(f"ECR repository {name} does not exist")
        logger.info("ECR repository %s exists.", name)

    def _stream(self, response) -> list[str]:
        errors = []
        for line in response:
            if "error" in line:
                errors.append(line["error"].strip())
                continue
            logger.info(" ".join(str(v) for k, v in line.items() if k != "progressDetail"))
        return errors

    def push(
        self,
        reference: ImageReference,
        platforms: list[str],
        target: Optional[BuildTarget] = None,
    ):
        session = self._require_session()
        logger.info("Pushing %s (%s)", reference.uri, ", ".join(platforms))
        if len(platforms) > 1:
            if target is None or self.builder is None:
                raise PushFailed("Multi-platform push needs the build target and builder")
            try:
                self.builder.run_buildx(target, reference, push=True)
            except BuildFailed as exc:
                raise PushFailed(exc.stderr) from exc
        else:
            try:
                response = self.docker_client.api.push(
                    reference.name,
                    tag=reference.tag,
                    stream=True,
                    decode=True,
                    auth_config=session.auth_config,
                )
                errors = self._stream(response)
            except (DockerException, requests.exceptions.RequestException) as exc:
                raise PushFailed(str(exc)) from exc
            if errors:
                raise PushFailed("\n".join(errors))
        logger.info("Image available at: %s", reference.uri)

    def pull(self, reference: ImageReference, check_repository: bool = True):
        session = self._require_session()
        if check_repository:
            self.require_repository(reference.repository)

        logger.info("Pulling image from ECR: %s", reference.uri)
        try:
            response = self.docker_client.api.pull(
                reference.name,
                tag=reference.tag,
                stream=True,
                decode=True,
                auth_config=session.auth_config,
            )
            errors = self._stream(response)
        except DockerNotFound as exc:
            raise NotFound(f"{reference.uri} not found: {exc.explanation}") from exc
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise PullFailed(str(exc)) from exc

        if errors:
            message = "\n".join(errors)
            if any(marker in message.lower() for marker in NOT_FOUND_MARKERS):
                raise NotFound(message)
            raise PullFailed(message)

        try:
            images = self.docker_client.images.list(name=reference.name)
        except (DockerException, requests.exceptions.RequestException) as exc:
            logger.warning("Could not list local images for %s: %s", reference.name, exc)
            images = []
        for image in images:
            logger.info("    %s %s", image.short_id, ", ".join(image.tags))
        logger.info("Image available locally: %s", reference.uri)
