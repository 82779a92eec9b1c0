from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ecr_pipeline.resolver import ConfigSnapshot
from ecr_pipeline.utils import parse_bool, parse_build_args, parse_platforms, parse_version

DEFAULT_PLATFORMS = "linux/amd64,linux/arm64"
DEFAULT_BUILDER = "multiplatform-builder"

CREDENTIAL_KEYS = ["AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION", "AWS_ACCOUNT_ID"]
PUBLISH_KEYS = CREDENTIAL_KEYS + ["LOCAL_IMAGE_NAME", "REPO_NAME", "BUILD_TAG"]
PULL_KEYS = CREDENTIAL_KEYS + ["REPO_NAME", "BUILD_TAG"]

DEPLOY_DEFAULTS: dict[str, Optional[str]] = {
    "AWS_ACCESS_KEY_ID": None,
    "AWS_SECRET_ACCESS_KEY": None,
    "AWS_SESSION_TOKEN": None,
    "AWS_REGION": None,
    "AWS_ACCOUNT_ID": None,
    "LOCAL_IMAGE_NAME": None,
    "REPO_NAME": None,
    "BUILD_TAG": None,
    "DOCKERFILE": "Dockerfile",
    "BUILD_CONTEXT": ".",
    "PLATFORMS": DEFAULT_PLATFORMS,
    "BUILD_ARGS": "",
    "BUILDER_NAME": DEFAULT_BUILDER,
    "SKIP_TRIVY": "false",
}

LOCAL_BUILD_DEFAULTS: dict[str, Optional[str]] = {
    "IMAGE_NAME": "mariadb-mcp",
    "IMAGE_TAG": "latest",
    "DOCKERFILE": "Dockerfile",
    "BUILD_CONTEXT": ".",
    "PLATFORMS": "linux/amd64",
    "BUILD_ARGS": "",
    "BUILDER_NAME": DEFAULT_BUILDER,
    "SKIP_TRIVY": "false",
}


class RegistryCredentials(BaseModel):
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    region: str
    account_id: str

    @property
    def registry_host(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"


class ImageReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry: str = ""
    repository: str
    tag: str

    @field_validator("repository", "tag")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @property
    def name(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def uri(self) -> str:
        return f"{self.name}:{self.tag}"

    def __str__(self) -> str:
        return self.uri


class BuildTarget(BaseModel):
    dockerfile: Path
    context: Path
    platforms: list[str]
    build_args: dict[str, str] = {}

    @field_validator("platforms")
    @classmethod
    def _platforms_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one target platform is required")
        return value

    @property
    def multi_platform(self) -> bool:
        return len(self.platforms) > 1


class DeploySettings(BaseModel):
    credentials: RegistryCredentials
    local_image_name: Optional[str] = None
    repo_name: str
    build_tag: str
    target: BuildTarget
    builder_name: str = DEFAULT_BUILDER
    skip_scan: bool = False

    @property
    def reference(self) -> ImageReference:
        return ImageReference(
            registry=self.credentials.registry_host,
            repository=self.repo_name,
            tag=self.build_tag,
        )

    @property
    def local_reference(self) -> Optional[ImageReference]:
        if not self.local_image_name:
            return None
        return ImageReference(repository=self.local_image_name, tag=self.build_tag)


class LocalBuildSettings(BaseModel):
    reference: ImageReference
    target: BuildTarget
    builder_name: str = DEFAULT_BUILDER
    skip_scan: bool = False


def _build_target(values: dict[str, Optional[str]], root: Path) -> BuildTarget:
    return BuildTarget(
        dockerfile=root / values["DOCKERFILE"],
        context=root / values["BUILD_CONTEXT"],
        platforms=parse_platforms(values["PLATFORMS"]),
        build_args=parse_build_args(values["BUILD_ARGS"]),
    )


def deploy_settings(snapshot: ConfigSnapshot, root: Path) -> DeploySettings:
    """Build the deployment settings. Call only after preflight passed."""
    values = {key: value.value for key, value in snapshot.resolve_all(DEPLOY_DEFAULTS).items()}
    credentials = RegistryCredentials(
        access_key_id=values["AWS_ACCESS_KEY_ID"],
        secret_access_key=values["AWS_SECRET_ACCESS_KEY"],
        session_token=values["AWS_SESSION_TOKEN"] or None,
        region=values["AWS_REGION"],
        account_id=values["AWS_ACCOUNT_ID"],
    )
    return DeploySettings(
        credentials=credentials,
        local_image_name=values["LOCAL_IMAGE_NAME"],
        repo_name=values["REPO_NAME"],
        build_tag=parse_version(values["BUILD_TAG"]),
        target=_build_target(values, root),
        builder_name=values["BUILDER_NAME"],
        skip_scan=parse_bool(values["SKIP_TRIVY"]),
    )


def local_build_settings(snapshot: ConfigSnapshot, root: Path) -> LocalBuildSettings:
    values = {
        key: value.value for key, value in snapshot.resolve_all(LOCAL_BUILD_DEFAULTS).items()
    }
    return LocalBuildSettings(
        reference=ImageReference(
            repository=values["IMAGE_NAME"], tag=parse_version(values["IMAGE_TAG"])
        ),
        target=_build_target(values, root),
        builder_name=values["BUILDER_NAME"],
        skip_scan=parse_bool(values["SKIP_TRIVY"]),
    )
