"""Container image builds.

Single platform targets go through the docker SDK build API so the engine
output can be streamed into the log. Multi-platform targets need buildx,
which the SDK does not drive, so those shell out to the docker CLI against
a named builder.
"""

import logging
import shutil
import subprocess
import time
from collections.abc import Iterable

import requests
from docker.client import DockerClient
from docker.errors import DockerException

from ecr_pipeline.errors import BuildFailed, EngineUnavailable, MissingArtifact
from ecr_pipeline.settings import DEFAULT_BUILDER, BuildTarget, ImageReference
from ecr_pipeline.utils import format_size, run_command

logger = logging.getLogger(__name__)

BUILDX_TIMEOUT = 120
SCAN_SEVERITY = "HIGH,CRITICAL"


class ImageBuilder:
    def __init__(
        self,
        docker_client: DockerClient,
        builder_name: str = DEFAULT_BUILDER,
        skip_scan: bool = False,
        scanner: str = "trivy",
    ):
        self.docker_client = docker_client
        self.builder_name = builder_name
        self.skip_scan = skip_scan
        self.scanner = scanner

    def check_engine(self):
        try:
            self.docker_client.ping()
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise EngineUnavailable(f"Docker daemon is not reachable: {exc}") from exc

    def _buildx(self, args: list[str], timeout: float | None = BUILDX_TIMEOUT):
        try:
            return run_command(["docker", "buildx", *args], timeout=timeout)
        except FileNotFoundError as exc:
            raise EngineUnavailable("docker CLI is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise BuildFailed(f"docker buildx {args[0]} timed out after {exc.timeout}s") from exc

    def ensure_builder(self) -> bool:
        """Create the named buildx builder if it is absent.

        Returns True when the builder was created by this call.
        """
        created = False
        if self._buildx(["inspect", self.builder_name]).returncode == 0:
            logger.info("Using existing buildx builder: %s", self.builder_name)
        else:
            logger.info("Creating new buildx builder: %s", self.builder_name)
            result = self._buildx(["create", "--name", self.builder_name])
            if result.returncode != 0:
                raise BuildFailed(result.stderr)
            created = True

        logger.info("Bootstrapping buildx builder...")
        result = self._buildx(["inspect", self.builder_name, "--bootstrap"])
        if result.returncode != 0:
            raise BuildFailed(result.stderr)
        return created

    def buildx_command(self, target: BuildTarget, reference: ImageReference, push: bool = False) -> list[str]:
        args = [
            "build",
            "--builder",
            self.builder_name,
            "--platform",
            ",".join(target.platforms),
            "-t",
            reference.uri,
            "-f",
            str(target.dockerfile),
        ]
        for name, value in target.build_args.items():
            args += ["--build-arg", f"{name}={value}"]
        if push:
            args.append("--push")
        args.append(str(target.context))
        return args

    def run_buildx(self, target: BuildTarget, reference: ImageReference, push: bool = False):
        result = self._buildx(self.buildx_command(target, reference, push=push), timeout=None)
        for line in result.stderr.splitlines():
            logger.debug(line)
        if result.returncode != 0:
            raise BuildFailed(result.stderr)

    def _build_single(self, target: BuildTarget, reference: ImageReference) -> str:
        image_id = None
        errors = []
        try:
            response = self.docker_client.api.build(
                path=str(target.context),
                dockerfile=str(target.dockerfile.resolve()),
                tag=reference.uri,
                buildargs=target.build_args,
                platform=target.platforms[0],
                rm=True,
                decode=True,
            )
            for line in response:
                if "stream" in line:
                    text = line["stream"].rstrip()
                    if text:
                        logger.info(text)
                elif "error" in line:
                    errors.append(line["error"].rstrip())
                elif "aux" in line:
                    image_id = line["aux"].get("ID", image_id)
                else:
                    logger.info(" ".join(str(v) for v in line.values()))
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise BuildFailed(str(exc)) from exc

        if errors:
            raise BuildFailed("\n".join(errors))
        return image_id or reference.uri

    def build(
        self,
        target: BuildTarget,
        reference: ImageReference,
        aliases: Iterable[ImageReference] = (),
    ) -> str:
        """Build ``target`` as ``reference``.

        Returns the image id for single platform builds and the tagged
        reference for multi-platform builds, which only live in the builder
        cache until pushed.
        """
        self.check_engine()
        missing = []
        if not target.dockerfile.is_file():
            missing.append(str(target.dockerfile))
        if not target.context.is_dir():
            missing.append(str(target.context))
        if missing:
            raise MissingArtifact(missing)

        logger.info("Building %s for %s", reference.uri, ", ".join(target.platforms))
        start = time.monotonic()
        if target.multi_platform:
            self.ensure_builder()
            self.run_buildx(target, reference)
            result = reference.uri
            logger.warning(
                "Security scan skipped: multi-platform images are not loaded into the local engine"
            )
        else:
            result = self._build_single(target, reference)
            for alias in aliases:
                try:
                    self.docker_client.api.tag(reference.uri, alias.name, alias.tag)
                except (DockerException, requests.exceptions.RequestException) as exc:
                    raise BuildFailed(f"Could not tag {reference.uri} as {alias.uri}: {exc}") from exc
                logger.info("Tagged %s as %s", reference.uri, alias.uri)
            self.scan(reference)
            self.log_image_size(reference)

        logger.info(
            "Docker image built successfully in %.1f seconds", time.monotonic() - start
        )
        return result

    def scan(self, reference: ImageReference) -> bool:
        """Run the vulnerability scanner. Findings are advisory only."""
        if self.skip_scan:
            logger.warning("Security scan skipped (SKIP_TRIVY=true)")
            return False
        if shutil.which(self.scanner) is None:
            logger.warning("%s not installed. Skipping security scan.", self.scanner)
            return False

        logger.info("Running %s security scan...", self.scanner)
        result = run_command(
            [self.scanner, "image", "--severity", SCAN_SEVERITY, "--exit-code", "1", reference.uri]
        )
        for line in result.stdout.splitlines():
            logger.info(line)
        if result.returncode != 0:
            logger.warning("Security scan found vulnerabilities")
        else:
            logger.info("Security scan completed")
        return True

    def log_image_size(self, reference: ImageReference):
        try:
            size = self.docker_client.images.get(reference.uri).attrs["Size"]
        except (DockerException, requests.exceptions.RequestException) as exc:
            logger.warning("Could not inspect %s: %s", reference.uri, exc)
            return
        logger.info("Image size: %s", format_size(size))
