import argparse
import logging
import os
import shlex
import sys
from pathlib import Path

from ecr_pipeline import pipelines
from ecr_pipeline.errors import DeployError
from ecr_pipeline.pipelines import PipelineFailed
from ecr_pipeline.resolver import ConfigSnapshot
from ecr_pipeline.runtime import resolve_runtime
from ecr_pipeline.utils import mask

logger = logging.getLogger("ecr_pipeline")

LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=logging.DEBUG if verbose else logging.INFO,
    )


def build_overrides(args) -> dict[str, str | None]:
    """Map the flags that were given onto config keys. Absent flags stay absent."""
    overrides = {
        "BUILD_TAG": getattr(args, "tag", None),
        "IMAGE_TAG": getattr(args, "tag", None),
        "IMAGE_NAME": getattr(args, "image_name", None),
        "DOCKERFILE": getattr(args, "dockerfile", None),
        "BUILDER_NAME": getattr(args, "builder", None),
        "SERVER_HOST": getattr(args, "host", None),
        "SERVER_PORT": getattr(args, "port", None),
        "SERVER_TRANSPORT": getattr(args, "transport", None),
        "SERVER_BASEPATH": getattr(args, "base_path", None),
    }
    if getattr(args, "platform", None):
        overrides["PLATFORMS"] = ",".join(args.platform)
    if getattr(args, "build_arg", None):
        overrides["BUILD_ARGS"] = " ".join(shlex.quote(arg) for arg in args.build_arg)
    if getattr(args, "skip_scan", False):
        overrides["SKIP_TRIVY"] = "true"
    return {key: value for key, value in overrides.items() if value is not None}


def _run_pipeline(flow, snapshot: ConfigSnapshot, root: Path) -> int:
    try:
        run = flow(snapshot, root)
    except PipelineFailed as exc:
        logger.error("%s stage failed: %s", exc.stage.value, exc.error)
        return 1
    logger.info("Result: %s", run.result)
    return 0


def publish_command(args, environment) -> int:
    snapshot = ConfigSnapshot.load(
        args.env_file or args.root / ".env.dev", environment, build_overrides(args)
    )
    return _run_pipeline(pipelines.publish, snapshot, args.root)


def pull_command(args, environment) -> int:
    snapshot = ConfigSnapshot.load(
        args.env_file or args.root / ".env.dev", environment, build_overrides(args)
    )
    return _run_pipeline(pipelines.pull, snapshot, args.root)


def build_command(args, environment) -> int:
    snapshot = ConfigSnapshot(environment=environment, overrides=build_overrides(args))
    return _run_pipeline(pipelines.build, snapshot, args.root)


def config_command(args, environment) -> int:
    snapshot = ConfigSnapshot.load(
        args.env_file or args.root / ".env",
        environment,
        build_overrides(args),
        required=False,
    )
    try:
        settings, values = resolve_runtime(snapshot)
    except ValueError as exc:
        logger.error("Invalid runtime configuration: %s", exc)
        return 1

    logger.info("Runtime configuration:")
    for key, value in values.items():
        logger.info("    %s=%s (%s)", key, mask(key, value.value), value.source.name.lower())
    logger.info("Mount path: %r", settings.base_path)
    return 0


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ecr-pipeline",
        description="Build, publish and pull multi-platform images to AWS ECR.",
    )
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Project root")
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(title="Commands", dest="command", required=True)

    def add_build_flags(subparser):
        subparser.add_argument("--tag", help="Image tag ('auto' for the git commit)")
        subparser.add_argument("--dockerfile")
        subparser.add_argument("--platform", action="append", help="Target platform, repeatable")
        subparser.add_argument("--build-arg", action="append", help="NAME=VALUE, repeatable")
        subparser.add_argument("--builder", help="buildx builder name")
        subparser.add_argument("--skip-scan", action="store_true")

    # Build command
    build_parser = subparsers.add_parser("build", help="Build the image locally")
    add_build_flags(build_parser)
    build_parser.add_argument("--image-name")
    build_parser.set_defaults(func=build_command)

    # Publish command
    publish_parser = subparsers.add_parser("publish", help="Build and push the image to ECR")
    add_build_flags(publish_parser)
    publish_parser.add_argument("--env-file", type=Path)
    publish_parser.set_defaults(func=publish_command)

    # Pull command
    pull_parser = subparsers.add_parser("pull", help="Pull the image from ECR")
    pull_parser.add_argument("--tag")
    pull_parser.add_argument("--env-file", type=Path)
    pull_parser.set_defaults(func=pull_command)

    config_parser = subparsers.add_parser("config", help="Show the resolved runtime config")
    config_parser.add_argument("--env-file", type=Path)
    config_parser.add_argument("--host")
    config_parser.add_argument("--port")
    config_parser.add_argument("--transport", choices=["stdio", "sse", "http"])
    config_parser.add_argument("--base-path", help="HTTP mount path")
    config_parser.set_defaults(func=config_command)

    return parser


def main(argv=None) -> int:
    args = make_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        return args.func(args, dict(os.environ))  # Call the appropriate function
    except DeployError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
