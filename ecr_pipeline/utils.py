import logging
import shlex
import subprocess

import git

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
SECRET_KEYS = {"AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN", "DB_PASSWORD"}


def parse_version(version: str) -> str:
    if version == "auto":
        try:
            repo = git.Repo(search_parent_directories=True)
            sha = repo.head.object.hexsha
        except (git.exc.GitError, ValueError) as exc:
            raise ValueError(f"Cannot resolve tag 'auto' outside a git checkout: {exc}") from exc
        logger.info("Resolved tag 'auto' to commit %s", sha)
        return sha
    return version


def parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUE_VALUES


def parse_platforms(value: str | None) -> list[str]:
    """Split a comma separated platform list, dropping blanks and duplicates."""
    platforms = []
    for item in (value or "").split(","):
        item = item.strip()
        if item and item not in platforms:
            platforms.append(item)
    return platforms


def parse_build_args(value: str | None) -> dict[str, str]:
    """Parse ``NAME=VALUE NAME2=VALUE2`` into a mapping."""
    build_args = {}
    for token in shlex.split(value or ""):
        name, sep, arg_value = token.partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid build argument {token!r}, expected NAME=VALUE")
        build_args[name] = arg_value
    return build_args


def mask(key: str, value: str | None) -> str | None:
    if key in SECRET_KEYS and value:
        return "****"
    return value


def run_command(
    cmd: list[str], timeout: float | None = None, input: str | None = None
) -> subprocess.CompletedProcess:
    """Run an external tool, capturing its output. Never raises on exit code."""
    logger.debug("Executing: %s", " ".join(cmd))
    return subprocess.run(
        cmd, capture_output=True, text=True, timeout=timeout, input=input, check=False
    )


def format_size(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"
