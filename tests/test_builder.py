import logging
from unittest.mock import call, patch

import pytest
import requests
from docker.errors import APIError, DockerException

from ecr_pipeline.builder import ImageBuilder
from ecr_pipeline.errors import BuildFailed, EngineUnavailable, MissingArtifact
from ecr_pipeline.settings import BuildTarget, ImageReference

REFERENCE = ImageReference(registry="registry.example.com", repository="mariadb-mcp", tag="v1")


def make_target(project, platforms=("linux/amd64",), build_args=None) -> BuildTarget:
    return BuildTarget(
        dockerfile=project / "Dockerfile",
        context=project,
        platforms=list(platforms),
        build_args=build_args or {},
    )


def test_engine_unreachable(project, docker_client):
    docker_client.ping.side_effect = DockerException("connection refused")
    with pytest.raises(EngineUnavailable):
        ImageBuilder(docker_client).build(make_target(project), REFERENCE)
    docker_client.api.build.assert_not_called()


def test_missing_dockerfile(tmp_path, docker_client):
    with pytest.raises(MissingArtifact) as exc_info:
        ImageBuilder(docker_client).build(make_target(tmp_path), REFERENCE)
    assert exc_info.value.paths == [str(tmp_path / "Dockerfile")]


def test_single_platform_build(project, docker_client):
    alias = ImageReference(repository="mariadb-mcp", tag="v1")
    builder = ImageBuilder(docker_client, skip_scan=True)

    image = builder.build(
        make_target(project, build_args={"EMBEDDING_EXTRAS": "none"}), REFERENCE, aliases=[alias]
    )

    assert image == "sha256:abc123"
    kwargs = docker_client.api.build.call_args.kwargs
    assert kwargs["tag"] == "registry.example.com/mariadb-mcp:v1"
    assert kwargs["buildargs"] == {"EMBEDDING_EXTRAS": "none"}
    assert kwargs["platform"] == "linux/amd64"
    docker_client.api.tag.assert_called_once_with(REFERENCE.uri, "mariadb-mcp", "v1")


def test_single_platform_build_error(project, docker_client):
    docker_client.api.build.return_value = iter(
        [
            {"stream": "Step 1/2 : RUN false\n"},
            {"error": "The command '/bin/sh -c false' returned a non-zero code: 1"},
        ]
    )
    with pytest.raises(BuildFailed) as exc_info:
        ImageBuilder(docker_client, skip_scan=True).build(make_target(project), REFERENCE)
    assert "non-zero code: 1" in exc_info.value.stderr


def test_single_platform_api_error(project, docker_client):
    docker_client.api.build.side_effect = APIError("Cannot locate specified Dockerfile")
    with pytest.raises(BuildFailed):
        ImageBuilder(docker_client, skip_scan=True).build(make_target(project), REFERENCE)


def test_multi_platform_creates_builder(project, docker_client, completed):
    target = make_target(project, platforms=["linux/amd64", "linux/arm64"])
    builder = ImageBuilder(docker_client, builder_name="multiplatform-builder")
    results = [completed(1, stderr="no builder"), completed(), completed(), completed()]

    with patch("ecr_pipeline.builder.run_command", side_effect=results) as run:
        assert builder.build(target, REFERENCE) == REFERENCE.uri

    commands = [c.args[0] for c in run.call_args_list]
    assert commands[0] == ["docker", "buildx", "inspect", "multiplatform-builder"]
    assert commands[1] == ["docker", "buildx", "create", "--name", "multiplatform-builder"]
    assert commands[2] == ["docker", "buildx", "inspect", "multiplatform-builder", "--bootstrap"]
    build_cmd = commands[3]
    assert build_cmd[:3] == ["docker", "buildx", "build"]
    assert "linux/amd64,linux/arm64" in build_cmd
    assert "--push" not in build_cmd
    assert build_cmd[-1] == str(project)
    docker_client.api.build.assert_not_called()


def test_existing_builder_is_reused(docker_client, completed):
    builder = ImageBuilder(docker_client, builder_name="multiplatform-builder")
    with patch("ecr_pipeline.builder.run_command", side_effect=[completed(), completed()]) as run:
        assert builder.ensure_builder() is False
    assert run.call_count == 2
    assert all("create" not in c.args[0] for c in run.call_args_list)


def test_multi_platform_build_failure(project, docker_client, completed):
    target = make_target(project, platforms=["linux/amd64", "linux/arm64"])
    results = [completed(), completed(), completed(1, stderr="ERROR: failed to solve")]
    with patch("ecr_pipeline.builder.run_command", side_effect=results):
        with pytest.raises(BuildFailed) as exc_info:
            ImageBuilder(docker_client).build(target, REFERENCE)
    assert exc_info.value.stderr == "ERROR: failed to solve"


def test_buildx_command_with_push_and_build_args(project, docker_client):
    target = make_target(
        project, platforms=["linux/amd64", "linux/arm64"], build_args={"EMBEDDING_EXTRAS": "all"}
    )
    cmd = ImageBuilder(docker_client, builder_name="b1").buildx_command(target, REFERENCE, push=True)
    assert cmd[:3] == ["build", "--builder", "b1"]
    assert ["--build-arg", "EMBEDDING_EXTRAS=all"] == cmd[cmd.index("--build-arg"):cmd.index("--build-arg") + 2]
    assert cmd[-2:] == ["--push", str(project)]


def test_scan_without_scanner_is_a_warning(docker_client, caplog):
    caplog.set_level(logging.WARNING)
    with patch("ecr_pipeline.builder.shutil.which", return_value=None):
        assert ImageBuilder(docker_client).scan(REFERENCE) is False
    assert "not installed" in caplog.text


def test_scan_findings_do_not_fail(docker_client, caplog, completed):
    caplog.set_level(logging.WARNING)
    with patch("ecr_pipeline.builder.shutil.which", return_value="/usr/bin/trivy"), patch(
        "ecr_pipeline.builder.run_command", return_value=completed(1, stdout="CVE-2024-0001")
    ) as run:
        assert ImageBuilder(docker_client).scan(REFERENCE) is True
    assert run.call_args == call(
        ["trivy", "image", "--severity", "HIGH,CRITICAL", "--exit-code", "1", REFERENCE.uri]
    )
    assert "found vulnerabilities" in caplog.text


def test_scan_skipped(docker_client):
    with patch("ecr_pipeline.builder.run_command") as run:
        assert ImageBuilder(docker_client, skip_scan=True).scan(REFERENCE) is False
    run.assert_not_called()


def test_single_platform_connection_lost(project, docker_client):
    docker_client.api.build.side_effect = requests.exceptions.ConnectionError("Connection aborted")
    with pytest.raises(BuildFailed, match="Connection aborted"):
        ImageBuilder(docker_client, skip_scan=True).build(make_target(project), REFERENCE)


def test_alias_tag_failure(project, docker_client):
    alias = ImageReference(repository="mariadb-mcp", tag="v1")
    docker_client.api.tag.side_effect = APIError("no such image")
    with pytest.raises(BuildFailed, match="Could not tag"):
        ImageBuilder(docker_client, skip_scan=True).build(make_target(project), REFERENCE, aliases=[alias])


def test_dockerfile_must_be_a_file(project, docker_client):
    target = BuildTarget(dockerfile=project, context=project, platforms=["linux/amd64"])
    with pytest.raises(MissingArtifact) as exc_info:
        ImageBuilder(docker_client).build(target, REFERENCE)
    assert exc_info.value.paths == [str(project)]
    docker_client.api.build.assert_not_called()
