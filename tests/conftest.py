import base64
import subprocess
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ecr_pipeline.settings import RegistryCredentials

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"


@pytest.fixture()
def client_error():
    """Factory for botocore errors carrying an AWS error code."""

    def make(code: str, operation: str = "DescribeRepositories") -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    return make


@pytest.fixture()
def completed():
    """Factory for finished subprocess results."""

    def make(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)

    return make


@pytest.fixture()
def project(tmp_path):
    """A project root holding the files a publish run requires."""
    (tmp_path / "Dockerfile").write_text("FROM python:3.11-slim\n")
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n")
    (tmp_path / "src").mkdir()
    return tmp_path


@pytest.fixture()
def deploy_env() -> dict[str, str]:
    return {
        "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
        "AWS_SECRET_ACCESS_KEY": "secret",
        "AWS_REGION": REGION,
        "AWS_ACCOUNT_ID": ACCOUNT_ID,
        "LOCAL_IMAGE_NAME": "mariadb-mcp",
        "REPO_NAME": "mariadb-mcp",
        "BUILD_TAG": "v1.0.0",
        "SKIP_TRIVY": "true",
    }


@pytest.fixture()
def credentials() -> RegistryCredentials:
    return RegistryCredentials(
        access_key_id="AKIAEXAMPLE",
        secret_access_key="secret",
        region=REGION,
        account_id=ACCOUNT_ID,
    )


@pytest.fixture()
def docker_client() -> MagicMock:
    client = MagicMock()
    client.ping.return_value = True
    client.api.build.return_value = iter(
        [
            {"stream": "Step 1/1 : FROM python:3.11-slim\n"},
            {"aux": {"ID": "sha256:abc123"}},
            {"stream": "Successfully built abc123\n"},
        ]
    )
    client.api.push.return_value = iter([{"status": "Pushed", "id": "abc123"}])
    client.api.pull.return_value = iter([{"status": "Pull complete", "id": "abc123"}])
    client.images.get.return_value.attrs = {"Size": 150 * 1024 * 1024}
    client.images.list.return_value = []
    return client


@pytest.fixture()
def ecr_client() -> MagicMock:
    client = MagicMock()
    token = base64.b64encode(b"AWS:registry-password").decode()
    client.get_authorization_token.return_value = {
        "authorizationData": [{"authorizationToken": token}]
    }
    client.describe_repositories.return_value = {"repositories": [{"repositoryName": "mariadb-mcp"}]}
    return client
