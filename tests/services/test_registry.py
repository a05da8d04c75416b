import base64
import subprocess

import pytest
from botocore.exceptions import ClientError

from ecsdeployer.errors import DeployerError
from ecsdeployer.models import ImageReference
from ecsdeployer.services.registry import RegistryService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


def _client_error(code, operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeEcr:
    def __init__(self, repository_exists=True, image_details=None, token="AWS:hunter2"):
        self.repository_exists = repository_exists
        self.image_details = image_details if image_details is not None else [{"imageDigest": "sha256:abc"}]
        self.token = token
        self.created = []

    def describe_repositories(self, **_kwargs):
        if not self.repository_exists:
            raise _client_error("RepositoryNotFoundException", "DescribeRepositories")
        return {"repositories": [{}]}

    def create_repository(self, repositoryName, **_kwargs):
        self.created.append(repositoryName)
        return {"repository": {}}

    def get_authorization_token(self, **_kwargs):
        return {
            "authorizationData": [
                {
                    "authorizationToken": base64.b64encode(self.token.encode()).decode(),
                    "proxyEndpoint": "https://123456789012.dkr.ecr.us-east-1.amazonaws.com",
                }
            ]
        }

    def describe_images(self, **_kwargs):
        if self.image_details == "missing":
            raise _client_error("ImageNotFoundException", "DescribeImages")
        return {"imageDetails": self.image_details}


class FakeClientFactory:
    def __init__(self, ecr):
        self.ecr = ecr

    def client(self, name):
        assert name == "ecr"
        return self.ecr


IMAGE = ImageReference(account_id="123456789012", region="us-east-1", repository="web", tag="1.0")


def _service(ecr):
    return RegistryService(FakeClientFactory(ecr), logger=DummyLogger(), console=DummyConsole())


def test_login_pipes_password_through_stdin():
    calls = []
    secrets = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    _service(FakeEcr()).login(IMAGE, fake_run_cmd, secrets.append)

    cmd, kwargs = calls[0]
    assert cmd == [
        "docker",
        "login",
        "--username",
        "AWS",
        "--password-stdin",
        "https://123456789012.dkr.ecr.us-east-1.amazonaws.com",
    ]
    assert kwargs["input_text"] == "hunter2"
    assert "hunter2" not in cmd
    assert secrets == ["hunter2"]


def test_login_rejects_malformed_token():
    with pytest.raises(DeployerError, match="Could not authenticate"):
        _service(FakeEcr(token="no-separator")).login(IMAGE, lambda *a, **k: None, lambda *_: None)


def test_push_tags_then_pushes_remote_uri():
    calls = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    _service(FakeEcr()).push("web:1.0", IMAGE, fake_run_cmd)

    assert calls == [
        ["docker", "tag", "web:1.0", IMAGE.uri],
        ["docker", "push", IMAGE.uri],
    ]


def test_ensure_repository_fails_when_missing_and_creation_disabled():
    with pytest.raises(DeployerError, match="does not exist"):
        _service(FakeEcr(repository_exists=False)).ensure_repository(IMAGE, create=False)


def test_ensure_repository_creates_when_enabled():
    ecr = FakeEcr(repository_exists=False)

    _service(ecr).ensure_repository(IMAGE, create=True)

    assert ecr.created == ["web"]


def test_verify_tag_returns_single_digest():
    assert _service(FakeEcr()).verify_tag(IMAGE) == "sha256:abc"


def test_verify_tag_fails_when_tag_missing():
    with pytest.raises(DeployerError, match="was not found"):
        _service(FakeEcr(image_details="missing")).verify_tag(IMAGE)


def test_verify_tag_fails_when_tag_is_ambiguous():
    ecr = FakeEcr(image_details=[{"imageDigest": "sha256:a"}, {"imageDigest": "sha256:b"}])

    with pytest.raises(DeployerError, match="resolves to 2 images"):
        _service(ecr).verify_tag(IMAGE)
