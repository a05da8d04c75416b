import json
import subprocess
from contextlib import contextmanager

import pytest

from ecsdeployer.core import Deployer, DeployerError
from ecsdeployer.models import TaskSpecification

TASK_ARN = "arn:aws:ecs:us-east-1:123456789012:task-definition/web:8"


class FakeClientFactory:
    region_name = "us-east-1"

    def __init__(self):
        self.account_lookups = 0

    def caller_account_id(self):
        self.account_lookups += 1
        return "123456789012"

    def client(self, name):
        raise AssertionError(f"unexpected AWS client request: {name}")


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "Dockerfile").write_text("FROM python:3.12-slim\n", encoding="utf-8")
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "001_init.sql").write_text("CREATE TABLE t (id int);", encoding="utf-8")
    (migrations / "002_seed.sql").write_text("INSERT INTO t VALUES (1);", encoding="utf-8")
    return tmp_path


def build_deployer(**kwargs):
    options = {
        "repository": "web",
        "image_tag": "1.0",
        "account_id": "123456789012",
        "region": "us-east-1",
        "bastion_host": "bastion.example.com",
        "db_host": "db.internal",
        "db_name": "app",
        "db_user": "app",
        "cluster": "prod",
        "service": "web",
        "task_family": "web",
        "client_factory": FakeClientFactory(),
    }
    options.update(kwargs)
    return Deployer(**options)


def patch_steps(monkeypatch, deployer, calls, fail_on=None):
    def record(name, result=None):
        def step(*_args, **_kwargs):
            calls.append(name)
            if name == fail_on:
                raise DeployerError(f"{name} broke")
            return result

        return step

    spec = TaskSpecification(family="web", revision=8, arn=TASK_ARN, image="uri")
    monkeypatch.setattr(deployer, "validate_environment", record("validate_environment"))
    monkeypatch.setattr(deployer, "build_image", record("build_image"))
    monkeypatch.setattr(deployer, "verify_image_platform", record("verify_image_platform", "linux/amd64"))
    monkeypatch.setattr(deployer, "publish_image", record("publish_image"))
    monkeypatch.setattr(deployer, "verify_registry_tag", record("verify_registry_tag", "sha256:abc"))
    monkeypatch.setattr(deployer, "migrate_schema", record("migrate_schema", []))
    monkeypatch.setattr(deployer, "register_task_definition", record("register_task_definition", spec))
    monkeypatch.setattr(deployer, "update_service", record("update_service"))


def test_deployer_rejects_missing_platform(workspace):
    with pytest.raises(DeployerError, match="Invalid target platform"):
        build_deployer(platform="")


def test_run_executes_stages_in_order(workspace, monkeypatch):
    deployer = build_deployer()
    calls = []
    patch_steps(monkeypatch, deployer, calls)

    assert deployer.run() == 0
    assert calls == [
        "validate_environment",
        "build_image",
        "verify_image_platform",
        "publish_image",
        "verify_registry_tag",
        "migrate_schema",
        "register_task_definition",
        "update_service",
    ]

    manifest = json.loads((workspace / ".ecsdeployer" / "run-manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "success"
    assert manifest["metadata"]["image_uri"] == "123456789012.dkr.ecr.us-east-1.amazonaws.com/web:1.0"
    assert [step["name"] for step in manifest["steps"]][-1] == "update_service"


def test_run_stops_at_first_failing_stage(workspace, monkeypatch):
    deployer = build_deployer()
    calls = []
    patch_steps(monkeypatch, deployer, calls, fail_on="publish_image")

    assert deployer.run() == 1
    assert "migrate_schema" not in calls
    assert "update_service" not in calls

    manifest = json.loads((workspace / ".ecsdeployer" / "run-manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "failed"
    assert manifest["error"] == "publish_image broke"


def test_run_honours_stage_selection(workspace, monkeypatch):
    deployer = build_deployer(stages=["update", "publish"])
    calls = []
    patch_steps(monkeypatch, deployer, calls)

    assert deployer.run() == 0
    assert calls == [
        "validate_environment",
        "publish_image",
        "verify_registry_tag",
        "register_task_definition",
        "update_service",
    ]


def test_resume_skips_steps_completed_by_failed_run(workspace, monkeypatch):
    first = build_deployer(resume=True)
    first_calls = []
    patch_steps(monkeypatch, first, first_calls, fail_on="migrate_schema")
    assert first.run() == 1

    second = build_deployer(resume=True)
    second_calls = []
    patch_steps(monkeypatch, second, second_calls)

    assert second.run() == 0
    assert second_calls == [
        "validate_environment",
        "migrate_schema",
        "register_task_definition",
        "update_service",
    ]
    assert second.run_context.run_id == first.run_context.run_id


def test_resume_rejects_changed_image_tag(workspace, monkeypatch):
    first = build_deployer(resume=True)
    patch_steps(monkeypatch, first, [], fail_on="publish_image")
    assert first.run() == 1

    second = build_deployer(resume=True, image_tag="2.0")
    calls = []
    patch_steps(monkeypatch, second, calls)

    assert second.run() == 1
    assert calls == []


def test_update_stage_requires_service_settings(workspace, monkeypatch):
    deployer = build_deployer(stages=["update"], cluster=None)
    calls = []
    patch_steps(monkeypatch, deployer, calls)

    assert deployer.run() == 1
    assert calls == []


def test_account_id_is_looked_up_when_not_configured(workspace, monkeypatch):
    factory = FakeClientFactory()
    deployer = build_deployer(account_id=None, client_factory=factory, stages=["publish"])
    patch_steps(monkeypatch, deployer, [])

    assert deployer.run() == 0
    assert factory.account_lookups == 1
    assert deployer.image.uri == "123456789012.dkr.ecr.us-east-1.amazonaws.com/web:1.0"


def test_dry_run_prints_plan_without_running_commands(workspace, monkeypatch):
    factory = FakeClientFactory()
    deployer = build_deployer(dry_run=True, account_id=None, client_factory=factory)

    def fail_if_called(*_args, **_kwargs):
        raise AssertionError("No command may run during --dry-run")

    monkeypatch.setattr(deployer.command_runner, "run", fail_if_called)
    monkeypatch.setattr(deployer, "validate_environment", fail_if_called)

    assert deployer.run() == 0
    assert factory.account_lookups == 0
    assert not (workspace / ".ecsdeployer" / "run-manifest.json").exists()

    plan = deployer.build_plan()
    steps = [item["step"] for item in plan]
    assert steps == [
        "validate_environment",
        "resolve_build_parameters",
        "build_image",
        "verify_image_platform",
        "publish_image",
        "verify_registry_tag",
        "migrate_schema",
        "register_task_definition",
        "update_service",
    ]
    assert "--platform linux/amd64" in plan[2]["action"]
    assert "001_init.sql, 002_seed.sql" in plan[6]["action"]


def test_build_stage_resolves_references_and_checks_platform(workspace, monkeypatch):
    monkeypatch.setenv("APP_DOMAIN", "shop.example.com")
    deployer = build_deployer(
        stages=["build"],
        build_args={"DOMAIN": "env:APP_DOMAIN", "DB_PORT": "5432"},
        required_build_args=["DOMAIN"],
    )
    monkeypatch.setattr(deployer, "validate_environment", lambda: None)
    calls = []

    def fake_run(cmd, check=True, capture_output=False, **kwargs):
        calls.append((cmd, kwargs))
        stdout = "linux/amd64\n" if cmd[:3] == ["docker", "image", "inspect"] else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(deployer.command_runner, "run", fake_run)

    assert deployer.run() == 0
    build_cmd, build_kwargs = calls[0]
    assert build_cmd[:3] == ["docker", "buildx", "build"]
    assert build_kwargs["env"] == {"DOMAIN": "shop.example.com", "DB_PORT": "5432"}
    assert calls[1][0][:3] == ["docker", "image", "inspect"]


def test_build_stage_fails_on_missing_required_argument(workspace, monkeypatch):
    deployer = build_deployer(stages=["build"], build_args={}, required_build_args=["GITHUB_TOKEN"])
    monkeypatch.setattr(deployer, "validate_environment", lambda: None)

    def fail_if_called(*_args, **_kwargs):
        raise AssertionError("docker must not run without required build arguments")

    monkeypatch.setattr(deployer.command_runner, "run", fail_if_called)

    assert deployer.run() == 1


def test_migrate_stage_records_each_applied_script(workspace, monkeypatch):
    deployer = build_deployer(stages=["migrate"], resume=True)
    monkeypatch.setattr(deployer, "validate_environment", lambda: None)

    @contextmanager
    def fake_tunnel(endpoint, timeout=30.0):
        assert endpoint.db_host == "db.internal"
        yield endpoint.local_port

    applied_files = []

    def fake_run(cmd, check=True, capture_output=False, **_kwargs):
        if "-f" in cmd:
            applied_files.append(cmd[cmd.index("-f") + 1].rsplit("/", 1)[-1])
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(deployer.tunnel_service, "open", fake_tunnel)
    monkeypatch.setattr(deployer.command_runner, "run", fake_run)

    assert deployer.run() == 0
    assert applied_files == ["001_init.sql", "002_seed.sql"]

    state = json.loads((workspace / ".ecsdeployer" / "run-state.json").read_text(encoding="utf-8"))
    assert state["outputs"]["applied_migrations"] == ["001_init.sql", "002_seed.sql"]
    manifest = json.loads((workspace / ".ecsdeployer" / "run-manifest.json").read_text(encoding="utf-8"))
    assert [item["name"] for item in manifest["migrations"]] == ["001_init.sql", "002_seed.sql"]


def test_cleanup_logs_out_of_registry(workspace, monkeypatch):
    deployer = build_deployer()
    calls = []
    monkeypatch.setattr(
        deployer.command_runner,
        "run",
        lambda cmd, **_kwargs: calls.append(cmd) or subprocess.CompletedProcess(cmd, 0, "", ""),
    )
    deployer.logged_in_registry = "123456789012.dkr.ecr.us-east-1.amazonaws.com"

    deployer.cleanup()

    assert calls == [["docker", "logout", "123456789012.dkr.ecr.us-east-1.amazonaws.com"]]
    assert deployer.logged_in_registry is None


def test_dry_run_plan_names_secret_references(workspace):
    deployer = build_deployer(
        dry_run=True,
        stages=["build"],
        build_args={"GITHUB_TOKEN": "ssm:/ci/github-token", "DOMAIN": "shop.example.com"},
    )

    assert deployer.run() == 0
    resolve = [item for item in deployer.build_plan() if item["step"] == "resolve_build_parameters"][0]
    assert resolve["action"] == "resolve GITHUB_TOKEN"


class FakeEcs:
    def __init__(self):
        self.registered = []

    def describe_task_definition(self, taskDefinition, include=None):
        return {
            "taskDefinition": {
                "family": taskDefinition,
                "revision": 7,
                "taskDefinitionArn": TASK_ARN.replace(":8", ":7"),
                "status": "ACTIVE",
                "containerDefinitions": [{"name": "web", "image": "old", "essential": True}],
            }
        }

    def register_task_definition(self, **definition):
        self.registered.append(definition)
        return {"taskDefinition": {"family": definition["family"], "revision": 8, "taskDefinitionArn": TASK_ARN}}


class EcsClientFactory(FakeClientFactory):
    def __init__(self, ecs):
        super().__init__()
        self.ecs = ecs

    def client(self, name):
        assert name == "ecs"
        return self.ecs


def test_resume_after_failed_update_reuses_registered_task_definition(workspace, monkeypatch):
    ecs = FakeEcs()
    image_uri = "123456789012.dkr.ecr.us-east-1.amazonaws.com/web:1.0"

    def prepare(deployer, update_service):
        monkeypatch.setattr(deployer, "validate_environment", lambda: None)
        monkeypatch.setattr(deployer, "build_image", lambda _build_args: None)
        monkeypatch.setattr(
            deployer.image_builder_service, "verify_platform", lambda *_args: "linux/amd64"
        )
        monkeypatch.setattr(deployer, "publish_image", lambda: None)
        monkeypatch.setattr(deployer.registry_service, "verify_tag", lambda _image: "sha256:abc")
        monkeypatch.setattr(deployer, "update_service", update_service)

    first = build_deployer(resume=True, stages=["build", "publish", "update"], client_factory=EcsClientFactory(ecs))

    def failing_update(_spec):
        raise DeployerError("service is draining")

    prepare(first, failing_update)
    assert first.run() == 1
    assert len(ecs.registered) == 1
    assert ecs.registered[0]["containerDefinitions"][0]["image"] == image_uri

    second = build_deployer(resume=True, stages=["build", "publish", "update"], client_factory=EcsClientFactory(ecs))
    updated = []
    prepare(second, updated.append)

    assert second.run() == 0
    assert len(ecs.registered) == 1
    assert updated == [TaskSpecification(family="web", revision=8, arn=TASK_ARN, image=image_uri)]

    rows = dict(second.manifest_service.summary_rows())
    assert rows["Image"] == image_uri
    assert rows["Digest"] == "sha256:abc"
    assert rows["Platform"] == "linux/amd64"
    assert rows["Task definition"] == TASK_ARN
    assert rows["Skipped (resume)"] == (
        "build_image, verify_image_platform, publish_image, verify_registry_tag, register_task_definition"
    )


def test_resume_without_stored_task_definition_fails_cleanly(workspace, monkeypatch):
    deployer = build_deployer(resume=True, stages=["update"])
    calls = []
    patch_steps(monkeypatch, deployer, calls, fail_on="update_service")
    assert deployer.run() == 1

    resumed = build_deployer(resume=True, stages=["update"])
    resumed_calls = []
    patch_steps(monkeypatch, resumed, resumed_calls)

    # register_task_definition was replaced above, so nothing was stored for it.
    assert resumed.run() == 1
    assert "update_service" not in resumed_calls
    state = json.loads((workspace / ".ecsdeployer" / "run-state.json").read_text(encoding="utf-8"))
    assert "no registered task definition" in state["last_error"]


def test_resume_after_partial_migration_applies_only_remaining_scripts(workspace, monkeypatch):
    @contextmanager
    def fake_tunnel(endpoint, timeout=30.0):
        yield endpoint.local_port

    def run_migrations(fail_on=None):
        deployer = build_deployer(stages=["migrate"], resume=True)
        monkeypatch.setattr(deployer, "validate_environment", lambda: None)
        monkeypatch.setattr(deployer.tunnel_service, "open", fake_tunnel)
        applied_files = []

        def fake_run(cmd, check=True, capture_output=False, **_kwargs):
            if "-f" in cmd:
                name = cmd[cmd.index("-f") + 1].rsplit("/", 1)[-1]
                if name == fail_on:
                    raise DeployerError("Command failed (3): psql\nERROR: syntax error")
                applied_files.append(name)
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        monkeypatch.setattr(deployer.command_runner, "run", fake_run)
        return deployer, deployer.run(), applied_files

    _, exit_code, first_applied = run_migrations(fail_on="002_seed.sql")
    assert exit_code == 1
    assert first_applied == ["001_init.sql"]
    state = json.loads((workspace / ".ecsdeployer" / "run-state.json").read_text(encoding="utf-8"))
    assert state["outputs"]["applied_migrations"] == ["001_init.sql"]

    second, exit_code, second_applied = run_migrations()
    assert exit_code == 0
    assert second_applied == ["002_seed.sql"]
    rows = dict(second.manifest_service.summary_rows())
    assert rows["Migrations"] == "001_init.sql, 002_seed.sql"
