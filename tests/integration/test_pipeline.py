from pathlib import Path
import threading

from fastapi.testclient import TestClient
import pytest

from clientstack.api.webhook import create_app
from clientstack.core.commands import CommandResult, CommandTimeout
from clientstack.core.errors import NotFoundError
from clientstack.core.event_bus import DEPLOYMENT_FINISHED, ENVIRONMENT_COMPLETED
from clientstack.core.models import EnvironmentStatus
from clientstack.core.service import HostingService
from clientstack.core.vault import SecretScope


def _prepare(service, make_checkout, environment: str = "staging", **checkout) -> str:
    created = service.create("acme", environment)
    make_checkout(service.registry.environment_path("acme", environment), **checkout)
    return created["credentials"]["deployment_token"]


def _pipeline_commands(runner) -> list[list[str]]:
    return [
        call["argv"]
        for call in runner.calls
        if call["argv"][0] in {"git", "npm"} or call["argv"][:2] == ["docker", "exec"]
    ]


def test_successful_deployment_runs_every_stage(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, package_json=True)
    env_path = service.registry.environment_path("acme", "staging")

    result = service.trigger("acme", "staging", token, {"ref": "refs/heads/staging", "sha": "abc123", "extra": "x"})

    assert result.ok
    assert result.to_response() == {"status": 200, "message": "Deployment successful"}
    assert _pipeline_commands(runner) == [
        ["git", "pull", "origin", "HEAD"],
        ["npm", "install"],
        ["npm", "run", "production"],
        ["docker", "exec", "acme-webserver-staging", "chown", "-R", "www-data:www-data", "/var/www/html"],
    ]
    assert all(call["cwd"] == env_path for call in runner.calls if call["argv"][0] in {"git", "npm"})

    record = result.record
    assert record.stages == ["received", "validating", "pulling", "building", "finalizing", "succeeded"]
    assert record.payload == {"ref": "refs/heads/staging", "sha": "abc123"}
    assert service.registry.get("acme", "staging").status is EnvironmentStatus.COMPLETE

    log_text = Path(record.log_path).read_text(encoding="utf-8")
    assert "Stage: pulling" in log_text
    assert "$ git pull origin HEAD" in log_text
    assert log_text.rstrip().endswith("Deployment completed successfully")
    assert token not in log_text

    assert service.event_bus.recent_events(topic=ENVIRONMENT_COMPLETED)
    finished = service.event_bus.recent_events(topic=DEPLOYMENT_FINISHED)[-1]["payload"]
    assert finished["outcome"] == "success"
    assert finished["deployment_id"] == record.deployment_id


def test_existing_dependencies_skip_install(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, package_json=True, node_modules=True)
    assert service.trigger("acme", "staging", token).ok
    assert runner.commands("npm", "install") == []
    assert runner.commands("npm", "run", "production")


def test_missing_build_descriptor_skips_build(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    result = service.trigger("acme", "staging", token)
    assert result.ok
    assert runner.commands("npm") == []
    assert "No package.json found, skipping build" in Path(result.record.log_path).read_text(encoding="utf-8")


def test_non_git_environment_is_rejected(service, runner) -> None:
    created = service.create("acme", "staging")
    result = service.trigger("acme", "staging", created["credentials"]["deployment_token"])
    assert result.http_status == 400
    assert result.message == "Not a git repository"
    assert result.record.error_kind == "not_a_pipeline"
    assert runner.commands("git") == []
    assert service.registry.get("acme", "staging").status is EnvironmentStatus.PENDING


def test_wrong_token_runs_nothing(service, runner, make_checkout) -> None:
    _prepare(service, make_checkout)
    for presented in ("0" * 64, "", None):
        result = service.trigger("acme", "staging", presented)
        assert result.http_status == 400
        assert result.message == "Invalid deployment token"
    assert runner.commands("git") == []
    log_text = Path(result.record.log_path).read_text(encoding="utf-8")
    assert "ERROR: invalid deployment token for acme/staging" in log_text


def test_revoked_token_is_rejected(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    assert service.vault.revoke(SecretScope("acme", "staging"))
    result = service.trigger("acme", "staging", token)
    assert result.http_status == 400
    assert result.record.error_kind == "revoked"
    assert service.deploy_test("acme", "staging").http_status == 400
    assert runner.commands("git") == []


def test_unknown_environment_and_invalid_names(service, app_config) -> None:
    missing = service.trigger("acme", "staging", "0" * 64)
    assert missing.http_status == 404
    assert missing.message == "Environment not found"
    invalid = service.trigger("acme", "bad.name", "0" * 64)
    assert invalid.http_status == 400
    assert invalid.message == "Invalid client or environment name"
    assert missing.record.log_path is None
    assert not Path(app_config.paths.deployment_log_path).exists()


def test_fetch_failure_stops_pipeline(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, package_json=True)
    runner.on("git", "pull", returncode=1, stderr="fatal: couldn't find remote ref")

    result = service.trigger("acme", "staging", token)

    assert result.http_status == 500
    assert result.message == "Git pull failed"
    assert result.record.failed_stage == "pulling"
    assert result.record.error_kind == "fetch_error"
    assert runner.commands("npm") == []
    assert service.registry.get("acme", "staging").status is EnvironmentStatus.PENDING
    assert "fatal: couldn't find remote ref" in Path(result.record.log_path).read_text(encoding="utf-8")


def test_build_failure_reports_build_failed(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, package_json=True, node_modules=True)
    runner.on("npm", "run", returncode=2, stderr="webpack compilation failed")

    result = service.trigger("acme", "staging", token)

    assert result.http_status == 500
    assert result.message == "Build failed"
    assert result.record.failed_stage == "building"
    assert runner.commands("docker", "exec") == []


def test_permission_fix_failure_is_only_a_warning(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    runner.on("docker", "exec", returncode=1, stderr="No such container: acme-webserver-staging")

    result = service.trigger("acme", "staging", token)

    assert result.ok
    assert result.record.warnings == ["chown failed: No such container: acme-webserver-staging"]
    assert service.registry.get("acme", "staging").status is EnvironmentStatus.COMPLETE


def test_timeout_fails_and_releases_environment(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)

    def _hang(argv: list[str], cwd, timeout: float) -> CommandResult:
        raise CommandTimeout(argv, timeout)

    runner.on("git", "pull", handler=_hang)
    result = service.trigger("acme", "staging", token)
    assert result.http_status == 500
    assert result.message == "Deployment timed out"
    assert result.record.error_kind == "timeout"
    assert service.locks.active() == {}

    runner.on("git", "pull")
    assert service.trigger("acme", "staging", token).ok


def test_commands_share_one_duration_budget(config_factory, runner, make_checkout) -> None:
    service = HostingService(config_factory(deployment={"max_duration_seconds": 100}), runner=runner)
    try:
        token = _prepare(service, make_checkout, package_json=True, node_modules=True)
        ticks = iter([0.0, 10.0, 40.0, 70.0])
        service.deployments.clock = lambda: next(ticks, 70.0)

        assert service.trigger("acme", "staging", token).ok
        budgets = {call["argv"][0]: call["timeout"] for call in runner.calls if call["argv"][0] in {"git", "npm"}}
        assert budgets == {"git": 90.0, "npm": 60.0}

        ticks = iter([0.0, 150.0])
        service.deployments.clock = lambda: next(ticks, 150.0)
        before = len(runner.commands("git"))
        result = service.trigger("acme", "staging", token)
        assert result.message == "Deployment timed out"
        assert len(runner.commands("git")) == before
    finally:
        service.close()


def test_concurrent_trigger_is_rejected_while_pipeline_runs(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    started = threading.Event()
    release = threading.Event()

    def _slow_pull(argv: list[str], cwd, timeout: float) -> CommandResult:
        started.set()
        release.wait(5)
        return CommandResult(command=argv, returncode=0)

    runner.on("git", "pull", handler=_slow_pull)
    results: list = []
    worker = threading.Thread(target=lambda: results.append(service.trigger("acme", "staging", token)))
    worker.start()
    try:
        assert started.wait(5)
        busy = service.trigger("acme", "staging", token)
        assert busy.http_status == 409
        assert busy.message == "Deployment already in progress"
    finally:
        release.set()
        worker.join(5)
    assert results[0].ok
    assert len(runner.commands("git", "pull")) == 1


def test_different_environments_deploy_independently(service, runner, make_checkout) -> None:
    staging = _prepare(service, make_checkout, "staging")
    production = _prepare(service, make_checkout, "production")
    started = threading.Event()
    release = threading.Event()

    def _slow_pull(argv: list[str], cwd, timeout: float) -> CommandResult:
        if cwd == service.registry.environment_path("acme", "staging"):
            started.set()
            release.wait(5)
        return CommandResult(command=argv, returncode=0)

    runner.on("git", "pull", handler=_slow_pull)
    worker = threading.Thread(target=service.trigger, args=("acme", "staging", staging))
    worker.start()
    try:
        assert started.wait(5)
        assert service.trigger("acme", "production", production).ok
    finally:
        release.set()
        worker.join(5)


def test_history_and_logs(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    other = _prepare(service, make_checkout, "staging-2")
    first = service.trigger("acme", "staging", token)
    runner.on("git", "pull", returncode=1, stderr="network unreachable")
    second = service.trigger("acme", "staging", token)
    service.trigger("acme", "staging-2", other)

    recent = service.recent_deployments(2)
    assert [item["deployment_id"] for item in recent][1] == second.record.deployment_id
    assert recent[0]["environment"] == "staging-2"
    assert service.recent_deployments(10)[-1]["deployment_id"] == first.record.deployment_id

    logs = service.deployment_logs("acme", "staging", lines=3)
    assert logs["path"] == second.record.log_path
    assert logs["lines"][-1].endswith("Stage: failed")
    with pytest.raises(NotFoundError):
        service.deployment_logs("acme", "production")

    status = service.status()
    assert status["recent_deployments"][0]["environment"] == "staging-2"
    assert status["active_operations"] == {}


def test_production_deploy_through_webhook(service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, "production", package_json=True)
    client = TestClient(create_app(service))

    response = client.post(
        "/webhook/acme/production",
        headers={"X-Deployment-Token": token},
        json={"ref": "refs/heads/production", "repository": "acme/site"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": 200, "message": "Deployment successful"}
    assert runner.commands("docker", "exec")[0][2] == "acme-webserver-production"
    environment = service.registry.get("acme", "production")
    assert environment.status is EnvironmentStatus.COMPLETE
    assert environment.domain == "acme.example.com"

    descriptor = service.generate_trigger_descriptor("acme", "production", "https://deploy.example.com")
    assert "ACME_PRODUCTION_DEPLOY_TOKEN" in descriptor


def _replace_during_first_check(monkeypatch, service, action) -> None:
    vault = service.deployments.vault
    original = vault.validate
    calls: list[int] = []

    def _validate(scope, presented) -> bool:
        accepted = original(scope, presented)
        if not calls:
            calls.append(1)
            action()
        return accepted

    monkeypatch.setattr(vault, "validate", _validate)


def test_environment_recreated_before_hold_runs_nothing(monkeypatch, service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout, package_json=True)

    def _recreate() -> None:
        service.remove("acme", "staging", "DELETE")
        _prepare(service, make_checkout, package_json=True)

    _replace_during_first_check(monkeypatch, service, _recreate)
    result = service.trigger("acme", "staging", token)

    assert result.http_status == 400
    assert result.message == "Invalid deployment token"
    assert _pipeline_commands(runner) == []
    assert service.registry.get("acme", "staging").status is EnvironmentStatus.PENDING
    assert service.locks.active() == {}


def test_environment_removed_before_hold_runs_nothing(monkeypatch, service, runner, make_checkout) -> None:
    token = _prepare(service, make_checkout)
    _replace_during_first_check(monkeypatch, service, lambda: service.remove("acme", "staging", "DELETE"))

    result = service.trigger("acme", "staging", token)

    assert result.http_status == 404
    assert result.message == "Environment not found"
    assert _pipeline_commands(runner) == []
    assert not service.registry.environment_path("acme", "staging").exists()
