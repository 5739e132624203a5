import json
from pathlib import Path

import pytest
import yaml

from clientstack.cli import main
from clientstack.core.service import HostingService


@pytest.fixture
def config_path(tmp_path: Path, runner, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "clientstack.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "paths": {
                    "clients_path": str(tmp_path / "clients"),
                    "deployment_log_path": str(tmp_path / "deployments"),
                    "proxy_dynamic_path": str(tmp_path / "dynamic"),
                },
                "domains": {"base_domain": "example.com", "timezone": "UTC"},
                "proxy": {"reload_settle_seconds": 0},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr("clientstack.cli.HostingService", lambda config: HostingService(config, runner=runner))
    return path


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, object]:
    rc = main(list(argv))
    out = capsys.readouterr().out
    return rc, json.loads(out) if out.strip().startswith(("{", "[")) else out


def test_init_command_writes_config(tmp_path: Path) -> None:
    config_path = tmp_path / "clientstack.yml"
    rc = main(["init", "--config", str(config_path)])
    assert rc == 0
    assert config_path.exists()
    with pytest.raises(FileExistsError):
        main(["init", "--config", str(config_path)])
    assert main(["init", "--config", str(config_path), "--force"]) == 0


def test_create_then_list(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, created = _run(capsys, "create", "--config", str(config_path), "acme", "staging")
    assert rc == 0
    assert created["environment"]["domain"] == "staging.acme.example.com"
    assert created["token_secret_name"] == "ACME_STAGING_DEPLOY_TOKEN"
    assert len(created["credentials"]["deployment_token"]) == 64

    rc, listed = _run(capsys, "list", "--config", str(config_path), "acme")
    assert rc == 0
    assert [item["environment"] for item in listed] == ["staging"]


def test_errors_are_reported_as_json(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, payload = _run(capsys, "create", "--config", str(config_path), "acme_co", "staging")
    assert rc == 1
    assert payload["error"]["kind"] == "invalid_name"

    rc, payload = _run(capsys, "list", "--config", str(config_path), "globex")
    assert rc == 1
    assert payload["error"]["kind"] == "not_found"


def test_remove_prompts_for_confirmation(
    config_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    assert main(["create", "--config", str(config_path), "acme", "staging"]) == 0
    capsys.readouterr()

    monkeypatch.setattr("builtins.input", lambda prompt: "delete")
    rc = main(["remove", "--config", str(config_path), "acme", "staging"])
    assert rc == 1
    assert "confirmation_required" in capsys.readouterr().out

    monkeypatch.setattr("builtins.input", lambda prompt: "DELETE")
    rc = main(["remove", "--config", str(config_path), "acme", "staging"])
    out = capsys.readouterr().out
    assert rc == 0
    assert '"token_revoked": true' in out
    assert not (config_path.parent / "clients" / "acme" / "staging").exists()


def test_workflow_command_writes_file(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["create", "--config", str(config_path), "acme", "production"]) == 0
    capsys.readouterr()
    output = tmp_path / ".github" / "workflows" / "deploy-production.yml"
    rc, payload = _run(
        capsys,
        "workflow",
        "--config",
        str(config_path),
        "acme",
        "production",
        "https://deploy.example.com",
        "--output",
        str(output),
    )
    assert rc == 0
    assert payload == {"output": str(output), "format": "github-actions"}
    assert "/webhook/acme/production" in output.read_text(encoding="utf-8")


def test_deploy_test_and_logs(config_path: Path, capsys: pytest.CaptureFixture[str], make_checkout) -> None:
    assert main(["create", "--config", str(config_path), "acme", "staging"]) == 0
    capsys.readouterr()
    make_checkout(config_path.parent / "clients" / "acme" / "staging")

    rc, payload = _run(capsys, "deploy-test", "--config", str(config_path), "acme", "staging")
    assert rc == 0
    assert payload["message"] == "Deployment successful"
    assert payload["deployment"]["payload"] == {"ref": "manual", "actor": "operator"}

    rc, logs = _run(capsys, "logs", "--config", str(config_path), "acme", "staging", "--lines", "2")
    assert rc == 0
    assert len(logs["lines"]) == 2
    assert logs["lines"][-1].endswith("Deployment completed successfully")


def test_logs_without_deployments_fail(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, payload = _run(capsys, "logs", "--config", str(config_path), "acme", "staging")
    assert rc == 1
    assert payload["error"]["kind"] == "not_found"


def test_proxy_sync_rewrites_policies(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["create", "--config", str(config_path), "acme", "staging"]) == 0
    assert main(["create", "--config", str(config_path), "acme", "production"]) == 0
    capsys.readouterr()
    rc, report = _run(capsys, "proxy-sync", "--config", str(config_path))
    assert rc == 0
    assert sorted(item["environment"] for item in report["applied"]) == ["production", "staging"]
    assert report["failed"] == []
