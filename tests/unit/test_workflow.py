import pytest
import yaml

from clientstack.core.errors import InvalidNameError
from clientstack.deploy.workflow import render_workflow, token_secret_name


def test_workflow_posts_to_environment_webhook() -> None:
    text = render_workflow("acme-co", "staging", "https://deploy.example.com/")
    workflow = yaml.safe_load(text)

    assert workflow["name"] == "Deploy to Staging"
    assert workflow["on"]["push"]["branches"] == ["staging"]
    assert "workflow_dispatch" in workflow["on"]
    steps = workflow["jobs"]["deploy"]["steps"]
    assert workflow["jobs"]["deploy"]["runs-on"] == "ubuntu-latest"
    run = steps[0]["run"]
    assert "https://deploy.example.com/webhook/acme-co/staging" in run
    assert "${{ secrets.ACME_CO_STAGING_DEPLOY_TOKEN }}" in run
    assert '"ref": "${{ github.ref }}"' in run
    assert "run: |" in text


def test_token_secret_name_is_shell_safe() -> None:
    assert token_secret_name("acme-co", "staging-2") == "ACME_CO_STAGING_2_DEPLOY_TOKEN"


def test_workflow_rejects_bad_inputs() -> None:
    with pytest.raises(ValueError):
        render_workflow("acme", "staging", "deploy.example.com")
    with pytest.raises(InvalidNameError):
        render_workflow("acme", "../prod", "https://deploy.example.com")
