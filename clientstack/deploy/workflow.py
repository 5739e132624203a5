"""GitHub Actions workflow that fires the deployment webhook on push."""

from __future__ import annotations

from typing import Any

import yaml

from clientstack.core.naming import validate_name


class _WorkflowDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_WorkflowDumper.add_representer(str, _represent_str)


def token_secret_name(client: str, environment: str) -> str:
    return f"{client}_{environment}_DEPLOY_TOKEN".upper().replace("-", "_")


def webhook_url(base_url: str, client: str, environment: str) -> str:
    return f"{base_url.rstrip('/')}/webhook/{client}/{environment}"


def build_workflow(client: str, environment: str, base_url: str) -> dict[str, Any]:
    validate_name(client, kind="client")
    validate_name(environment, kind="environment")
    if not base_url.startswith(("http://", "https://")):
        raise ValueError("webhook base URL must start with http:// or https://")
    secret = token_secret_name(client, environment)
    trigger = "\n".join(
        [
            "curl --fail-with-body -X POST \\",
            '  -H "Content-Type: application/json" \\',
            f'  -H "X-Deployment-Token: ${{{{ secrets.{secret} }}}}" \\',
            '  -d \'{"ref": "${{ github.ref }}", "repository": "${{ github.repository }}"}\' \\',
            f"  {webhook_url(base_url, client, environment)}",
        ]
    )
    return {
        "name": f"Deploy to {environment.capitalize()}",
        "on": {"push": {"branches": [environment]}, "workflow_dispatch": None},
        "jobs": {
            "deploy": {
                "runs-on": "ubuntu-latest",
                "steps": [
                    {"name": f"Deploy to {environment}", "run": trigger + "\n"},
                    {
                        "name": "Deployment Status",
                        "run": f"echo \"Deployment triggered for {client}/{environment}\"",
                    },
                ],
            }
        },
    }


def render_workflow(client: str, environment: str, base_url: str) -> str:
    return yaml.dump(
        build_workflow(client, environment, base_url),
        Dumper=_WorkflowDumper,
        sort_keys=False,
        default_flow_style=False,
        width=1000,
    )
