"""Slug grammar, domain derivation, and derived resource names."""

from __future__ import annotations

import re

from clientstack.core.errors import InvalidNameError

PRODUCTION = "production"
STAGING = "staging"

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*[A-Za-z0-9]$")
_HOST_LABEL_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


def is_valid_name(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) < MIN_NAME_LENGTH or len(value) > MAX_NAME_LENGTH:
        return False
    return bool(_SLUG_RE.match(value))


def validate_name(value: str, *, kind: str) -> str:
    if not is_valid_name(value):
        raise InvalidNameError(
            f"invalid {kind} name '{value}': use 2-50 alphanumeric characters or hyphens, "
            "not starting or ending with a hyphen"
        )
    return value


def validate_domain(value: str) -> str:
    domain = value.strip().rstrip(".")
    labels = domain.split(".")
    if len(domain) > 253 or len(labels) < 2 or not all(_HOST_LABEL_RE.match(label) for label in labels):
        raise InvalidNameError(f"invalid domain '{value}'")
    return domain


def derive_domain(client: str, environment: str, *, base_domain: str, override: str | None = None) -> str:
    if override:
        return validate_domain(override)
    if environment == PRODUCTION:
        return f"{client}.{base_domain}"
    if environment == STAGING:
        return f"staging.{client}.{base_domain}"
    return f"{environment}.{client}.{base_domain}"


def is_production(environment: str) -> bool:
    return environment == PRODUCTION


def client_network_name(client: str, suffix: str = "-network") -> str:
    return f"{client}{suffix}"
