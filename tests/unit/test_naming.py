import pytest

from clientstack.core.errors import InvalidNameError, ResultCode
from clientstack.core.naming import client_network_name, derive_domain, is_valid_name, validate_name


@pytest.mark.parametrize("name", ["ab", "acme", "acme-co", "Client42", "staging-2", "a" * 50])
def test_valid_names(name: str) -> None:
    assert is_valid_name(name)
    assert validate_name(name, kind="client") == name


@pytest.mark.parametrize(
    "name",
    ["", "a", "-acme", "acme-", "acme_co", "acme co", "acme.co", "a" * 51, "../etc", "acme/prod", "ünï"],
)
def test_invalid_names(name: str) -> None:
    assert not is_valid_name(name)
    with pytest.raises(InvalidNameError) as excinfo:
        validate_name(name, kind="environment")
    assert excinfo.value.code is ResultCode.INVALID_INPUT
    assert excinfo.value.code.http_status == 400


def test_domain_derivation_precedence() -> None:
    assert derive_domain("acme", "production", base_domain="example.com") == "acme.example.com"
    assert derive_domain("acme", "staging", base_domain="example.com") == "staging.acme.example.com"
    assert derive_domain("acme", "qa", base_domain="example.com") == "qa.acme.example.com"
    assert (
        derive_domain("acme", "production", base_domain="example.com", override="www.acme.test")
        == "www.acme.test"
    )


def test_domain_override_is_validated() -> None:
    with pytest.raises(InvalidNameError):
        derive_domain("acme", "staging", base_domain="example.com", override="not a domain")
    with pytest.raises(InvalidNameError):
        derive_domain("acme", "staging", base_domain="example.com", override="localhost")


def test_client_network_name() -> None:
    assert client_network_name("acme") == "acme-network"
    assert client_network_name("acme", "-net") == "acme-net"
