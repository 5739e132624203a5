"""Reverse-proxy middleware policy."""

from .policy import MiddlewarePolicy, PolicyChange, PolicyFragment, ProxyPolicySynthesizer

__all__ = ["MiddlewarePolicy", "PolicyChange", "PolicyFragment", "ProxyPolicySynthesizer"]
