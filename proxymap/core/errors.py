"""Configuration-time errors.

Request-time failures are not raised; see ``UnresolvedTarget`` and
``RuleResolutionFailed`` in ``proxymap.core.rules``.
"""
from typing import Any, Optional


class ProxyMapError(Exception):
    pass


class ConfigError(ProxyMapError):
    """A rule could not be built. ``rule_key`` names the offending rule when known."""

    def __init__(self, message: str, rule_key: Optional[str] = None):
        self.rule_key = rule_key
        if rule_key is not None:
            message = f'rule "{rule_key}": {message}'
        super().__init__(message)


class UnsupportedSearchKind(ConfigError):
    def __init__(self, search: Any, rule_key: Optional[str] = None):
        self.search = search
        super().__init__(f"unsupported rule search: {search!r}", rule_key)


class InvalidRuleSearch(ConfigError):
    pass


class InvalidRuleTarget(ConfigError):
    pass
