"""Value types shared by the rule loader, resolver and engine.

Everything here is immutable: a ``RuleSet`` is built once and read by many
concurrent requests, and the engine returns results instead of mutating the
proxy's request objects.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Union

from .matcher import Matcher

PLACEHOLDER_RE = re.compile(r"\{\$(\d+)\}")


@dataclass(frozen=True)
class StaticData:
    payload: Any


@dataclass(frozen=True)
class FileTarget:
    path_template: str


@dataclass(frozen=True)
class ApiTarget:
    url_template: str


Target = Union[StaticData, FileTarget, ApiTarget]


@dataclass(frozen=True)
class Rule:
    key: str
    matcher: Matcher
    targets: Tuple[Target, ...]


@dataclass(frozen=True)
class RequestInfo:
    """Snapshot of an outbound request, taken by the proxy adapter"""
    url: str
    scheme: str
    host: str
    port: int
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def query(self) -> str:
        _, sep, query = self.path.partition("?")
        return query if sep else ""


# Results

@dataclass(frozen=True)
class Respond:
    status_code: int
    headers: Mapping[str, str]
    body: bytes


@dataclass(frozen=True)
class Rewrite:
    scheme: str
    host: str
    port: int
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        default_port = 443 if self.scheme == "https" else 80
        netloc = self.host if self.port == default_port else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{self.path}"


@dataclass(frozen=True)
class HostSubstitution:
    host: str


@dataclass(frozen=True)
class Passthrough:
    pass


@dataclass(frozen=True)
class TargetAttempt:
    """One target that could not be resolved and why"""
    target: str
    reason: str


@dataclass(frozen=True)
class UnresolvedTarget:
    attempts: Tuple[TargetAttempt, ...]

    def describe(self) -> str:
        return ", ".join(f"{a.target} ({a.reason})" for a in self.attempts)


@dataclass(frozen=True)
class RuleResolutionFailed:
    rule_key: str
    url: str
    unresolved: UnresolvedTarget

    @property
    def message(self) -> str:
        return f'unable to deal {self.url} with rule "{self.rule_key}": {self.unresolved.describe()}'


Action = Union[Respond, Rewrite]
RewriteResult = Union[Respond, Rewrite, HostSubstitution, Passthrough, RuleResolutionFailed]


def substitute(template: str, captures: Tuple[str, ...]) -> str:
    """Replace every ``{$n}`` with the n-th capture"""
    return PLACEHOLDER_RE.sub(lambda m: captures[int(m.group(1))], template)


def placeholder_indices(template: str) -> Tuple[int, ...]:
    return tuple(sorted({int(i) for i in PLACEHOLDER_RE.findall(template)}))


def describe_target(target: Target) -> str:
    if isinstance(target, FileTarget):
        return target.path_template
    if isinstance(target, ApiTarget):
        return target.url_template
    return "<data>"


def template_of(target: Target) -> Optional[str]:
    if isinstance(target, FileTarget):
        return target.path_template
    if isinstance(target, ApiTarget):
        return target.url_template
    return None
