import os
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..errors import ConfigError, InvalidRuleSearch, InvalidRuleTarget, UnsupportedSearchKind
from ..utils import setup_logging
from .matcher import MatchResult, compile_search
from .models import ApiTarget, FileTarget, Rule, StaticData, Target, placeholder_indices, template_of

API_PREFIXES = ("http://", "https://")
DEFAULT_RULES_FILE = Path.home() / ".proxymap" / "rules.yaml"


class RuleFileLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!regex`` scalars"""


@dataclass(frozen=True)
class RegexSource:
    """A `!regex` scalar, compiled once the owning rule is known"""
    pattern: str


def _construct_regex(loader: yaml.SafeLoader, node: yaml.Node) -> RegexSource:
    return RegexSource(loader.construct_scalar(node))


RuleFileLoader.add_constructor("!regex", _construct_regex)


def classify_target(value: Any, rule_key: str) -> Target:
    """Decide the target variant once, at build time"""
    if isinstance(value, str):
        if value.startswith(API_PREFIXES):
            return ApiTarget(url_template=value)
        return FileTarget(path_template=value)
    if isinstance(value, (Mapping, list)):
        return StaticData(payload=value)
    raise InvalidRuleTarget(f"unsupported rule target: {value!r}", rule_key)


class RuleSet:
    """Ordered, read-only collection of compiled rules plus the host table"""

    def __init__(self, rules: Tuple[Rule, ...] = (), hosts: Optional[Dict[str, str]] = None):
        self._rules = tuple(rules)
        self._hosts = dict(hosts or {})

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    @property
    def hosts(self) -> Dict[str, str]:
        return dict(self._hosts)

    def __len__(self) -> int:
        return len(self._rules)

    def host_for(self, hostname: str) -> Optional[str]:
        return self._hosts.get(hostname)

    def first_match(self, url: str) -> Optional[Tuple[Rule, MatchResult]]:
        """First rule in declaration order whose matcher accepts ``url``"""
        for rule in self._rules:
            result = rule.matcher.match(url)
            if result is not None:
                return rule, result
        return None

    @classmethod
    def build(cls, raw_config: Optional[Mapping]) -> "RuleSet":
        raw_config = raw_config or {}
        if not isinstance(raw_config, Mapping):
            raise ConfigError(f"rule config must be a mapping, got {type(raw_config).__name__}")

        raw_map = raw_config.get("map") or {}
        raw_hosts = raw_config.get("hosts") or {}
        if not isinstance(raw_map, Mapping):
            raise ConfigError('"map" must be a mapping of rule key to {search, target}')
        if not isinstance(raw_hosts, Mapping):
            raise ConfigError('"hosts" must be a mapping of hostname to hostname')

        rules: List[Rule] = []
        for key, map_rule in raw_map.items():
            rules.append(cls._build_rule(str(key), map_rule))

        for hostname, replacement in raw_hosts.items():
            if not isinstance(hostname, str) or not isinstance(replacement, str):
                raise ConfigError(f"invalid host mapping {hostname!r}: {replacement!r}")

        return cls(tuple(rules), dict(raw_hosts))

    @staticmethod
    def _build_rule(key: str, map_rule: Any) -> Rule:
        if not isinstance(map_rule, Mapping):
            raise InvalidRuleSearch("rule must be a mapping with search and target", key)
        if "search" not in map_rule:
            raise InvalidRuleSearch("missing search", key)
        if "target" not in map_rule:
            raise InvalidRuleTarget("missing target", key)

        search = map_rule["search"]
        if isinstance(search, RegexSource):
            try:
                search = re.compile(search.pattern)
            except re.error as e:
                raise InvalidRuleSearch(f"invalid regex {search.pattern!r}: {e}", key) from e

        try:
            matcher = compile_search(search)
        except (UnsupportedSearchKind, InvalidRuleSearch) as e:
            raise InvalidRuleSearch(str(e), key) from e

        target = map_rule["target"]
        values = target if isinstance(target, list) else [target]
        if not values:
            raise InvalidRuleTarget("target list is empty", key)

        targets = tuple(classify_target(v, key) for v in values)
        for t in targets:
            template = template_of(t)
            if template is None:
                continue
            for idx in placeholder_indices(template):
                if idx > matcher.group_count:
                    raise InvalidRuleTarget(
                        f"placeholder {{${idx}}} in {template!r} but search has "
                        f"{matcher.group_count} capture group(s)", key)

        return Rule(key=key, matcher=matcher, targets=targets)


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML (or JSON) rule file.

    The rules live either at the top level or under a ``rule`` key, the
    latter leaving room for launcher options next to them.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f, Loader=RuleFileLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: top level must be a mapping")
    return dict(data)


def rule_section(data: Mapping) -> Mapping:
    return (data["rule"] or {}) if "rule" in data else data


class RuleLoader:
    """Builds the RuleSet from a rule file and rebuilds it when the file changes"""

    def __init__(self, rules_file: Optional[Path] = None, check_interval: float = 1.0):
        self.logger = setup_logging()
        if rules_file is None:
            env_path = os.environ.get("PROXYMAP_CONFIG")
            rules_file = Path(env_path) if env_path else DEFAULT_RULES_FILE
        self.rules_file = Path(rules_file).expanduser()
        self.check_interval = check_interval
        self.ruleset = RuleSet()

        self._last_check_time = float("-inf")
        self._last_signature: Optional[Tuple[int, int]] = None
        self.logger.info(f"RuleLoader initialized. File: {self.rules_file}")

    @property
    def base_dir(self) -> Path:
        return self.rules_file.parent

    def _signature(self) -> Optional[Tuple[int, int]]:
        try:
            st = self.rules_file.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def load_rules(self, force: bool = False, strict: bool = False) -> RuleSet:
        """Return the current RuleSet, rebuilding it if the file changed.

        With ``strict`` a broken file raises; otherwise the previous RuleSet
        stays active and the error is logged.
        """
        now = time.monotonic()
        if not force and now - self._last_check_time < self.check_interval:
            return self.ruleset
        self._last_check_time = now

        signature = self._signature()
        if not force and signature == self._last_signature:
            return self.ruleset

        if signature is None:
            self.logger.warn(f"Rule file not found: {self.rules_file}, no rules active")
            self.ruleset = RuleSet()
            self._last_signature = None
            return self.ruleset

        try:
            ruleset = RuleSet.build(rule_section(read_config_file(self.rules_file)))
        except ConfigError as e:
            if strict:
                raise
            self.logger.error(f"Error loading rules, keeping previous rules: {e}")
            self._last_signature = signature
            return self.ruleset

        self.ruleset = ruleset
        self._last_signature = signature
        self.logger.info(f"Rules loaded: {len(ruleset)} map rules, {len(ruleset.hosts)} host mappings")
        return ruleset
