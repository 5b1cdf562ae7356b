from typing import Optional

from ..utils import setup_logging
from .actions import TargetResolver
from .loader import RuleSet
from .models import (
    HostSubstitution, Passthrough, RequestInfo, RewriteResult,
    RuleResolutionFailed, UnresolvedTarget,
)


class RuleEngine:
    """Per-request hook: match the first rule, apply it, else fall back to hosts.

    The RuleSet is only ever replaced as a whole, so concurrent requests each
    see one consistent rule set without locking.
    """

    def __init__(self, ruleset: Optional[RuleSet] = None, resolver: Optional[TargetResolver] = None):
        self.logger = setup_logging()
        self.ruleset = ruleset or RuleSet()
        self.resolver = resolver or TargetResolver()

    async def intercept(self, request: RequestInfo) -> RewriteResult:
        ruleset = self.ruleset

        # 1. Map rules, first match wins
        found = ruleset.first_match(request.url)
        if found is not None:
            rule, match = found
            self.logger.debug(f"Rule matched: {rule.key} <- {request.url}")
            result = await self.resolver.resolve(match, rule.targets)
            if isinstance(result, UnresolvedTarget):
                failure = RuleResolutionFailed(rule_key=rule.key, url=request.url, unresolved=result)
                self.logger.error(failure.message)
                return failure
            return result

        # 2. Hosts table
        replacement = ruleset.host_for(request.host)
        if replacement is not None:
            self.logger.info(f"Hosts: {request.host} -> {replacement}")
            return HostSubstitution(host=replacement)

        return Passthrough()
