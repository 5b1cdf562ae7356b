from .actions import LocalFileReader, TargetResolver, throttle_delay
from .engine import RuleEngine
from .loader import RuleLoader, RuleSet
from .matcher import GlobMatcher, MatchResult, RegexMatcher, compile_search
from .models import (
    ApiTarget, FileTarget, HostSubstitution, Passthrough, RequestInfo, Respond,
    Rewrite, Rule, RuleResolutionFailed, StaticData, TargetAttempt, UnresolvedTarget,
)
