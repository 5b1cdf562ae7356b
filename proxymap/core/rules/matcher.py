import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

from ..errors import InvalidRuleSearch, UnsupportedSearchKind


@dataclass(frozen=True)
class MatchResult:
    """Captures of a successful match: index 0 is the full match, 1..n the groups"""
    url: str
    captures: Tuple[str, ...]

    @classmethod
    def from_re(cls, url: str, match: re.Match) -> "MatchResult":
        # Optional groups that did not participate capture the empty string
        groups = tuple(g if g is not None else "" for g in match.groups())
        return cls(url=url, captures=(match.group(0),) + groups)


@dataclass(frozen=True)
class GlobMatcher:
    """Literal or glob search, anchored against the full URL"""
    glob: str
    regex: re.Pattern

    @property
    def group_count(self) -> int:
        return self.regex.groups

    def match(self, url: str) -> Optional[MatchResult]:
        m = self.regex.fullmatch(url)
        return MatchResult.from_re(url, m) if m else None


@dataclass(frozen=True)
class RegexMatcher:
    """User-supplied pattern, used verbatim with search semantics"""
    regex: re.Pattern

    @property
    def group_count(self) -> int:
        return self.regex.groups

    def match(self, url: str) -> Optional[MatchResult]:
        m = self.regex.search(url)
        return MatchResult.from_re(url, m) if m else None


Matcher = Union[GlobMatcher, RegexMatcher]


def glob_to_regex(glob: str, capture: bool = True) -> str:
    """Translate a URL glob into a regex with one group per wildcard.

    ``**`` matches anything, ``*`` anything but ``/``, ``?`` one character
    but ``/``, ``{a,b}`` one of the alternatives. ``[...]`` classes are kept
    but not captured. ``\\`` escapes the next character. Wildcards inside
    braces are translated too, but only the brace itself is a group.
    """
    group = "(" if capture else "(?:"
    out = []
    i, n = 0, len(glob)
    while i < n:
        c = glob[i]
        if c == "*":
            if glob.startswith("**", i):
                out.append(group + ".*)")
                while i < n and glob[i] == "*":
                    i += 1
                continue
            out.append(group + "[^/]*)")
        elif c == "?":
            out.append(group + "[^/])")
        elif c == "[":
            # A ']' right after '[' is part of the class
            end = glob.find("]", i + 2)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = glob[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = end
        elif c == "{":
            end, options = _split_brace(glob, i)
            out.append(group + "|".join(glob_to_regex(o, capture=False) for o in options) + ")")
            i = end
        elif c == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(glob[i]))
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


def _split_brace(glob: str, start: int) -> Tuple[int, List[str]]:
    """Find the '}' closing the brace at start and split on top level commas"""
    options, depth, last = [], 0, start + 1
    i = start
    while i < len(glob):
        c = glob[i]
        if c == "\\":
            i += 2
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                options.append(glob[last:i])
                return i, options
        elif c == "," and depth == 1:
            options.append(glob[last:i])
            last = i + 1
        i += 1
    raise InvalidRuleSearch(f"unterminated brace in glob {glob!r}")


def compile_search(search: Any) -> Matcher:
    """Compile a rule search (string/glob or compiled regex) into a Matcher"""
    if isinstance(search, re.Pattern):
        if not isinstance(search.pattern, str):
            raise UnsupportedSearchKind(search)
        return RegexMatcher(regex=search)

    if isinstance(search, str):
        try:
            regex = re.compile(glob_to_regex(search))
        except re.error as e:
            raise InvalidRuleSearch(f"invalid glob {search!r}: {e}") from e
        return GlobMatcher(glob=search, regex=regex)

    raise UnsupportedSearchKind(search)
