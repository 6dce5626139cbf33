"""module, source and path-map filters applied while decoding and correlating"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Sequence


class FilterError(ValueError):
    """invalid filter expression"""

    pass


@dataclass(frozen=True)
class Filter:
    """a compiled regular expression matched anywhere in its input"""

    matcher: Pattern

    @classmethod
    def parse(cls, expression: str) -> "Filter":
        try:
            return cls(re.compile(expression))
        except re.error as e:
            raise FilterError(
                f"could not create a regular expression from '{expression}': {e}"
            )

    def is_match(self, text: str) -> bool:
        return self.matcher.search(text) is not None


# $1, $name, ${name} and $$ in path map replacements
_GROUP_REF_REGEX = re.compile(
    r"\$(?:(?P<dollar>\$)|\{(?P<braced>[^}]+)\}|(?P<bare>[_0-9A-Za-z]+))"
)


@dataclass(frozen=True)
class ReplacementFilter:
    """
    a pattern and the text that replaces its first match

    the replacement may reference groups of the match as $1, $name or ${name};
    $$ is a literal dollar sign. unknown or unmatched groups expand to nothing
    and backslashes are copied verbatim.
    """

    matcher: Pattern
    replacement: str

    @classmethod
    def parse(cls, spec: str) -> "ReplacementFilter":
        """parse 'pattern:replacement', splitting at the first colon"""
        pattern, sep, replacement = spec.partition(":")
        if not sep:
            raise FilterError(f"invalid path map '{spec}': no ':' found")
        return cls(Filter.parse(pattern).matcher, replacement)

    def apply(self, text: str) -> Optional[str]:
        """return the rewritten text, None when the pattern does not match"""
        if self.matcher.search(text) is None:
            return None
        return self.matcher.sub(self.expand, text, count=1)

    def expand(self, match: "re.Match") -> str:
        """the replacement text with group references of match filled in"""

        def group(ref: "re.Match") -> str:
            if ref.group("dollar"):
                return "$"
            name = ref.group("braced") or ref.group("bare")
            try:
                value = match.group(int(name) if name.isdigit() else name)
            except IndexError:
                return ""
            return value or ""

        return _GROUP_REF_REGEX.sub(group, self.replacement)


def _matches_any(filters: Sequence[Filter], text: str) -> bool:
    return any(f.is_match(text) for f in filters)


@dataclass
class DrcovFilters:
    """filters applied to raw module lines while decoding a trace"""

    module_filters: List[Filter] = field(default_factory=list)
    module_skip_filters: List[Filter] = field(default_factory=list)
    path_map_filters: List[ReplacementFilter] = field(default_factory=list)

    def matches_any_module_filter(self, text: str) -> bool:
        return not self.module_filters or _matches_any(self.module_filters, text)

    def matches_any_module_skip_filter(self, text: str) -> bool:
        return bool(self.module_skip_filters) and _matches_any(
            self.module_skip_filters, text
        )

    def accepts_module(self, text: str) -> bool:
        return self.matches_any_module_filter(
            text
        ) and not self.matches_any_module_skip_filter(text)

    def maybe_replace_with_path_map(self, text: str) -> str:
        # only the first matching rule applies
        for path_map in self.path_map_filters:
            replaced = path_map.apply(text)
            if replaced is not None:
                return replaced
        return text


@dataclass
class LineInfoFilters:
    """filters applied to source paths resolved from debug information"""

    src_filters: List[Filter] = field(default_factory=list)
    src_skip_filters: List[Filter] = field(default_factory=list)

    def matches_any_source_filter(self, source: Optional[str]) -> bool:
        if source is None:
            return False
        return not self.src_filters or _matches_any(self.src_filters, source)

    def matches_any_source_skip_filter(self, source: Optional[str]) -> bool:
        if source is None:
            return False
        return bool(self.src_skip_filters) and _matches_any(
            self.src_skip_filters, source
        )

    def accepts_source(self, source: Optional[str]) -> bool:
        return self.matches_any_source_filter(
            source
        ) and not self.matches_any_source_skip_filter(source)
