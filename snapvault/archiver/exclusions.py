from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from posixpath import basename, dirname
from typing import Iterable


class ExclusionKind(str, Enum):
    PATH = "path"
    EXTENSION = "extension"
    PREFIX = "prefix"
    WILDCARD = "wildcard"


@dataclass(frozen=True)
class WildcardRule:
    directory: str
    needle: str
    mode: str

    def matches(self, rel_path: str) -> bool:
        if self.directory and dirname(rel_path) != self.directory:
            return False
        name = basename(rel_path).lower()
        if self.mode == "contains":
            return self.needle in name
        if self.mode == "startswith":
            return name.startswith(self.needle)
        return name.endswith(self.needle)


@dataclass
class ExclusionRules:
    """Exclusion list for one entity root; paths are root-relative posix strings.

    Precedence: explicit path, then ``ext:``, then ``prefix:``, then wildcards.
    A bare word with no wildcard is an explicit path.
    """

    paths: set[str] = field(default_factory=set)
    extensions: set[str] = field(default_factory=set)
    prefixes: set[str] = field(default_factory=set)
    wildcards: list[WildcardRule] = field(default_factory=list)

    @classmethod
    def parse(cls, raw_rules: Iterable[str]) -> "ExclusionRules":
        rules = cls()
        for raw in raw_rules:
            rule = raw.strip().strip("/")
            if not rule:
                continue
            lowered = rule.lower()
            if lowered.startswith("ext:"):
                rules.extensions.add(lowered[4:].lstrip("."))
            elif lowered.startswith("prefix:"):
                rules.prefixes.add(lowered[7:])
            elif "*" in rule:
                rules.wildcards.append(_parse_wildcard(lowered))
            else:
                rules.paths.add(rule)
        return rules

    def match(self, rel_path: str, *, is_dir: bool = False) -> ExclusionKind | None:
        if rel_path in self.paths:
            return ExclusionKind.PATH
        name = basename(rel_path).lower()
        if not is_dir and self.extensions:
            for extension in self.extensions:
                if name.endswith("." + extension):
                    return ExclusionKind.EXTENSION
        for prefix in self.prefixes:
            if name.startswith(prefix):
                return ExclusionKind.PREFIX
        for wildcard in self.wildcards:
            if wildcard.matches(rel_path.lower()):
                return ExclusionKind.WILDCARD
        return None

    def extend_paths(self, paths: Iterable[str]) -> None:
        self.paths.update(path.strip("/") for path in paths if path.strip("/"))


def _parse_wildcard(rule: str) -> WildcardRule:
    directory = dirname(rule)
    pattern = basename(rule)
    if pattern.startswith("*") and pattern.endswith("*") and len(pattern) > 1:
        return WildcardRule(directory=directory, needle=pattern[1:-1], mode="contains")
    if pattern.endswith("*"):
        return WildcardRule(directory=directory, needle=pattern[:-1], mode="startswith")
    return WildcardRule(directory=directory, needle=pattern.lstrip("*"), mode="endswith")
