"""
Search specification and attribute-range helpers.

A SearchSpecification describes one logical search. It is immutable; the
range retrieval sub-searches issued for truncated multi-valued attributes are
derived copies with base, scope, filter and attribute list overridden.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from ldap3 import BASE, LEVEL, SUBTREE

from ..exceptions import ConfigurationError

# Object presence filter used for range retrieval sub-searches
MATCH_ANYTHING_FILTER = "(objectClass=*)"

_RANGE_PATTERN = re.compile(r"^range=(?P<low>\d+)-(?P<high>\d+|\*)$", re.IGNORECASE)


class SearchScope(Enum):
    BASE = BASE
    LEVEL = LEVEL
    SUBTREE = SUBTREE

    @classmethod
    def from_value(cls, value) -> "SearchScope":
        """Accept a SearchScope, an ldap3 scope constant or a scope name."""
        if isinstance(value, cls):
            return value

        aliases = {
            "base": cls.BASE,
            "level": cls.LEVEL,
            "onelevel": cls.LEVEL,
            "one": cls.LEVEL,
            "subtree": cls.SUBTREE,
            "sub": cls.SUBTREE,
        }
        if isinstance(value, str) and value.lower() in aliases:
            return aliases[value.lower()]

        raise ConfigurationError(
            f"scope must be one of: {sorted(set(aliases.keys()))}, got {value!r}"
        )


class AuthMode(Enum):
    """Authentication modes are mutually exclusive."""

    CERTIFICATE = "certificate"
    CREDENTIAL = "credential"
    KERBEROS = "kerberos"
    CURRENT_IDENTITY = "current_identity"

    @classmethod
    def from_value(cls, value) -> "AuthMode":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.CURRENT_IDENTITY
        try:
            return cls(str(value).lower().replace("-", "_"))
        except ValueError:
            raise ConfigurationError(
                f"auth_mode must be one of: {[mode.value for mode in cls]}, got {value!r}"
            )


@dataclass(frozen=True)
class AttributeRange:
    """Bounds of one slice of a ranged attribute. high is None for '*'."""

    low: int
    high: Optional[int]

    @property
    def is_final(self) -> bool:
        return self.high is None

    def next_range(self) -> "AttributeRange":
        """Range of the same width starting right after this one."""
        if self.is_final:
            raise ValueError("no range follows a final range")
        width = self.high - self.low
        next_low = self.high + 1
        return AttributeRange(next_low, next_low + width)

    def qualifier(self, attribute_name: str) -> str:
        high = "*" if self.is_final else str(self.high)
        return f"{attribute_name};range={self.low}-{high}"


def parse_attribute_key(key: str) -> Tuple[str, Optional[str]]:
    """Split 'member;range=0-999' into ('member', 'range=0-999')."""
    name, separator, suffix = key.partition(";")
    return name, (suffix if separator else None)


def parse_range(suffix: Optional[str]) -> Optional[AttributeRange]:
    """Parse a 'range=<low>-<high|*>' description suffix; None if it is not one."""
    if not suffix:
        return None
    match = _RANGE_PATTERN.match(suffix.strip())
    if not match:
        return None
    high = match.group("high")
    return AttributeRange(int(match.group("low")), None if high == "*" else int(high))


@dataclass(frozen=True)
class SearchSpecification:
    """Everything needed to run one logical search against one server."""

    server: str
    search_base: str
    search_filter: str
    attributes: Tuple[str, ...] = ("*",)
    scope: SearchScope = SearchScope.SUBTREE
    port: int = 636
    size_limit: int = 0
    page_size: int = 1000
    use_ssl: bool = True
    auth_mode: AuthMode = AuthMode.CURRENT_IDENTITY
    timeout: Optional[float] = None

    def __post_init__(self):
        # Normalise loosely typed inputs on the frozen instance
        object.__setattr__(self, "scope", SearchScope.from_value(self.scope))
        object.__setattr__(self, "auth_mode", AuthMode.from_value(self.auth_mode))
        if isinstance(self.attributes, str):
            object.__setattr__(self, "attributes", (self.attributes,))
        else:
            object.__setattr__(self, "attributes", tuple(self.attributes or ("*",)))

        if not self.server:
            raise ConfigurationError("server must be a non-empty string")
        if not self.search_filter or not isinstance(self.search_filter, str):
            raise ConfigurationError("search_filter must be a non-empty string")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(f"port must be in [1, 65535], got {self.port!r}")
        if self.page_size < 1:
            raise ConfigurationError(f"page_size must be at least 1, got {self.page_size}")
        if self.size_limit < 0:
            raise ConfigurationError(f"size_limit must not be negative, got {self.size_limit}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")

    def for_range_retrieval(self, dn: str, attribute_range: AttributeRange, attribute_name: str) -> "SearchSpecification":
        """Derive the base-object sub-search that fetches one more slice of an attribute."""
        return replace(
            self,
            search_base=dn,
            search_filter=MATCH_ANYTHING_FILTER,
            scope=SearchScope.BASE,
            attributes=(attribute_range.qualifier(attribute_name),),
            size_limit=0,
        )
