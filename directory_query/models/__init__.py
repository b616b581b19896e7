from .directory_entry import DirectoryEntry, QueryAccumulator
from .search_specification import (
    AttributeRange,
    AuthMode,
    SearchScope,
    SearchSpecification,
    parse_attribute_key,
    parse_range,
)

__all__ = [
    "AttributeRange",
    "AuthMode",
    "DirectoryEntry",
    "QueryAccumulator",
    "SearchScope",
    "SearchSpecification",
    "parse_attribute_key",
    "parse_range",
]
