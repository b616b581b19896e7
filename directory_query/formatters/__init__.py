from .attribute_formatter import (
    ATTRIBUTE_TYPES,
    NO_VALUE,
    AttributeType,
    collapse_values,
    format_attribute,
    format_value,
    guess_guid,
)

__all__ = [
    "ATTRIBUTE_TYPES",
    "NO_VALUE",
    "AttributeType",
    "collapse_values",
    "format_attribute",
    "format_value",
    "guess_guid",
]
