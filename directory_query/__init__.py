from .adapters.ldap_adapter import LDAPAdapter
from .cancellation import CancellationToken
from .config import DirectoryConfig
from .exceptions import (
    ConfigurationError,
    DirectoryConnectionError,
    DirectoryQueryError,
    DirectorySearchError,
    QueryCancelledError,
    RangeRetrievalError,
    SearchWarning,
)
from .facade.directory_facade import DirectoryQueryFacade, QueryResult
from .formatters.attribute_formatter import NO_VALUE
from .models import AuthMode, DirectoryEntry, QueryAccumulator, SearchScope, SearchSpecification

__all__ = [
    "AuthMode",
    "CancellationToken",
    "ConfigurationError",
    "DirectoryConfig",
    "DirectoryConnectionError",
    "DirectoryEntry",
    "DirectoryQueryError",
    "DirectoryQueryFacade",
    "DirectorySearchError",
    "LDAPAdapter",
    "NO_VALUE",
    "QueryAccumulator",
    "QueryCancelledError",
    "QueryResult",
    "RangeRetrievalError",
    "SearchScope",
    "SearchSpecification",
    "SearchWarning",
]
