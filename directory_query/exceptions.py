from dataclasses import dataclass
from typing import Optional

from ldap3.core.exceptions import LDAPException


class DirectoryQueryError(LDAPException):
    """Base exception for directory query errors."""
    pass

class ConfigurationError(DirectoryQueryError, ValueError):
    """Raised when adapter configuration or a search specification is invalid."""
    pass

class DirectoryConnectionError(DirectoryQueryError):
    """Raised when the connection or authentication to the directory fails."""
    pass

class DirectorySearchError(DirectoryQueryError):
    """Raised when a search fails with a non-recoverable error."""

    def __init__(self, message: str, result_code: Optional[int] = None):
        super().__init__(message)
        self.result_code = result_code

class RangeRetrievalError(DirectoryQueryError):
    """Raised when a follow-up range retrieval for a multi-valued attribute fails."""

    def __init__(self, message: str, dn: str, attribute: str):
        super().__init__(message)
        self.dn = dn
        self.attribute = attribute

class QueryCancelledError(DirectoryQueryError):
    """Raised when a query is cancelled or its deadline passes."""
    pass


@dataclass
class SearchWarning:
    """A recoverable error reported alongside the results of a query."""
    message: str
    result_code: Optional[int] = None
    description: Optional[str] = None
    dn: Optional[str] = None
    attribute: Optional[str] = None

    def __str__(self) -> str:
        context = ""
        if self.dn:
            context = f" [{self.dn}"
            context += f" / {self.attribute}]" if self.attribute else "]"
        return f"{self.message}{context}"
