import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


class DirectoryConfig:
    """Centralized directory configuration management."""

    @staticmethod
    def get_config() -> Dict[str, Any]:
        """Get LDAPAdapter configuration from environment variables (.env supported)."""
        use_ssl = _get_bool("AD_USE_SSL", True)

        config = {
            "server": os.getenv("AD_SERVER"),
            "search_base": os.getenv("AD_SEARCH_BASE"),
            "port": _get_int("AD_PORT", 636 if use_ssl else 389),
            "use_ssl": use_ssl,
            "auth_mode": os.getenv("AD_AUTH_MODE", "current_identity").lower(),
            "user": os.getenv("AD_USER"),
            "password": os.getenv("AD_PASSWORD"),
            "keyring_service": os.getenv("AD_KEYRING_SERVICE"),
            "certificate_file": os.getenv("AD_CERTIFICATE_FILE"),
            "private_key_file": os.getenv("AD_PRIVATE_KEY_FILE"),
            "ca_certs_file": os.getenv("AD_CA_CERTS_FILE"),
            "timeout": _get_int("AD_TIMEOUT", 120),
            "default_page_size": _get_int("AD_PAGE_SIZE", 1000),
            "size_limit": _get_int("AD_SIZE_LIMIT", 0),
            "max_range_depth": _get_int("AD_MAX_RANGE_DEPTH", 250),
            "tolerate_partial_ranges": _get_bool("AD_TOLERATE_PARTIAL_RANGES", False),
        }

        # Drop unset optional values so adapter defaults apply
        return {key: value for key, value in config.items() if value is not None}

    @staticmethod
    def get_example_config() -> Dict[str, str]:
        """Get an example .env configuration."""
        return {
            "AD_SERVER": "dc01.example.com",
            "AD_SEARCH_BASE": "DC=example,DC=com",
            "AD_PORT": "636",
            "AD_USE_SSL": "true",
            "AD_AUTH_MODE": "credential",
            "AD_USER": "EXAMPLE\\svc-directory",
            "AD_KEYRING_SERVICE": "directory_query",
            "AD_TIMEOUT": "120",
            "AD_PAGE_SIZE": "1000",
        }
