"""
Attribute value formatting for Active Directory search results.

Raw LDAP values arrive as byte strings. This module turns them into typed
Python values using a static table of well-known attribute semantics:

- FILETIME: 100ns ticks since 1601-01-01 UTC -> aware datetime
- GENERALIZED_TIME: 'yyyyMMddHHmmss.fZ' text -> aware datetime
- SID: binary security identifier -> 'S-1-5-...' string
- GUID: little-endian 16 byte identifier -> uuid.UUID
- CERTIFICATE: DER bytes -> cryptography x509.Certificate
- BLOB: opaque bytes, left as is

Attributes that are not in the table are decoded as UTF-8 text where
possible. An undecodable value of exactly 16 bytes is guessed to be a GUID
(see guess_guid); this is a heuristic and can misclassify an unrelated
16 byte value.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from cryptography import x509
from ldap3.protocol.formatters.formatters import format_sid

logger = logging.getLogger(__name__)

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

# Tick count of the largest representable instant (9999-12-31 23:59:59.9999999).
# Values at or above it, such as 0x7FFFFFFFFFFFFFFF for "never expires", stay integers.
MAX_FILETIME_TICKS = 2650467743999999999

GENERALIZED_TIME_FORMATS = ("%Y%m%d%H%M%S.%fZ", "%Y%m%d%H%M%SZ")


class _NoValue:
    """Marker for an attribute that is present but has no values."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_VALUE"

    def __reduce__(self):
        return (_NoValue, ())


NO_VALUE = _NoValue()


class AttributeType(Enum):
    FILETIME = "FileTime"
    SID = "SecurityIdentifier"
    CERTIFICATE = "Certificate"
    BLOB = "Blob"
    GENERALIZED_TIME = "GeneralizedTime"
    GUID = "Guid"


_TYPED_ATTRIBUTES = {
    AttributeType.FILETIME: [
        "accountExpires",
        "badPasswordTime",
        "lastLogoff",
        "lastLogon",
        "lastLogonTimestamp",
        "lockoutTime",
        "pwdLastSet",
        "creationTime",
        "msDS-LastFailedInteractiveLogonTime",
        "msDS-LastSuccessfulInteractiveLogonTime",
        "msDS-UserPasswordExpiryTimeComputed",
        "ms-Mcs-AdmPwdExpirationTime",
        "msLAPS-PasswordExpirationTime",
    ],
    AttributeType.SID: [
        "objectSid",
        "sIDHistory",
        "securityIdentifier",
        "tokenGroups",
        "tokenGroupsGlobalAndUniversal",
        "tokenGroupsNoGCAcceptable",
        "mS-DS-CreatorSID",
        "msExchMasterAccountSid",
    ],
    AttributeType.CERTIFICATE: [
        "userCertificate",
        "userSMIMECertificate",
        "cACertificate",
    ],
    AttributeType.BLOB: [
        "nTSecurityDescriptor",
        "msDS-AllowedToActOnBehalfOfOtherIdentity",
        "msExchMailboxSecurityDescriptor",
        "logonHours",
        "thumbnailPhoto",
        "jpegPhoto",
        "msDS-GenerationId",
        "msFVE-KeyPackage",
        "replUpToDateVector",
        "repsFrom",
        "repsTo",
    ],
    AttributeType.GENERALIZED_TIME: [
        "whenCreated",
        "whenChanged",
        "createTimeStamp",
        "modifyTimeStamp",
        "dSCorePropagationData",
        "msTSExpireDate",
    ],
    AttributeType.GUID: [
        "objectGUID",
        "schemaIDGUID",
        "attributeSecurityGUID",
        "msExchMailboxGuid",
        "mS-DS-ConsistencyGuid",
        "msDS-ConsistencyGuid",
    ],
}

# Lookup by lower-cased attribute name, LDAP attribute names are case-insensitive
ATTRIBUTE_TYPES: Dict[str, AttributeType] = {
    name.lower(): attribute_type
    for attribute_type, names in _TYPED_ATTRIBUTES.items()
    for name in names
}


def get_attribute_type(attribute_name: str) -> Optional[AttributeType]:
    return ATTRIBUTE_TYPES.get(attribute_name.lower())


def _as_text(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _as_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def convert_filetime(value: Union[bytes, str, int]) -> Union[datetime, int, str]:
    """
    Convert FILETIME ticks to an aware UTC datetime.

    Only values in [0, MAX_FILETIME_TICKS) are converted. Larger values are
    the "never" sentinels a directory uses and are returned as integers.
    """
    try:
        ticks = value if isinstance(value, int) else int(_as_text(value).strip())
    except (ValueError, UnicodeDecodeError):
        logger.debug(f"FILETIME value is not an integer, leaving unconverted: {value!r}")
        return value

    if ticks < 0 or ticks >= MAX_FILETIME_TICKS:
        return ticks

    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def convert_generalized_time(value: Union[bytes, str]) -> Union[datetime, str]:
    """Parse 'yyyyMMddHHmmss.fZ' text independent of locale."""
    text = _as_text(value).strip()
    for time_format in GENERALIZED_TIME_FORMATS:
        try:
            return datetime.strptime(text, time_format).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    logger.debug(f"Unrecognised generalized time value: {text!r}")
    return text


def convert_sid(value: Union[bytes, str]) -> str:
    if isinstance(value, str) and value.upper().startswith("S-"):
        return value
    return format_sid(_as_bytes(value))


def convert_guid(value: Union[bytes, str]) -> Union[uuid.UUID, bytes]:
    raw = _as_bytes(value)
    if len(raw) != 16:
        return raw
    return uuid.UUID(bytes_le=raw)


def convert_certificate(value: Union[bytes, str]) -> Union[x509.Certificate, bytes]:
    raw = _as_bytes(value)
    try:
        return x509.load_der_x509_certificate(raw)
    except ValueError as e:
        logger.debug(f"Certificate value could not be decoded, keeping raw bytes: {e}")
        return raw


def convert_blob(value: Union[bytes, str]) -> bytes:
    return _as_bytes(value)


_CONVERTERS: Dict[AttributeType, Callable[[Any], Any]] = {
    AttributeType.FILETIME: convert_filetime,
    AttributeType.GENERALIZED_TIME: convert_generalized_time,
    AttributeType.SID: convert_sid,
    AttributeType.GUID: convert_guid,
    AttributeType.CERTIFICATE: convert_certificate,
    AttributeType.BLOB: convert_blob,
}


def guess_guid(value: Any) -> Any:
    """
    Heuristic fallback for untyped attributes: reinterpret a 16 byte binary
    value as a GUID. Anything else is returned unchanged.
    """
    if isinstance(value, (bytes, bytearray)) and len(value) == 16:
        return uuid.UUID(bytes_le=bytes(value))
    return value


def decode_untyped(value: Any) -> Any:
    """Decode an untyped raw value as UTF-8 text, keeping binary data as bytes."""
    if not isinstance(value, (bytes, bytearray)):
        return value
    try:
        return bytes(value).decode("utf-8")
    except UnicodeDecodeError:
        return bytes(value)


def format_value(attribute_name: str, value: Any, guid_heuristic: bool = True) -> Any:
    """Format a single raw value of the named attribute."""
    attribute_type = get_attribute_type(attribute_name)
    if attribute_type is not None:
        return _CONVERTERS[attribute_type](value)

    decoded = decode_untyped(value)
    if guid_heuristic:
        return guess_guid(decoded)
    return decoded


def format_attribute(
    attribute_name: str, raw_values: Optional[Iterable[Any]], guid_heuristic: bool = True
) -> List[Any]:
    """
    Format all raw values of one attribute, preserving their order.

    Args:
        attribute_name: Attribute name without range qualifier
        raw_values: A single raw value or a list of raw values (None for none)
        guid_heuristic: Guess GUIDs for untyped 16 byte values

    Returns:
        List of typed values, possibly empty
    """
    if raw_values is None:
        return []
    if isinstance(raw_values, (bytes, bytearray, str, int)):
        raw_values = [raw_values]

    return [format_value(attribute_name, value, guid_heuristic) for value in raw_values]


def collapse_values(values: List[Any]) -> Any:
    """
    Collapse a formatted value list into the shape callers branch on:
    no values -> NO_VALUE, one value -> the value, more -> the list.
    """
    if not values:
        return NO_VALUE
    if len(values) == 1:
        return values[0]
    return list(values)
