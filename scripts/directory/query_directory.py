#!/usr/bin/env python3
"""
Directory Query Script

Runs one paged search against Active Directory and writes every entry as a
JSON line. Multi-valued attributes returned in ranges (member, memberOf, ...)
are resolved in full before an entry is written.

Connection settings come from AD_* environment variables (see
DirectoryConfig); command line options override the search itself.

Usage:
    directory-query "(sAMAccountName=jdoe)" --attributes cn mail
    directory-query "(objectClass=group)" --base "OU=Groups,DC=example,DC=com" --attributes member
"""

import argparse
import base64
import json
import logging
import sys
import uuid
from datetime import datetime
from typing import Any, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from dotenv import load_dotenv
from ldap3.core.exceptions import LDAPException

from directory_query import (
    CancellationToken,
    DirectoryConfig,
    DirectoryQueryFacade,
)
from directory_query.formatters.attribute_formatter import NO_VALUE

logger = logging.getLogger(__name__)


class DirectoryJSONEncoder(json.JSONEncoder):
    """JSON encoder for typed directory attribute values."""

    def default(self, o: Any) -> Any:
        if o is NO_VALUE:
            return None
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, uuid.UUID):
            return str(o)
        if isinstance(o, (bytes, bytearray)):
            # Binary fields are base64 encoded to keep null bytes out of the output
            return base64.b64encode(bytes(o)).decode("ascii")
        if isinstance(o, x509.Certificate):
            return o.public_bytes(Encoding.PEM).decode("ascii")
        return super().default(o)


def _configure_logging(verbose: bool, log_file: Optional[str]) -> None:
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Search Active Directory and print entries as JSON lines"
    )
    parser.add_argument("filter", help="LDAP filter, e.g. '(objectClass=user)'")
    parser.add_argument("--base", help="Search base DN (default: AD_SEARCH_BASE)")
    parser.add_argument(
        "--scope", choices=["base", "level", "subtree"], default="subtree", help="Search scope"
    )
    parser.add_argument("--attributes", nargs="*", help="Attributes to return (default: all)")
    parser.add_argument("--size-limit", type=int, help="Server-side limit on total entries")
    parser.add_argument("--page-size", type=int, help="Entries per page")
    parser.add_argument("--deadline", type=float, help="Abort the query after this many seconds")
    parser.add_argument(
        "--tolerate-partial-ranges",
        action="store_true",
        help="Keep partial values when a range retrieval fails instead of aborting",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write log output to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for directory queries."""
    load_dotenv()

    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose, args.log_file)

    try:
        config = DirectoryConfig.get_config()
        if args.tolerate_partial_ranges:
            config["tolerate_partial_ranges"] = True

        cancel_token = CancellationToken.with_timeout(args.deadline) if args.deadline else None

        with DirectoryQueryFacade(config) as directory:
            result = directory.search(
                args.filter,
                search_base=args.base,
                attributes=args.attributes,
                scope=args.scope,
                size_limit=args.size_limit,
                page_size=args.page_size,
                cancel_token=cancel_token,
            )

            count = 0
            for entry in result:
                print(json.dumps(entry.to_dict(), cls=DirectoryJSONEncoder))
                count += 1

            for warning in result.warnings:
                logger.warning(f"⚠️ {warning}")
            logger.info(f"✅ {count} entries returned")

    except (LDAPException, ValueError) as e:
        logger.error(f"❌ Query failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
