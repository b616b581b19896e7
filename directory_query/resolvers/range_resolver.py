"""
Ranged attribute resolution.

Active Directory returns at most MaxValRange values of a multi-valued
attribute per response and marks the slice in the attribute description,
e.g. 'member;range=0-1499'. The resolver merges each slice into the query's
accumulator and, while the upper bound is not '*', issues a base-object
search for the next slice ('member;range=1500-2999') on the same connection.
Follow-up searches run depth-first and synchronously, so an entry's ranges
are complete before the caller moves on to the next entry.
"""

import logging
from typing import Any, Dict, Optional

from ldap3 import Connection
from ldap3.core.exceptions import LDAPException

from ..cancellation import CancellationToken
from ..exceptions import QueryCancelledError, RangeRetrievalError, SearchWarning
from ..formatters.attribute_formatter import format_attribute
from ..models.directory_entry import QueryAccumulator
from ..models.search_specification import (
    AttributeRange,
    SearchSpecification,
    parse_attribute_key,
    parse_range,
)

logger = logging.getLogger(__name__)


class RangeResolver:
    """
    Merges raw entries into a QueryAccumulator and follows attribute ranges.

    One resolver serves one top-level query. Every follow-up search it issues
    writes into the same accumulator, whatever the call depth.
    """

    def __init__(
        self,
        adapter,
        connection: Connection,
        accumulator: QueryAccumulator,
        cancel_token: Optional[CancellationToken] = None,
        max_range_depth: Optional[int] = 250,
        tolerate_partial_ranges: bool = False,
        guid_heuristic: bool = True,
    ):
        """
        Args:
            adapter: LDAPAdapter whose iter_pages() runs the follow-up searches
            connection: Open connection shared by the whole query
            accumulator: Entries of the query being built
            cancel_token: Checked before every follow-up search
            max_range_depth: Maximum chain of follow-up searches per attribute
                (None for no cap)
            tolerate_partial_ranges: Record a warning and keep the values
                retrieved so far instead of failing the query
            guid_heuristic: Guess GUIDs for untyped 16 byte values
        """
        self.adapter = adapter
        self.connection = connection
        self.accumulator = accumulator
        self.cancel_token = cancel_token
        self.max_range_depth = max_range_depth
        self.tolerate_partial_ranges = tolerate_partial_ranges
        self.guid_heuristic = guid_heuristic
        self.range_requests = 0

    def resolve_entry(self, spec: SearchSpecification, raw_entry: Dict[str, Any], depth: int = 0) -> str:
        """
        Format and merge one raw search entry, following any truncated ranges.

        Args:
            spec: The search that returned the entry
            raw_entry: ldap3 response dictionary with 'dn' and 'raw_attributes'
            depth: Number of follow-up searches above this call

        Returns:
            str: The entry's distinguished name
        """
        dn = raw_entry["dn"]
        raw_attributes = raw_entry.get("raw_attributes") or {}
        self.accumulator.entry(dn, self.accumulator.query_id)

        for key, raw_values in raw_attributes.items():
            name, suffix = parse_attribute_key(key)
            values = format_attribute(name, raw_values, self.guid_heuristic)

            attribute_range = parse_range(suffix)
            if suffix is not None and attribute_range is None:
                logger.warning(
                    f"Unrecognised attribute description '{key}' on {dn}; "
                    f"keeping {len(values)} values without range handling"
                )

            merged = self.accumulator.merge(dn, name, values, attribute_range)

            if attribute_range is None or attribute_range.is_final or not merged:
                continue

            self._retrieve_next_range(spec, dn, name, attribute_range.next_range(), depth + 1)

        return dn

    def _retrieve_next_range(
        self,
        spec: SearchSpecification,
        dn: str,
        attribute_name: str,
        next_range: AttributeRange,
        depth: int,
    ) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

        if self.max_range_depth is not None and depth > self.max_range_depth:
            self._range_failure(
                dn,
                attribute_name,
                f"Range retrieval stopped at {next_range.qualifier(attribute_name)}: "
                f"more than {self.max_range_depth} follow-up searches",
            )
            return

        sub_spec = spec.for_range_retrieval(dn, next_range, attribute_name)
        self.range_requests += 1
        logger.debug(f"Retrieving {next_range.qualifier(attribute_name)} for {dn} (depth {depth})")

        try:
            for page in self.adapter.iter_pages(
                self.connection, sub_spec, self.accumulator, self.cancel_token
            ):
                for raw_entry in page:
                    self.resolve_entry(sub_spec, raw_entry, depth)
        except (QueryCancelledError, RangeRetrievalError):
            raise
        except LDAPException as e:
            self._range_failure(
                dn,
                attribute_name,
                f"Range retrieval {next_range.qualifier(attribute_name)} failed: {e}",
                cause=e,
            )
            return

        entry = self.accumulator.get(dn)
        if entry is not None and not entry.has_range_beyond(attribute_name, next_range.low):
            self._range_failure(
                dn,
                attribute_name,
                f"Server returned no values for {next_range.qualifier(attribute_name)}",
            )

    def _range_failure(
        self, dn: str, attribute_name: str, message: str, cause: Optional[Exception] = None
    ) -> None:
        entry = self.accumulator.get(dn)
        if entry is not None:
            entry.mark_incomplete(attribute_name)

        if self.tolerate_partial_ranges:
            self.accumulator.add_warning(
                SearchWarning(message=message, dn=dn, attribute=attribute_name)
            )
            return

        logger.error(f"{message} ({dn})")
        raise RangeRetrievalError(message, dn, attribute_name) from cause
