"""
Directory Query Facade

This facade is the top-level entry point for directory queries. Each query
gets its own QueryAccumulator and query id, one connection that is held for
the whole query including its range retrieval sub-searches, and a lazily
produced sequence of finished DirectoryEntry records.
"""

import logging
import weakref
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..adapters.ldap_adapter import LDAPAdapter
from ..cancellation import CancellationToken
from ..exceptions import DirectorySearchError, SearchWarning
from ..models.directory_entry import DirectoryEntry, QueryAccumulator
from ..models.search_specification import SearchScope, SearchSpecification
from ..resolvers.range_resolver import RangeResolver

logger = logging.getLogger(__name__)

NO_SUCH_OBJECT = 32


class QueryResult:
    """
    Single-use, lazily evaluated result of one directory query.

    Iterating opens the connection, drives the paged search and yields each
    page's entries once their ranged attributes are fully merged. The
    connection is closed when iteration ends, fails or is abandoned.
    Recoverable errors do not stop iteration; they are collected in
    warnings.
    """

    def __init__(
        self,
        adapter: LDAPAdapter,
        spec: SearchSpecification,
        cancel_token: Optional[CancellationToken] = None,
        on_finish: Optional[Callable[["QueryResult"], None]] = None,
    ):
        self.adapter = adapter
        self.spec = spec
        self.cancel_token = cancel_token
        self._on_finish = on_finish
        self.accumulator = QueryAccumulator()
        self.range_requests = 0
        self._generator = None

    @property
    def query_id(self) -> str:
        return self.accumulator.query_id

    @property
    def warnings(self) -> List[SearchWarning]:
        return self.accumulator.warnings

    def __iter__(self) -> Iterator[DirectoryEntry]:
        if self._generator is not None:
            raise RuntimeError("QueryResult can only be iterated once; re-issue the search")
        self._generator = self._generate()
        return self._generator

    def all(self) -> List[DirectoryEntry]:
        return list(self)

    def close(self) -> None:
        """Stop an unfinished iteration and release its connection."""
        if self._generator is not None:
            self._generator.close()

    def _generate(self) -> Iterator[DirectoryEntry]:
        logger.debug(f"Starting query {self.query_id}: filter='{self.spec.search_filter}'")
        connection = self.adapter.open_connection()
        yielded = set()
        try:
            resolver = RangeResolver(
                self.adapter,
                connection,
                self.accumulator,
                cancel_token=self.cancel_token,
                max_range_depth=self.adapter.max_range_depth,
                tolerate_partial_ranges=self.adapter.tolerate_partial_ranges,
                guid_heuristic=self.adapter.guid_heuristic,
            )

            for page in self.adapter.iter_pages(
                connection, self.spec, self.accumulator, self.cancel_token
            ):
                page_dns = []
                for raw_entry in page:
                    dn = raw_entry["dn"]
                    if dn in yielded or dn in page_dns:
                        logger.warning(f"Skipping entry returned twice by the server: {dn}")
                        continue
                    resolver.resolve_entry(self.spec, raw_entry)
                    page_dns.append(dn)

                self.range_requests = resolver.range_requests
                for dn in page_dns:
                    entry = self.accumulator.pop(dn)
                    if entry is None:
                        continue
                    if not entry.is_complete:
                        logger.warning(
                            f"Returning incomplete entry {dn}: "
                            f"{entry.incomplete_attributes or entry.pending_ranges()}"
                        )
                    yielded.add(dn)
                    yield entry

            logger.info(
                f"Query {self.query_id} completed: {len(yielded)} entries, "
                f"{self.range_requests} range requests, {len(self.warnings)} warnings"
            )
        finally:
            self.adapter.close_connection(connection)
            if self._on_finish is not None:
                self._on_finish(self)


class DirectoryQueryFacade:
    """
    Directory query facade providing paged, range-resolving searches.

    Example:
        >>> with DirectoryQueryFacade(config) as directory:
        ...     for entry in directory.search("(sAMAccountName=jdoe)", attributes=["cn", "mail"]):
        ...         print(entry.dn, entry["mail"])
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        """
        Args:
            config (Dict[str, Any]): LDAPAdapter configuration dictionary
        """
        self.adapter = LDAPAdapter(config)
        # Results not yet iterated to the end; finished ones remove themselves
        self._open_results = weakref.WeakSet()
        logger.debug(f"Directory query facade created for {self.adapter}")

    def search_spec(
        self, spec: SearchSpecification, cancel_token: Optional[CancellationToken] = None
    ) -> QueryResult:
        """Run a prepared SearchSpecification."""
        result = QueryResult(self.adapter, spec, cancel_token, on_finish=self._open_results.discard)
        self._open_results.add(result)
        return result

    def search(
        self,
        search_filter: str,
        search_base: Optional[str] = None,
        attributes: Optional[List[str]] = None,
        scope: Any = "subtree",
        size_limit: Optional[int] = None,
        page_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> QueryResult:
        """
        Search the directory.

        Args:
            search_filter: LDAP filter string (e.g., '(objectClass=group)')
            search_base: Base DN (defaults to the configured search_base)
            attributes: Attribute names, bare or range-qualified (None for all)
            scope: 'base', 'level' or 'subtree'
            size_limit: Server-side limit on the total number of entries
            page_size: Entries per page
            cancel_token: Token to abort the query and its range retrievals
            timeout: Server-side time limit per request in seconds

        Returns:
            QueryResult: Iterable of DirectoryEntry; see QueryResult.warnings
        """
        spec = self.adapter.build_specification(
            search_filter,
            search_base=search_base,
            scope=scope,
            attributes=attributes,
            size_limit=size_limit,
            page_size=page_size,
            timeout=timeout,
        )
        return self.search_spec(spec, cancel_token)

    def search_as_dicts(self, *args, **kwargs) -> List[Dict[str, Any]]:
        """
        Convenience method that returns search results as dictionaries.

        Returns:
            List[Dict[str, Any]]: List of dictionaries with 'dn' and attributes
        """
        return [entry.to_dict() for entry in self.search(*args, **kwargs)]

    def find_one(
        self,
        dn: str,
        attributes: Optional[List[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[DirectoryEntry]:
        """
        Look up a single object by distinguished name.

        Returns:
            Optional[DirectoryEntry]: The entry, or None if the search returned nothing
        """
        result = self.search(
            "(objectClass=*)",
            search_base=dn,
            attributes=attributes,
            scope=SearchScope.BASE,
            cancel_token=cancel_token,
        )
        try:
            entries = result.all()
        except DirectorySearchError as e:
            if e.result_code == NO_SUCH_OBJECT:
                logger.debug(f"No such object: {dn}")
                return None
            raise
        return entries[0] if entries else None

    def close(self) -> None:
        """Close any query still being iterated."""
        for result in list(self._open_results):
            result.close()
        self._open_results.clear()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes unfinished queries."""
        self.close()
