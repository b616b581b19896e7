import logging
import uuid
from typing import Any, Dict, Iterator, List, Optional

from ldap3.utils.ciDict import CaseInsensitiveDict

from ..exceptions import SearchWarning
from ..formatters.attribute_formatter import collapse_values
from .search_specification import AttributeRange

logger = logging.getLogger(__name__)


class _RangeState:
    """Progress of one ranged attribute on one entry."""

    __slots__ = ("next_low", "final")

    def __init__(self):
        self.next_low = 0
        self.final = False


class DirectoryEntry:
    """
    One directory object keyed by distinguished name.

    Values of each attribute are kept as an ordered list; merged range slices
    are appended in range order. The attributes property returns the
    collapsed shape: NO_VALUE for an attribute returned without values, the
    bare value for a single value and a list for two or more.
    """

    def __init__(self, dn: str, query_id: str):
        self.dn = dn
        self.query_id = query_id
        self._values = CaseInsensitiveDict()
        self._ranges = CaseInsensitiveDict()
        self.incomplete_attributes: List[str] = []

    def __repr__(self) -> str:
        return f"DirectoryEntry(dn='{self.dn}', attributes={list(self._values.keys())})"

    def __contains__(self, attribute_name: str) -> bool:
        return attribute_name in self._values

    def __getitem__(self, attribute_name: str) -> Any:
        return collapse_values(self._values[attribute_name])

    def get(self, attribute_name: str, default: Any = None) -> Any:
        if attribute_name not in self._values:
            return default
        return self[attribute_name]

    @property
    def attribute_names(self) -> List[str]:
        return list(self._values.keys())

    @property
    def attributes(self) -> Dict[str, Any]:
        return {name: collapse_values(values) for name, values in self._values.items()}

    def values(self, attribute_name: str) -> List[Any]:
        """All values of an attribute as a list, regardless of count."""
        return list(self._values.get(attribute_name, []))

    @property
    def is_complete(self) -> bool:
        """True once every ranged attribute reached its final '*' range."""
        if self.incomplete_attributes:
            return False
        return all(state.final for state in self._ranges.values())

    def has_range_beyond(self, attribute_name: str, low: int) -> bool:
        """True if slices past the one starting at low were merged, or the final one was."""
        state = self._ranges.get(attribute_name)
        if state is None:
            return False
        return state.final or state.next_low > low

    def pending_ranges(self) -> List[str]:
        return [name for name, state in self._ranges.items() if not state.final]

    def mark_incomplete(self, attribute_name: str) -> None:
        if attribute_name not in self.incomplete_attributes:
            self.incomplete_attributes.append(attribute_name)

    def add_values(
        self,
        attribute_name: str,
        values: List[Any],
        attribute_range: Optional[AttributeRange] = None,
    ) -> bool:
        """
        Append values for an attribute, honouring range order.

        Returns False when the slice was already merged and is ignored.
        """
        if attribute_range is None:
            self._values.setdefault(attribute_name, []).extend(values)
            return True

        state = self._ranges.get(attribute_name)
        if state is None:
            state = _RangeState()
            self._ranges[attribute_name] = state

        if attribute_range.low < state.next_low or state.final:
            logger.warning(
                f"Ignoring duplicate range {attribute_range.qualifier(attribute_name)} "
                f"for {self.dn}, expected range starting at {state.next_low}"
            )
            return False
        if attribute_range.low > state.next_low:
            logger.warning(
                f"Gap in ranged attribute {attribute_name} for {self.dn}: "
                f"expected range starting at {state.next_low}, got {attribute_range.low}"
            )

        self._values.setdefault(attribute_name, []).extend(values)

        if attribute_range.is_final:
            state.final = True
        else:
            state.next_low = attribute_range.high + 1
        return True

    def to_dict(self) -> Dict[str, Any]:
        entry_dict = {"dn": self.dn}
        entry_dict.update(self.attributes)
        return entry_dict


class QueryAccumulator:
    """
    Entries under construction for one top-level query.

    The accumulator is created at the top-level entry point and passed
    explicitly to every range retrieval sub-search of the same query, so
    slices fetched by nested calls land on the same DirectoryEntry. Merges
    tagged with another query id are rejected.
    """

    def __init__(self, query_id: Optional[str] = None):
        self.query_id = query_id or str(uuid.uuid4())
        self._entries: Dict[str, DirectoryEntry] = {}
        self.warnings: List[SearchWarning] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, dn: str) -> bool:
        return dn in self._entries

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(list(self._entries.values()))

    def _check_query(self, query_id: Optional[str]) -> None:
        if query_id is not None and query_id != self.query_id:
            raise ValueError(
                f"Query {query_id} cannot merge into the accumulator of query {self.query_id}"
            )

    def entry(self, dn: str, query_id: Optional[str] = None) -> DirectoryEntry:
        """Get the entry for a DN, creating it on first use."""
        self._check_query(query_id)
        existing = self._entries.get(dn)
        if existing is None:
            existing = DirectoryEntry(dn, self.query_id)
            self._entries[dn] = existing
        return existing

    def merge(
        self,
        dn: str,
        attribute_name: str,
        values: List[Any],
        attribute_range: Optional[AttributeRange] = None,
        query_id: Optional[str] = None,
    ) -> bool:
        return self.entry(dn, query_id).add_values(attribute_name, values, attribute_range)

    def get(self, dn: str) -> Optional[DirectoryEntry]:
        return self._entries.get(dn)

    def pop(self, dn: str) -> Optional[DirectoryEntry]:
        return self._entries.pop(dn, None)

    def add_warning(self, warning: SearchWarning) -> None:
        logger.warning(str(warning))
        self.warnings.append(warning)
