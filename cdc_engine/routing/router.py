"""Table-to-sink routing."""

from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Set, Tuple

from cdc_engine.common.errors import ConfigurationError
from cdc_engine.common.models import ChangeEvent, TableId


def freeze_bindings(bindings: Mapping[str, Iterable[str]]) -> Mapping[TableId, FrozenSet[str]]:
    """Turn a ``{"schema.table": [sink ids]}`` mapping into an immutable binding table."""
    frozen: Dict[TableId, FrozenSet[str]] = {}
    for table, sinks in bindings.items():
        table_id = table if isinstance(table, TableId) else TableId.parse(table)
        frozen[table_id] = frozenset(sinks)
    return MappingProxyType(frozen)


def bindings_to_dict(bindings: Mapping[TableId, FrozenSet[str]]) -> Dict[str, List[str]]:
    """Serialisable form of a binding table, as stored in PipelineState."""
    return {str(table): sorted(sinks) for table, sinks in sorted(bindings.items())}


class Router:
    """
    Dispatches events to the sinks bound to their table.

    Stateless beyond the immutable bindings; returns targets in a stable order
    and never reorders events.
    """

    def __init__(self, bindings: Mapping[str, Iterable[str]], sink_ids: Iterable[str]) -> None:
        """
        Initialize router.

        Args:
            bindings: table id -> sink ids
            sink_ids: Ids of the sinks that exist in the pipeline

        Raises:
            ConfigurationError: If a binding references an unknown sink
        """
        self.bindings = freeze_bindings(bindings)
        known = set(sink_ids)
        for table_id, sinks in self.bindings.items():
            unknown = sinks - known
            if unknown:
                raise ConfigurationError(f"{table_id} is bound to unknown sinks {sorted(unknown)}")
        self._ordered: Mapping[TableId, Tuple[str, ...]] = MappingProxyType(
            {table_id: tuple(sorted(sinks)) for table_id, sinks in self.bindings.items()}
        )

    def route(self, event: ChangeEvent) -> List[Tuple[str, ChangeEvent]]:
        """
        Route an event.

        Args:
            event: Decoded change event

        Returns:
            (sink id, event) pairs, one per bound sink; empty for unbound tables
        """
        return [(sink_id, event) for sink_id in self._ordered.get(event.table_id, ())]

    @property
    def bound_sinks(self) -> Set[str]:
        """Sinks bound to at least one table."""
        bound: Set[str] = set()
        for sinks in self.bindings.values():
            bound |= sinks
        return bound

    def exclusive_tables(self, sink_ids: Iterable[str]) -> List[TableId]:
        """Tables bound to no sink outside ``sink_ids``, sorted by name."""
        chosen = set(sink_ids)
        return sorted(
            (table_id for table_id, sinks in self.bindings.items() if sinks and sinks <= chosen), key=str
        )
