"""Core data model: positions, change records and change events."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from cdc_engine.common.errors import SchemaError
from cdc_engine.common.utils import utc_now


@dataclass(frozen=True, order=True)
class SourcePosition:
    """
    Totally ordered position within one source stream.

    ``segment`` is the log file number (0 for single-log sources such as topics),
    ``offset`` the position inside the segment and ``index`` the row index inside a
    multi-row log event. ``token`` carries source-specific resume information and
    never takes part in ordering or equality.
    """

    segment: int
    offset: int
    index: int = 0
    token: Optional[str] = field(default=None, compare=False)

    def sort_key(self) -> str:
        """Lexicographically sortable string form, used for position guards in SQL targets."""
        return f"{self.segment:010d}:{self.offset:020d}:{self.index:08d}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"segment": self.segment, "offset": self.offset, "index": self.index}
        if self.token is not None:
            data["token"] = self.token
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourcePosition":
        return cls(
            segment=int(data["segment"]),
            offset=int(data["offset"]),
            index=int(data.get("index", 0)),
            token=data.get("token"),
        )

    @classmethod
    def from_offset(cls, offset: int) -> "SourcePosition":
        """Position of a single-segment log (topics, in-memory logs)."""
        return cls(segment=0, offset=offset)

    def __str__(self) -> str:
        return f"{self.segment}:{self.offset}:{self.index}"


class StartPosition(str, Enum):
    """
    Sentinels for a fresh start.

    INITIAL reads a consistent snapshot of the captured tables before streaming
    the log from the snapshot point; sources without snapshots read from the
    earliest record instead.
    """

    EARLIEST = "earliest"
    LATEST = "latest"
    INITIAL = "initial"


ReadFrom = Union[SourcePosition, StartPosition]


def position_lag(head: Optional[SourcePosition], confirmed: Optional[SourcePosition]) -> Optional[int]:
    """
    Distance between the source head and a confirmed position.

    Returns None when it cannot be expressed as a single number (unknown head, or
    positions in different log segments).
    """
    if head is None:
        return None
    if confirmed is None:
        return head.offset if head.segment == 0 else None
    if head.segment != confirmed.segment:
        return None
    return max(0, head.offset - confirmed.offset)


class Operation(str, Enum):
    """Row-level change kinds."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, order=True)
class TableId:
    """Stable identifier of a source table."""

    schema: str
    name: str

    @classmethod
    def parse(cls, value: str) -> "TableId":
        schema, sep, name = value.partition(".")
        if not sep or not schema or not name:
            raise ValueError(f"Invalid table id '{value}': expected schema.table")
        return cls(schema=schema, name=name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class RawChangeRecord:
    """One record of the source's ordered change log, before decoding."""

    position: SourcePosition
    payload: Optional[Dict[str, Any]]
    received_at: datetime = field(default_factory=utc_now, compare=False)


@dataclass(frozen=True)
class ChangeEvent:
    """Immutable row-level change."""

    source_position: SourcePosition
    table_id: TableId
    operation: Operation
    before_image: Optional[Mapping[str, Any]] = None
    after_image: Optional[Mapping[str, Any]] = None
    commit_timestamp: Optional[datetime] = None
    origin_position: Optional[SourcePosition] = None

    def __post_init__(self) -> None:
        op = self.operation
        if op is Operation.INSERT and (self.after_image is None or self.before_image is not None):
            raise SchemaError("INSERT requires an after image and no before image")
        if op is Operation.UPDATE and (self.after_image is None or self.before_image is None):
            raise SchemaError("UPDATE requires both before and after images")
        if op is Operation.DELETE and (self.before_image is None or self.after_image is not None):
            raise SchemaError("DELETE requires a before image and no after image")
        if self.before_image is not None:
            object.__setattr__(self, "before_image", MappingProxyType(dict(self.before_image)))
        if self.after_image is not None:
            object.__setattr__(self, "after_image", MappingProxyType(dict(self.after_image)))

    @property
    def row_image(self) -> Mapping[str, Any]:
        """The image identifying the row: after image, or before image for deletes."""
        return self.after_image if self.after_image is not None else self.before_image  # type: ignore

    def primary_key(self, columns: Sequence[str]) -> Tuple[Any, ...]:
        """
        Extract the primary key value.

        Args:
            columns: Primary key column names

        Returns:
            Tuple of key values

        Raises:
            SchemaError: If a key column is missing from the row image
        """
        image = self.row_image
        missing = [c for c in columns if c not in image]
        if missing:
            raise SchemaError(f"{self.table_id} event at {self.source_position} is missing key columns {missing}")
        return tuple(image[c] for c in columns)

    def changed_fields(self) -> Sequence[str]:
        """Columns whose value differs between the before and after images."""
        if self.operation is not Operation.UPDATE:
            return []
        before = self.before_image or {}
        return [name for name, value in (self.after_image or {}).items() if before.get(name) != value]
