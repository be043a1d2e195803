"""Core data model for vectorsync.

Defines the index definition, versioned vector records, normalized change
events and search results shared by every service. Keys are opaque ordered
byte strings; vectors are read-only float32 numpy arrays.
"""

from __future__ import annotations

import math
import struct
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Literal, NamedTuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PrimaryKey = bytes
Position = int
Metadata = dict[str, Any]


class Metric(str, Enum):
    """Distance metrics supported by the ANN capability."""

    COS = "cos"
    L2SQ = "l2sq"
    IP = "ip"


class Origin(IntEnum):
    """Where a version stamp came from.

    Backfill rows sort before stream events at the same position, so a row
    scanned under watermark W loses to the stream event at W but wins over
    every event before it.
    """

    BACKFILL = 0
    STREAM = 1


class Version(NamedTuple):
    """Per-key version stamp compared lexicographically."""

    position: Position
    origin: Origin = Origin.STREAM

    @classmethod
    def from_stream(cls, position: Position) -> Version:
        return cls(position, Origin.STREAM)

    @classmethod
    def from_backfill(cls, watermark: Position) -> Version:
        return cls(watermark, Origin.BACKFILL)


class IndexDefinition(BaseModel):
    """Immutable description of one vector index over a table column."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique index name")
    table: str = Field(description="Source table identifier (keyspace.table)")
    vector_column: str = Field(description="Column holding the embedding")
    dimension: int = Field(gt=0, le=65536, description="Vector dimensionality")
    metric: Metric = Field(default=Metric.COS, description="Distance metric")
    primary_key_columns: tuple[str, ...] = Field(
        default=("id",), description="Primary key column(s), in key order"
    )
    metadata_columns: tuple[str, ...] = Field(
        default=(), description="Scalar columns copied into record metadata"
    )
    connectivity: int = Field(default=16, ge=2, le=512)
    expansion_add: int = Field(default=128, ge=1)
    expansion_search: int = Field(default=64, ge=1)
    quantization: Literal["i8", "f16", "f32", "f64"] = Field(default="f32")

    @field_validator("name", "table", "vector_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Identifier cannot be empty")
        return v.strip()

    @field_validator("primary_key_columns")
    @classmethod
    def validate_primary_key(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("At least one primary key column is required")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate primary key columns: {list(v)}")
        return v

    @model_validator(mode="after")
    def validate_columns_disjoint(self) -> IndexDefinition:
        if self.vector_column in self.primary_key_columns:
            raise ValueError(
                f"Vector column '{self.vector_column}' cannot be part of the primary key"
            )
        return self

    @classmethod
    def default_name(cls, table: str, vector_column: str) -> str:
        return f"{table.replace('.', '_')}_{vector_column}_idx"


@dataclass(frozen=True)
class VectorRecord:
    """One live vector in an index, stamped with the version that wrote it."""

    key: PrimaryKey
    vector: np.ndarray
    version: Version
    metadata: Metadata = field(default_factory=dict)


class ChangeKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized mutation produced by the change mapper."""

    kind: ChangeKind
    key: PrimaryKey
    partition: str
    position: Position
    vector: np.ndarray | None = None
    metadata: Metadata = field(default_factory=dict)
    timestamp: float = 0.0
    origin: Origin = Origin.STREAM

    @property
    def version(self) -> Version:
        return Version(self.position, self.origin)

    @property
    def is_tombstone(self) -> bool:
        return self.kind is ChangeKind.DELETE


@dataclass(frozen=True)
class RawChange:
    """Raw change record as delivered by a change stream.

    ``operation`` is either a name (``insert``, ``update``, ``delete`` ...) or
    a numeric CDC operation code. ``columns`` holds every column value the
    source shipped with the record, primary key columns included.
    """

    operation: str | int
    columns: dict[str, Any]
    partition: str
    position: Position
    timestamp: float = 0.0


@dataclass(frozen=True)
class ScanPage:
    """One page of a paginated table scan."""

    rows: list[dict[str, Any]]
    next_page_token: str | None = None


@dataclass(frozen=True)
class SearchResult:
    """Single ranked search hit; higher score is closer."""

    key: PrimaryKey
    score: float
    metadata: Metadata = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key.hex(), "score": self.score, "metadata": self.metadata}


class ResultStatus(str, Enum):
    """Consistency tag attached to every query response."""

    FRESH = "fresh"
    PARTIAL = "partial"
    STALE = "stale"
    DEGRADED = "degraded"


@dataclass
class SearchQuery:
    """Query vector plus parameters for the query service."""

    index_name: str
    vector: Any
    k: int = 10
    filter: Metadata | None = None
    max_lag: int | None = None


@dataclass
class SearchResponse:
    results: list[SearchResult]
    status: ResultStatus
    generation: int = 0
    lag: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "status": {"value": self.status.value, "lag": self.lag},
            "generation": self.generation,
        }


# Order-preserving key encoding. Each component is a type tag followed by a
# payload whose byte order matches the value order within that type.
_TAG_NULL = 0x00
_TAG_INT = 0x01
_TAG_FLOAT = 0x02
_TAG_STR = 0x03
_TAG_BYTES = 0x04
_TAG_UUID = 0x05


def _escape_terminated(payload: bytes) -> bytes:
    return payload.replace(b"\x00", b"\x00\xff") + b"\x00\x00"


def _encode_component(value: Any) -> bytes:
    if value is None:
        return bytes([_TAG_NULL])
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        if not -(2**63) <= value < 2**63:
            raise ValueError(f"Integer key component out of range: {value}")
        return bytes([_TAG_INT]) + (value + 2**63).to_bytes(8, "big")
    if isinstance(value, float):
        if math.isnan(value):
            raise ValueError("NaN cannot be used as a key component")
        bits = struct.unpack(">Q", struct.pack(">d", value))[0]
        bits = bits ^ 0xFFFFFFFFFFFFFFFF if bits >> 63 else bits | (1 << 63)
        return bytes([_TAG_FLOAT]) + bits.to_bytes(8, "big")
    if isinstance(value, str):
        return bytes([_TAG_STR]) + _escape_terminated(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes([_TAG_BYTES]) + _escape_terminated(bytes(value))
    if isinstance(value, uuid.UUID):
        return bytes([_TAG_UUID]) + value.bytes
    raise TypeError(f"Unsupported key component type: {type(value).__name__}")


def encode_key(values: tuple[Any, ...] | list[Any] | Any) -> PrimaryKey:
    """Encode primary key column values into an ordered byte key.

    Keys of the same shape compare in the same order as their value tuples.
    """
    if not isinstance(values, (tuple, list)):
        values = (values,)
    return b"".join(_encode_component(v) for v in values)
