"""Core data model for the event/entity graph.

Events are immutable interaction records. Entities are typed identifiers
keyed by their natural value; a single sum-typed ``Entity`` covers every
identifier kind. Derived state (precedence links, forest edges, metrics)
lives in the graph store, never on these objects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

import pydantic as pdt

EntityType = Literal[
    "credit_card",
    "ip",
    "email",
    "phone",
    "device",
    "session",
    "bank_account",
    "address",
]


class SkeinBaseModel(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    pass


class Entity(SkeinBaseModel):
    """An identifying entity shared between events.

    Example:
        ip = Entity(type="ip", key="10.0.0.5")
        card = Entity(type="credit_card", key="4111-xxxx-1111")
    """

    type: EntityType
    key: str

    @pdt.field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Entity key must not be empty")
        return v

    @property
    def label(self) -> str:
        """Stable string form, e.g. ``ip:10.0.0.5``."""
        return f"{self.type}:{self.key}"

    def __str__(self) -> str:
        return self.label


class Event(SkeinBaseModel):
    """An ingested interaction (transaction, login, signup, ...)."""

    id: str
    timestamp: datetime
    interaction_type: str
    amount: float | None = None

    @property
    def order_key(self) -> tuple[datetime, str]:
        """Chronological ordering key; ties broken by id."""
        return (self.timestamp, self.id)


class ComponentMetrics(SkeinBaseModel):
    """Snapshot of a component as it existed at one event's timestamp.

    Attributes:
        size: Number of events in the component.
        diameter: Event-level diameter of the micro-projection, or None
            when the projection has no edges.
        velocity: Arrivals after the first event per second of span.
    """

    size: int
    diameter: int | None
    velocity: float


class Merge(SkeinBaseModel):
    """A planned forest merge: ``event`` absorbs every head in ``heads``."""

    event_id: str
    heads: tuple[str, ...] = ()


class FeatureRecord(SkeinBaseModel):
    """Flat feature record consumed by the downstream model.

    Training and real-time extraction emit exactly this schema. Maxima are
    None when the event bridges no prior component.
    """

    event_id: str
    max_component_size: int | None = None
    max_component_diameter: int | None = None
    max_component_velocity: float | None = None
    distinct_component_count: int = 0
