"""Graph store factory types."""

from __future__ import annotations

from typing import Annotated, Union

import pydantic as pdt

import skein.store.memory as memory
import skein.store.sqlite as sqlite

StoreKind = Annotated[
    Union[memory.MemoryGraphStore, sqlite.SqliteGraphStore],
    pdt.Field(discriminator="kind"),
]
