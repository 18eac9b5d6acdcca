"""PyArrow schemas for exported feature and metrics tables.

PyArrow is the interchange format handed to the downstream training and
scoring pipeline. Training and real-time paths share ``FEATURE_SCHEMA``.
"""

from __future__ import annotations

import pyarrow as pa

FEATURE_SCHEMA = pa.schema(
    [
        pa.field("event_id", pa.string(), nullable=False),
        pa.field("max_component_size", pa.int64()),
        pa.field("max_component_diameter", pa.int64()),
        pa.field("max_component_velocity", pa.float64()),
        pa.field("distinct_component_count", pa.int64(), nullable=False),
    ]
)

METRICS_SCHEMA = pa.schema(
    [
        pa.field("event_id", pa.string(), nullable=False),
        pa.field("timestamp", pa.timestamp("us")),
        pa.field("component_size", pa.int64(), nullable=False),
        pa.field("component_diameter", pa.int64()),
        pa.field("component_velocity", pa.float64(), nullable=False),
    ]
)
