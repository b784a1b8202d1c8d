"""DataFrame recording layer for gimbal telemetry."""

from data_store.schemas import SCHEMA, sample_to_row
from data_store.store import TelemetryStore

__all__ = ["SCHEMA", "sample_to_row", "TelemetryStore"]
