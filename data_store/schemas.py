"""Schema normalization for gimbal telemetry samples to DataFrame format.

Column names follow the drive's axis naming (Tr = traverse, El = elevation)
so recorded frames line up with the drive tooling.
"""

from typing import Any, Dict

from gimbal_lib.models import TelemetrySample

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "time_ms": float,  # Elapsed since recording started
    "system_mode": float,
    "Tr_angle": float,
    "Tr_velocity": float,
    "Tr_current": float,
    "El_angle": float,
    "El_velocity": float,
    "El_current": float,
}


def sample_to_row(sample: TelemetrySample, elapsed_ms: float) -> Dict[str, Any]:
    """Convert a TelemetrySample to a DataFrame row dictionary.

    Args:
        sample: A validated sample from the telemetry poller
        elapsed_ms: Milliseconds since recording started

    Returns:
        Dictionary with all SCHEMA keys, ready for DataFrame append

    Raises:
        ValueError: If the sample is incomplete
    """
    if not sample.is_valid:
        raise ValueError(f"Sample missing telemetry fields: {sample}")

    return {
        "time_ms": float(elapsed_ms),
        "system_mode": sample.system_mode,
        "Tr_angle": sample.pos_tr,
        "Tr_velocity": sample.vel_tr,
        "Tr_current": sample.cur_tr,
        "El_angle": sample.pos_el,
        "El_velocity": sample.vel_el,
        "El_current": sample.cur_el,
    }
