"""Analysis module turning raw kernel output into acoustic metrics.

Components:
    ir: Fixed-point decoding, first-reflection detection and RT60
        estimation (Schroeder integration + linear regression)
    accumulator: Running-mean accumulation for reference acquisition

Analysis never raises on bad data; "no result" is reported as None.
"""

from .accumulator import IRAccumulator
from .ir import (
    ENERGY_SCALE,
    decode_ir,
    first_reflection_ms,
    rt60_seconds,
    schroeder_decay_db,
)

__all__ = [
    "IRAccumulator",
    "ENERGY_SCALE",
    "decode_ir",
    "first_reflection_ms",
    "rt60_seconds",
    "schroeder_decay_db",
]
