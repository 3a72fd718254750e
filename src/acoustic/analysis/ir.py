"""Impulse response analysis: first reflection and RT60.

An impulse response here is a sequence of non-negative energy values, one
per time bin of uniform width (in milliseconds). The compute kernel reports
it as fixed-point unsigned counters scaled by ENERGY_SCALE; decode_ir turns
those back into energies.

Metrics:
    first_reflection_ms: start of the first run of consecutive bins above
        1% of the peak, after skipping the first 5 ms of direct sound.
    rt60_seconds: Schroeder backward integration, dB conversion, monotonic
        clamp, least-squares fit over the -5 dB to -35 dB window and
        extrapolation of the fitted slope to -60 dB.

Both metrics are pure functions of the IR and the bin size. When no
meaningful value exists they return None rather than raising, so a single
bad frame never stalls acquisition.

Example:
    >>> from src.acoustic.analysis.ir import decode_ir, rt60_seconds
    >>> ir = decode_ir(raw_counts, bin_count=1000)
    >>> rt60 = rt60_seconds(ir, bin_size_ms=1.0)
"""

from __future__ import annotations

import math

import numpy as np
import numpy.typing as npt

# Fixed-point scale of the kernel's energy counters
ENERGY_SCALE = 1_000_000.0

# Leading window treated as direct sound by the first-reflection detector
DIRECT_SOUND_WINDOW_MS = 5.0

# Detection threshold relative to the peak, and its absolute floor
REFLECTION_THRESHOLD_RATIO = 0.01
REFLECTION_THRESHOLD_FLOOR = 1e-6

# Regression window on the Schroeder curve (dB)
RT60_FIT_UPPER_DB = -5.0
RT60_FIT_LOWER_DB = -35.0

# Floor applied before taking log10 of the normalized decay
DECAY_RATIO_FLOOR = 1e-20

# Minimum |m * sum(t^2) - sum(t)^2| for a usable fit
DEGENERATE_FIT_DENOMINATOR = 1e-6

FloatArray = npt.NDArray[np.float64]


def decode_ir(
    raw: npt.ArrayLike,
    energy_scale: float = ENERGY_SCALE,
    bin_count: int | None = None,
) -> FloatArray:
    """Convert fixed-point energy counters into an energy IR.

    Args:
        raw: Unsigned integer counters, one per bin.
        energy_scale: Divisor applied to every counter.
        bin_count: Optional output length. Longer inputs are truncated and
            shorter ones are zero-padded.

    Returns:
        The decoded IR as a float64 array.
    """
    counts = np.asarray(raw, dtype=np.float64).reshape(-1)
    if bin_count is None:
        return counts / energy_scale

    ir = np.zeros(bin_count, dtype=np.float64)
    n = min(bin_count, counts.size)
    ir[:n] = counts[:n] / energy_scale
    return ir


def first_reflection_ms(
    ir: npt.ArrayLike,
    bin_size_ms: float,
    consecutive_bins: int = 4,
) -> float | None:
    """Time of the first significant non-direct arrival.

    Args:
        ir: Energy per bin.
        bin_size_ms: Bin width in milliseconds.
        consecutive_bins: Minimum run length of bins at or above the
            threshold.

    Returns:
        Start time in milliseconds of the first qualifying run, or None if
        the IR is empty, entirely inside the direct-sound window, silent
        after it, or has no run long enough.
    """
    energy = np.asarray(ir, dtype=np.float64).reshape(-1)
    if energy.size == 0 or bin_size_ms <= 0.0:
        return None

    ignore_bins = math.ceil(DIRECT_SOUND_WINDOW_MS / bin_size_ms)
    if ignore_bins >= energy.size:
        return None

    tail = energy[ignore_bins:]
    peak = float(tail.max())
    if peak <= 0.0:
        return None

    threshold = max(peak * REFLECTION_THRESHOLD_RATIO, REFLECTION_THRESHOLD_FLOOR)

    run = 0
    for i in range(ignore_bins, energy.size):
        if energy[i] >= threshold:
            run += 1
            if run >= consecutive_bins:
                return (i - consecutive_bins + 1) * bin_size_ms
        else:
            run = 0
    return None


def schroeder_decay_db(ir: npt.ArrayLike) -> FloatArray | None:
    """Schroeder energy decay curve in dB, clamped to be non-increasing.

    The backward cumulative sum of energy is normalized by the total energy
    and converted to dB. Each value is then limited to the one before it,
    which removes integration noise bumps.

    Returns:
        The decay curve (0 dB at bin 0), or None if the IR is empty or has
        no positive energy.
    """
    energy = np.asarray(ir, dtype=np.float64).reshape(-1)
    if energy.size == 0:
        return None

    cumulative = np.cumsum(energy[::-1])[::-1]
    total = cumulative[0]
    if total <= 0.0:
        return None

    decay_db = 10.0 * np.log10(np.maximum(cumulative / total, DECAY_RATIO_FLOOR))
    return np.minimum.accumulate(decay_db)


def rt60_seconds(ir: npt.ArrayLike, bin_size_ms: float) -> float | None:
    """Reverberation time estimated with the Schroeder method.

    The decay curve is fitted with an ordinary least-squares line over the
    points between -5 dB and -35 dB (inclusive) and the slope is
    extrapolated to a 60 dB decay.

    Args:
        ir: Energy per bin.
        bin_size_ms: Bin width in milliseconds.

    Returns:
        RT60 in seconds, or None when fewer than two points fall in the
        fit window, the fit is degenerate, or the curve is not decaying.
    """
    decay_db = schroeder_decay_db(ir)
    if decay_db is None:
        return None

    in_window = (decay_db <= RT60_FIT_UPPER_DB) & (decay_db >= RT60_FIT_LOWER_DB)
    times = np.flatnonzero(in_window) * bin_size_ms * 0.001
    levels = decay_db[in_window]
    m = times.size
    if m < 2:
        return None

    sum_t = times.sum()
    sum_db = levels.sum()
    sum_t_db = np.dot(times, levels)
    sum_tt = np.dot(times, times)

    denominator = m * sum_tt - sum_t * sum_t
    if abs(denominator) < DEGENERATE_FIT_DENOMINATOR:
        return None

    slope = (m * sum_t_db - sum_t * sum_db) / denominator
    if slope >= 0.0:
        return None

    return float(-60.0 / slope)
