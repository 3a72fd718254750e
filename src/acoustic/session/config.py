"""Acquisition session configuration.

SessionConfig gathers every tunable of both acquisition modes. Defaults
reproduce the reference setup: 10k rays / 5 bounces per realtime frame,
100k rays / 40 bounces over 50 reference iterations, 1000 bins of 1 ms.

Example:
    >>> from src.acoustic.session.config import SessionConfig
    >>> config = SessionConfig(scene_name="shoebox", realtime_frame_budget=60)
    >>> config.validate()
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

# Threads per workgroup of the compute kernel
WORKGROUP_SIZE = 64


class SessionConfigError(ValueError):
    """Raised when the session cannot start with the given setup."""


class AcquisitionMode(str, Enum):
    """Acquisition mode selected at startup."""

    REALTIME = "realtime"
    REFERENCE = "reference"


def workgroups_for(rays: int, workgroup_size: int = WORKGROUP_SIZE) -> int:
    """Number of workgroups needed to launch ``rays`` threads."""
    return math.ceil(rays / workgroup_size)


@dataclass
class ConvergencePolicy:
    """Optional early stop for reference acquisition.

    When enabled, the reference loop stops once the relative change between
    consecutive RT60 estimates drops below ``threshold`` (0.01 = 1%).
    Disabled by default: the loop runs for all iterations.
    """

    enabled: bool = False
    threshold: float = 0.01

    def converged(self, previous: float | None, current: float | None) -> bool:
        if not self.enabled or previous is None or current is None or previous <= 0.0:
            return False
        return abs(current - previous) / previous < self.threshold


@dataclass
class SessionConfig:
    """Settings for an acquisition session.

    Attributes:
        scene_name: Identifier written to every log record.
        mode: Mode entered by AcquisitionSession.start().
        rays / max_reflections: Realtime dispatch size and bounce limit.
        reference_rays / reference_max_reflections: Reference dispatch
            size and bounce limit.
        reference_max_iterations: Reference iterations to average.
        convergence: Optional reference early-stop policy.
        ir_bin_count / ir_bin_size_ms: IR layout shared with the kernel.
        energy_scale: Fixed-point scale of the kernel's energy counters.
        speed_of_sound: m/s.
        source_position / listener_position / listener_radius: Acoustic
            endpoints passed to the kernel.
        acoustic_update_hz: Rate of the slow geometry refresh + refit.
        update_every_frame: Dispatch on every tick; otherwise wait
            1 / acoustic_update_hz between dispatches.
        realtime_frame_budget: Frames dispatched before the realtime run
            terminates itself.
    """

    scene_name: str = "scene"
    mode: AcquisitionMode = AcquisitionMode.REALTIME

    rays: int = 10_000
    max_reflections: int = 5

    reference_rays: int = 100_000
    reference_max_reflections: int = 40
    reference_max_iterations: int = 50
    convergence: ConvergencePolicy = field(default_factory=ConvergencePolicy)

    ir_bin_count: int = 1000
    ir_bin_size_ms: float = 1.0
    energy_scale: float = 1_000_000.0

    speed_of_sound: float = 343.0
    source_position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    listener_position: tuple[float, float, float] = (1.0, 0.0, 0.0)
    listener_radius: float = 0.15

    acoustic_update_hz: float = 10.0
    update_every_frame: bool = True
    realtime_frame_budget: int = 300

    @property
    def acoustic_update_interval(self) -> float:
        """Seconds between slow updates (rate floored at 1 Hz)."""
        return 1.0 / max(self.acoustic_update_hz, 1.0)

    def validate(self) -> None:
        """Check settings for consistency.

        Raises:
            SessionConfigError: On the first invalid setting.
        """
        positive_ints = {
            "rays": self.rays,
            "reference_rays": self.reference_rays,
            "reference_max_iterations": self.reference_max_iterations,
            "ir_bin_count": self.ir_bin_count,
            "realtime_frame_budget": self.realtime_frame_budget,
        }
        for name, value in positive_ints.items():
            if value <= 0:
                raise SessionConfigError(f"{name} must be positive, got {value}")

        for name, value in (
            ("max_reflections", self.max_reflections),
            ("reference_max_reflections", self.reference_max_reflections),
        ):
            if value < 0:
                raise SessionConfigError(f"{name} must be non-negative, got {value}")

        positive_floats = {
            "ir_bin_size_ms": self.ir_bin_size_ms,
            "energy_scale": self.energy_scale,
            "speed_of_sound": self.speed_of_sound,
            "acoustic_update_hz": self.acoustic_update_hz,
        }
        for name, value in positive_floats.items():
            if not value > 0.0:
                raise SessionConfigError(f"{name} must be positive, got {value}")

        if self.listener_radius < 0.0:
            raise SessionConfigError(f"listener_radius must be non-negative, got {self.listener_radius}")
        if self.convergence.threshold <= 0.0:
            raise SessionConfigError(
                f"convergence threshold must be positive, got {self.convergence.threshold}"
            )
        for name, position in (
            ("source_position", self.source_position),
            ("listener_position", self.listener_position),
        ):
            if len(position) != 3:
                raise SessionConfigError(f"{name} must have 3 components, got {len(position)}")

        if not isinstance(self.mode, AcquisitionMode):
            try:
                self.mode = AcquisitionMode(self.mode)
            except ValueError as err:
                raise SessionConfigError(f"Unknown acquisition mode: {self.mode!r}") from err
