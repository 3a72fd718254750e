"""Test doubles for the acquisition session.

FakeDispatcher records every call the session makes and lets tests decide
when (and how) each dispatch completes. ManualClock replaces the session's
time source so slow-update timing is deterministic.
"""

from dataclasses import dataclass, field

import numpy as np

from src.acoustic.analysis.ir import ENERGY_SCALE


def decay_counts(
    bin_count: int = 1000,
    tau_s: float = 0.1,
    reflection_bin: int = 20,
    gain: float = 1.0,
    bin_size_ms: float = 1.0,
) -> np.ndarray:
    """Fixed-point IR: direct sound in bins 0-2, silence, then an exponential tail."""
    energy = np.zeros(bin_count, dtype=np.float64)
    energy[:3] = gain
    t = np.arange(bin_count - reflection_bin) * bin_size_ms * 0.001
    energy[reflection_bin:] = gain * 0.5 * np.exp(-2.0 * t / tau_s)
    return np.round(energy * ENERGY_SCALE).astype(np.uint32)


class FakeReadback:
    """Readback completed by the test."""

    def __init__(self, frame_index, payload):
        self.frame_index = frame_index
        self._payload = payload
        self._done = False
        self._error = False

    @property
    def done(self):
        return self._done

    @property
    def has_error(self):
        return self._error

    def data(self):
        if not self._done or self._error:
            raise RuntimeError("Readback data not available")
        return self._payload

    def finish(self, error=False):
        self._done = True
        self._error = error


@dataclass
class PendingDispatch:
    frame_index: int
    readback: FakeReadback
    on_complete: object = None


@dataclass
class FakeDispatcher:
    """In-memory ComputeDispatcher.

    Attributes:
        auto_complete: Complete every dispatch immediately (callbacks fire
            synchronously from dispatch()).
        fail_frames: Frame indices whose readback reports an error.
        payload_factory: Maps a frame index to the uint32 counters returned.
    """

    auto_complete: bool = False
    fail_frames: set = field(default_factory=set)
    payload_factory: object = None

    calls: list = field(default_factory=list)
    uploads: list = field(default_factory=list)
    params: list = field(default_factory=list)
    dispatched: list = field(default_factory=list)
    pending: list = field(default_factory=list)
    release_count: int = 0

    def upload_geometry(self, triangles, nodes, triangle_indices):
        self.calls.append("upload_geometry")
        self.uploads.append((np.array(triangles), np.array(nodes), np.array(triangle_indices)))

    def set_params(self, params):
        self.calls.append("set_params")
        self.params.append(params)

    def reset_accumulation(self, template):
        self.calls.append("reset_accumulation")
        assert not np.any(template)

    def dispatch(self, frame_index, on_complete=None):
        self.calls.append("dispatch")
        self.dispatched.append(frame_index)
        payload = self.payload_factory(frame_index) if self.payload_factory else decay_counts()
        pending = PendingDispatch(frame_index, FakeReadback(frame_index, payload), on_complete)
        self.pending.append(pending)
        if self.auto_complete:
            self.complete(len(self.pending) - 1)
        return pending.readback

    def complete(self, position=0):
        """Finish the pending dispatch at ``position`` and fire its callback."""
        pending = self.pending.pop(position)
        pending.readback.finish(error=pending.frame_index in self.fail_frames)
        if pending.on_complete is not None:
            pending.on_complete(pending.readback)
        return pending

    def complete_all(self):
        while self.pending:
            self.complete(0)

    def release(self):
        self.calls.append("release")
        self.release_count += 1

    @property
    def released(self):
        return self.release_count > 0


class StaticGeometrySource:
    def __init__(self, triangles):
        self._triangles = np.asarray(triangles, dtype=np.float32)

    def triangles(self):
        return self._triangles


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
