"""Room acoustics ray-tracing core.

This package estimates first-reflection time and reverberation time (RT60)
of a triangulated scene by tracing rays from a sound source to a listener
on an external compute kernel, with support for:
- BVH build and in-place refit for moving geometry
- Exact ray/box and ray/triangle intersection with a brute-force oracle
- Impulse response analysis (first reflection, Schroeder RT60)
- Realtime and reference acquisition modes with CSV logging

Subpackages:
    geometry: Triangle store, mesh instances, BVH and intersection math
    analysis: Impulse response decoding, metrics and reference averaging
    session: Acquisition session state machine and its interfaces
    export: Measurement records and log sinks
    device: Taichi buffers and kernels mirroring the upload layout
"""

__version__ = "0.1.0"
