"""Device (Taichi) mirror of the geometry upload layout.

Components:
    buffers: Taichi fields for triangles, BVH nodes and the permutation
    kernels: Device intersection functions and the batched trace() query

Taichi must be initialized (ti.init) before importing these modules.
"""
