"""BVH validation against the brute-force oracle.

Two checks are provided:

    - check_bvh_bounds: structural check that every node box contains its
      children (internal nodes) or member triangles (leaves).
    - validate_bvh: randomized ray test comparing BVH traversal with the
      brute-force scan, batch by batch, stopping at the first mismatch.

Example:
    >>> from src.acoustic.geometry.validation import validate_bvh
    >>> report = validate_bvh(builder, nodes, origin=(1.0, 1.5, 2.0))
    >>> assert report.passed, report.describe()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from src.acoustic.geometry.bvh import BVHBuilder, BVHNodes

logger = logging.getLogger(__name__)

# Allowed distance disagreement between BVH and brute-force hits
DISTANCE_TOLERANCE = 1e-3


def random_unit_vectors(count: int, rng: np.random.Generator) -> npt.NDArray[np.float64]:
    """Uniformly distributed directions on the unit sphere, shape (count, 3)."""
    v = rng.normal(size=(count, 3))
    norms = np.linalg.norm(v, axis=1, keepdims=True)
    return v / np.maximum(norms, 1e-12)


def check_bvh_bounds(
    nodes: BVHNodes,
    triangle_indices: npt.ArrayLike,
    triangles: npt.ArrayLike,
    tolerance: float = 1e-5,
) -> list[str]:
    """List every node whose box fails to contain what it should.

    Returns:
        Human-readable problem descriptions; empty when the hierarchy is
        consistent.
    """
    problems: list[str] = []
    tris = np.asarray(triangles)
    indices = np.asarray(triangle_indices)

    for index, node in enumerate(nodes):
        lo = node["bounds_min"] - tolerance
        hi = node["bounds_max"] + tolerance
        if node["triangle_count"] > 0:
            first = int(node["first_triangle"])
            members = tris[indices[first : first + int(node["triangle_count"])]].reshape(-1, 3)
            if np.any(members < lo) or np.any(members > hi):
                problems.append(f"leaf {index} does not contain its triangles")
        else:
            for child in (int(node["left_child"]), int(node["right_child"])):
                if child <= index or child >= len(nodes):
                    problems.append(f"node {index} has invalid child index {child}")
                    continue
                c = nodes[child]
                if np.any(c["bounds_min"] < lo) or np.any(c["bounds_max"] > hi):
                    problems.append(f"node {index} does not contain child {child}")
    return problems


@dataclass
class ValidationReport:
    """Outcome of a randomized BVH validation run.

    Attributes:
        rays_tested: Number of rays compared before stopping.
        seed: Seed of the batch that was running when the run stopped.
        batch: Batch index of the first mismatch, or -1.
        ray: Ray index within that batch, or -1.
        brute_hit / bvh_hit / brute_t / bvh_t: Details of the mismatch.
    """

    rays_tested: int
    seed: int
    batch: int = -1
    ray: int = -1
    brute_hit: bool = False
    bvh_hit: bool = False
    brute_t: float = float("nan")
    bvh_t: float = float("nan")

    @property
    def passed(self) -> bool:
        return self.batch < 0

    def describe(self) -> str:
        if self.passed:
            return f"Passed {self.rays_tested} rays tested, 0 errors"
        return (
            f"Mismatch! seed={self.seed}, batch={self.batch}, ray={self.ray}, "
            f"bruteHit={self.brute_hit}, bvhHit={self.bvh_hit}, "
            f"bruteT={self.brute_t}, bvhT={self.bvh_t}"
        )


def results_agree(brute_hit: bool, brute_t: float, bvh_hit: bool, bvh_t: float) -> bool:
    """Whether a BVH result matches the brute-force oracle."""
    if brute_hit != bvh_hit:
        return False
    return not brute_hit or abs(brute_t - bvh_t) <= DISTANCE_TOLERANCE


def validate_bvh(
    builder: BVHBuilder,
    nodes: BVHNodes,
    origin: npt.ArrayLike,
    batches: int = 100,
    rays_per_batch: int = 1000,
    seed: int | None = None,
) -> ValidationReport:
    """Fire random rays from ``origin`` through both paths and compare.

    Each batch draws its own seed from a master generator so a failing batch
    can be replayed on its own.

    Args:
        builder: Builder holding the triangles and permutation.
        nodes: Node arena produced by the builder.
        origin: Common ray origin.
        batches: Number of batches.
        rays_per_batch: Rays per batch.
        seed: Master seed; None draws fresh entropy.

    Returns:
        A ValidationReport; report.passed is False on the first mismatch.
    """
    master = np.random.default_rng(seed)
    logger.info("[BVH TEST] Starting validation...")

    tested = 0
    batch_seed = 0
    for batch in range(batches):
        batch_seed = int(master.integers(0, 2**31 - 1))
        directions = random_unit_vectors(rays_per_batch, np.random.default_rng(batch_seed))
        for ray, direction in enumerate(directions):
            brute_hit, brute_t = builder.brute_force_intersect(origin, direction)
            bvh_hit, bvh_t = builder.intersect(nodes, origin, direction)
            tested += 1
            if not results_agree(brute_hit, brute_t, bvh_hit, bvh_t):
                report = ValidationReport(
                    rays_tested=tested,
                    seed=batch_seed,
                    batch=batch,
                    ray=ray,
                    brute_hit=brute_hit,
                    bvh_hit=bvh_hit,
                    brute_t=brute_t,
                    bvh_t=bvh_t,
                )
                logger.error("[BVH TEST] %s", report.describe())
                return report

    report = ValidationReport(rays_tested=tested, seed=batch_seed)
    logger.info("[BVH TEST] %s", report.describe())
    return report
