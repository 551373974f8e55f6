"""
Deterministic experiment bucketing.

A variant is derived from SHA-256 of "{experiment}:{seed}", so the same seed
(profile id, user id) always lands in the same bucket without storing an
assignment table. The hash algorithm and prefix width are part of the
contract: changing either reshuffles every bucket. Changing the variants
list moves bucket boundaries for all seeds as well.
"""

import hashlib
from typing import Sequence

from models import VariantAssignment

DEFAULT_VARIANTS = ("control", "treatment")

# Hex chars of the digest read as an unsigned integer (32 bits)
HASH_PREFIX_CHARS = 8


def bucket_index(experiment: str, seed: str, buckets: int) -> int:
    """Map (experiment, seed) onto [0, buckets)."""
    if buckets < 1:
        raise ValueError("buckets must be >= 1")
    digest = hashlib.sha256(f"{experiment}:{seed}".encode("utf-8")).hexdigest()
    return int(digest[:HASH_PREFIX_CHARS], 16) % buckets


def assign_variant(
    experiment: str,
    seed,
    variants: Sequence[str] = DEFAULT_VARIANTS,
) -> VariantAssignment:
    """
    Assign a stable variant for a seed within an experiment.

    Args:
        experiment: Experiment name
        seed: Stable per-entity value (per profile, never per request)
        variants: Ordered variant names

    Returns:
        VariantAssignment(experiment, seed, variant)
    """
    if not variants:
        raise ValueError("At least one variant is required")
    seed = str(seed)
    index = bucket_index(experiment, seed, len(variants))
    return VariantAssignment(experiment=experiment, seed=seed, variant=variants[index])
