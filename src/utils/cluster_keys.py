"""
Cluster-safe key construction.

Redis Cluster hashes only the part of a key between the first "{" and the
following "}". Every key built here starts with a constant hash tag, so all
keys of one area (a queue, the event log, the snapshot set) share a slot and
multi-key scripts and MULTI/EXEC blocks stay valid under sharding.
"""

from redis.crc import key_slot


def tagged_key(tag_prefix: str, *parts) -> str:
    """
    Join key parts under a hash tag prefix.

    Args:
        tag_prefix: Prefix carrying the hash tag, e.g. "{jobs}"
        *parts: Remaining key segments

    Returns:
        Key like "{jobs}:transcode:wait"
    """
    if not (tag_prefix.startswith("{") and tag_prefix.endswith("}") and len(tag_prefix) > 2):
        raise ValueError(f"Key prefix must be a non-empty hash tag, got {tag_prefix!r}")
    return ":".join([tag_prefix, *(str(part) for part in parts)])


def hash_slot(key: str) -> int:
    """Cluster slot (0-16383) a key maps to."""
    return key_slot(key.encode("utf-8"))
