"""Deterministic bucketing.

A 32-bit FNV-1a hash of a seed string is normalized by 2**32 into a
position in [0, 1). The salted form composes the seed as
``salt:version:<user id><email>:<experiment key>`` so that changing the
salt or version re-randomizes every assignment at once.
"""

from dataclasses import dataclass

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
UINT32_MASK = 0xFFFFFFFF

DEFAULT_SALT = "ablib-dev"
DEFAULT_VERSION = 1


@dataclass(frozen=True)
class HashingConfig:
    salt: str = DEFAULT_SALT
    version: int = DEFAULT_VERSION


def fnv1a_32(data: str) -> int:
    """32-bit FNV-1a over the UTF-8 bytes of `data`."""
    h = FNV_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & UINT32_MASK
    return h


def bucket(seed: str) -> float:
    """Map a seed string to a stable float in [0, 1)."""
    return fnv1a_32(seed) / 2**32


def salted_seed(user_id: str, email: str, experiment_key: str, config: HashingConfig) -> str:
    return f"{config.salt}:{config.version}:{user_id}{email}:{experiment_key}"


def bucket_with_salt(
    user_id: str, email: str, experiment_key: str, config: HashingConfig = HashingConfig()
) -> float:
    return bucket(salted_seed(user_id, email, experiment_key, config))
