"""
Seed derivation and seeded PRNG

Seeds form a hierarchy derived from one base secret:
- experiment: shared by every participant of an experiment
- group: shared within a group (e.g. a matched cohort)
- participant: unique per participant; cannot be recomputed from the
  experiment seed without the participant identifier

Derivation is HKDF-SHA256 (scope as salt, identifier as info). The
generator is HMAC-SHA256 over a draw counter, so the same seed always
replays the same sequence.
"""
from typing import Callable, List, Sequence, TypeVar, Union
from enum import Enum
import hashlib
import hmac

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

T = TypeVar("T")

SEED_LENGTH = 32

# 53 bits fill a double's mantissa exactly, keeping draws in [0, 1)
_DRAW_BITS = 53
_DRAW_SCALE = float(1 << _DRAW_BITS)


class SeedScope(str, Enum):
    """Granularity at which a seed is derived"""
    EXPERIMENT = "experiment"
    GROUP = "group"
    PARTICIPANT = "participant"


def derive_seed(base_seed: Union[str, bytes], scope: Union[SeedScope, str], info: str) -> bytes:
    """
    Derive a 32-byte seed for a scope.

    Same inputs always give the same bytes; a different scope or info gives
    an unrelated seed.
    """
    scope = SeedScope(scope)
    ikm = base_seed.encode("utf-8") if isinstance(base_seed, str) else bytes(base_seed)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SEED_LENGTH,
        salt=scope.value.encode("utf-8"),
        info=info.encode("utf-8"),
    )
    return hkdf.derive(ikm)


def seeded_random(seed: bytes) -> Callable[[], float]:
    """
    Deterministic generator of uniform floats in [0, 1).

    Each call advances an internal counter and keys it through
    HMAC-SHA256 with the seed.
    """
    key = bytes(seed)
    counter = 0

    def draw() -> float:
        nonlocal counter
        digest = hmac.new(key, str(counter).encode("utf-8"), hashlib.sha256).digest()
        counter += 1
        value = int.from_bytes(digest[:8], "big") >> (64 - _DRAW_BITS)
        return value / _DRAW_SCALE

    return draw


def pick_index(rand: Callable[[], float], size: int) -> int:
    """Map one draw onto range(size)"""
    if size <= 0:
        raise ValueError("Cannot pick from an empty sequence")
    return min(int(rand() * size), size - 1)


def shuffled(items: Sequence[T], rand: Callable[[], float]) -> List[T]:
    """Fisher-Yates shuffle driven by the seeded generator"""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = pick_index(rand, i + 1)
        result[i], result[j] = result[j], result[i]
    return result
