"""Short random tags that namespace the images pushed by a single run."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Optional, Tuple

CHARSET = "abcdefghijklmnopqrstuvwxyz0123456789"
DEFAULT_TAG_LENGTH = 6

_rng = random.Random(time.time_ns())


def generate_identifier(length: int, rng: Optional[random.Random] = None) -> str:
    """Return ``length`` characters drawn uniformly from :data:`CHARSET`."""

    if length < 1:
        raise ValueError(f"Identifier length must be at least 1, got {length}")
    source = rng if rng is not None else _rng
    return "".join(source.choice(CHARSET) for _ in range(length))


@dataclass(frozen=True)
class RunIdentifiers:
    """Tags generated once at start-up and shared by every stage of a run."""

    bundle_tags: Tuple[str, ...]
    index_tag: str

    @classmethod
    def generate(
        cls,
        bundle_count: int,
        *,
        length: int = DEFAULT_TAG_LENGTH,
        seed: Optional[int] = None,
    ) -> "RunIdentifiers":
        if bundle_count < 1:
            raise ValueError("At least one bundle tag is required")
        rng = random.Random(time.time_ns() if seed is None else seed)
        bundle_tags = tuple(generate_identifier(length, rng) for _ in range(bundle_count))
        return cls(bundle_tags=bundle_tags, index_tag=generate_identifier(length, rng))
