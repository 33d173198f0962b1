"""
Tier Cascade Resolver

Pure functions deciding where a rejected request goes next: one tier down,
or back to the original requestor once tier 1 rejects.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import ValidationError


MIN_TIER = 1
MAX_TIER = 5


@dataclass(frozen=True)
class CascadeTarget:
    """Result of resolving a rejection at a given tier"""
    target_tier: Optional[int]
    returned_to_requestor: bool
    can_cascade_further: bool


def validate_tier(tier: int, max_tier: int = MAX_TIER) -> int:
    """Return ``tier`` unchanged or raise ValidationError if outside 1..max_tier"""
    if isinstance(tier, bool) or not isinstance(tier, int) or not MIN_TIER <= tier <= max_tier:
        raise ValidationError(f"Tier must be between {MIN_TIER} and {max_tier}, got {tier!r}",
                              field="tier")
    return tier


def cascade_target(tier: int) -> CascadeTarget:
    """
    Resolve the cascade target for a rejection at ``tier``.

    Tier 1 returns the request to the requestor; any higher tier hands it to
    the tier directly below.
    """
    validate_tier(tier)
    if tier == 1:
        return CascadeTarget(target_tier=None, returned_to_requestor=True, can_cascade_further=False)

    target = tier - 1
    return CascadeTarget(target_tier=target, returned_to_requestor=False,
                         can_cascade_further=target > 1)


def rejection_cascade_path(start_tier: int) -> List[Tuple[Optional[int], str]]:
    """Labelled path a rejection can take from ``start_tier`` down to the requestor"""
    validate_tier(start_tier)
    path: List[Tuple[Optional[int], str]] = [
        (tier, f"Tier {tier}") for tier in range(start_tier, 0, -1)
    ]
    path.append((None, "Requestor"))
    return path
