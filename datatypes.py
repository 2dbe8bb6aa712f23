# --------------------------- Per-run allocation context ---------------------------


from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from allocation_types import AllocationSettings, resolve_settings
from domain_types import CapacityEntry
from requirements import build_id_to_key, normalize_exclusions


@dataclass
class AllocationContext:
    """
    Settings resolved once per run and shared by every placement in it.

    Attributes
    ----------
    exclusions   : normalized product-key substrings that consume no capacity
    id_to_key    : product id -> capacity key (strict-id first pass of matching)
    lock_timeout : seconds to wait for a container lock before giving up
    settings     : the fully resolved settings mapping
    """
    exclusions: Tuple[str, ...]
    id_to_key: Dict[str, str] = field(default_factory=dict)
    lock_timeout: float = 30.0
    settings: AllocationSettings = field(default_factory=dict)  # type: ignore[assignment]

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AllocationSettings],
        capacity_entries: Iterable[CapacityEntry] = (),
    ) -> "AllocationContext":
        resolved = resolve_settings(settings)
        return cls(
            exclusions=normalize_exclusions(resolved["excluded_product_terms"]),
            id_to_key=build_id_to_key(capacity_entries),
            lock_timeout=float(resolved["lock_timeout_seconds"]),
            settings=resolved,
        )
