from .compute import RightsizingRule, ReservedInstanceRule, UnattachedElasticIpRule
from .storage import UnattachedVolumeRule, StorageTieringRule
from .idle import IdleResourceRule

__all__ = [
    "RightsizingRule", "ReservedInstanceRule", "UnattachedElasticIpRule",
    "UnattachedVolumeRule", "StorageTieringRule",
    "IdleResourceRule",
]
