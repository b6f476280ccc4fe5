"""Federation layer: routes one Repository contract to per-tag backends."""

from .router import FEDERATED_REPOSITORY_KIND, FederatedRepository

__all__ = [
    "FederatedRepository",
    "FEDERATED_REPOSITORY_KIND",
]
