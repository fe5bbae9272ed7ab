"""
Modules that talk to remote storage providers.

Providers differ wildly in how their APIs are structured. Some expose one endpoint per
operation, others accept batches of named sub-requests in a single POST. Both are hidden
behind the RemoteRepository interface, which offers the same capabilities with the same
RemoteResult shape regardless of the wire protocol.

The remote side is only eventually consistent: items that were just deleted or moved
keep showing up in listings for a short while. Repositories therefore remember recent
deletions and retry affected reads until the results have caught up (see 'reconcile').
Derived state that is expensive to look up, like the public links of shared items, is
memoized for a short time in a TtlCache.
"""

from cloudbridge.config import Config

from .batched import BatchedRepository
from .cached import TtlCache
from .common import (
    NotImplementedCapabilityError,
    RemoteError,
    RemoteResult,
    TransientNetworkError,
    UnauthorizedError,
)
from .repository import RemoteRepository
from .rest import RestRepository
from .stream import RangeStream

__all__ = [
    "BatchedRepository",
    "create_repository",
    "NotImplementedCapabilityError",
    "RangeStream",
    "RemoteError",
    "RemoteRepository",
    "RemoteResult",
    "RestRepository",
    "TransientNetworkError",
    "TtlCache",
    "UnauthorizedError",
]


def create_repository(config: Config) -> RemoteRepository:
    """Create a repository for the provider named in the configuration."""
    if config.provider == "batched":
        return BatchedRepository(config.http, config.reconcile, config.link_ttl)
    elif config.provider == "rest":
        return RestRepository(config.http, config.reconcile, config.link_ttl)
    else:
        raise ValueError(f"unknown provider {config.provider}")
