# =============================================================================
# skilllab_core/data/__init__.py
# Remote Store (Supabase)
# =============================================================================

from .supabase_client import (
    get_supabase_client,
    RemoteCollection,
    RemotePasswordStore,
    RemoteSnapshot,
    RemoteStoreClient,
    Subscription,
)

__all__ = [
    "get_supabase_client",
    "RemoteCollection",
    "RemotePasswordStore",
    "RemoteSnapshot",
    "RemoteStoreClient",
    "Subscription",
]
