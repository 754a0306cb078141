"""Sync module - reads posted time from WiseTime and registers it in Allisa."""

from .allisa_client import AllisaClient
from .wisetime_client import WiseTimeClient
from .dispatcher import Dispatcher
from .mapper import PostingMapper
from .poller import Poller
from .sync_engine import CycleReport, SyncEngine
from .state_store import StateStore
from .tag_sync import TagSync
from .retry import RetryConfig, retry_with_backoff
from .protocols import (
    AllisaClientProtocol,
    PostingSourceProtocol,
    StateStoreProtocol,
    TagTargetProtocol,
)

__all__ = [
    "AllisaClient",
    "WiseTimeClient",
    "Dispatcher",
    "PostingMapper",
    "Poller",
    "CycleReport",
    "SyncEngine",
    "StateStore",
    "TagSync",
    "RetryConfig",
    "retry_with_backoff",
    "AllisaClientProtocol",
    "PostingSourceProtocol",
    "StateStoreProtocol",
    "TagTargetProtocol",
]
