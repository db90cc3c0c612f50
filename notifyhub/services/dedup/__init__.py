from notifyhub.services.dedup.guard import Admission, DedupGuard, Lease, parse_channel_set
from notifyhub.services.dedup.stores import InMemoryLeaseStore, LeaseStore, RedisLeaseStore

__all__ = [
    "Admission",
    "DedupGuard",
    "Lease",
    "parse_channel_set",
    "LeaseStore",
    "InMemoryLeaseStore",
    "RedisLeaseStore",
]
