# apishield/core/locks.py
"""
Sharded tables for process-wide security state.

The token table and the rate-limit window table are shared by every request
handler. Each table is split into a fixed number of shards, each guarded by
its own lock, so requests for unrelated keys never contend and no lock ever
spans the whole table.
"""

import threading
from typing import Dict, Generic, Hashable, Iterator, List, TypeVar

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')

DEFAULT_SHARD_COUNT = 64


class Shard(Generic[K, V]):
    """One lock and the slice of the table it guards"""

    __slots__ = ("lock", "items")

    def __init__(self):
        self.lock = threading.Lock()
        self.items: Dict[K, V] = {}


class ShardedTable(Generic[K, V]):
    """Dict-like table addressed by key hash; callers hold `shard.lock`"""

    def __init__(self, shard_count: int = DEFAULT_SHARD_COUNT):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._shards: List[Shard[K, V]] = [Shard() for _ in range(shard_count)]

    def shard(self, key: K) -> Shard[K, V]:
        return self._shards[hash(key) % len(self._shards)]

    def shards(self) -> Iterator[Shard[K, V]]:
        return iter(self._shards)

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.items.clear()

    def __len__(self) -> int:
        # Point-in-time estimate, shards are read without locking
        return sum(len(shard.items) for shard in self._shards)
