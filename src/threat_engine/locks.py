"""
Sharded locks for per-entity serialisation.

Keys hash onto a fixed set of shards; work on different shards proceeds in
parallel while all work on one key is serialised. Multi-key acquisition always
takes shards in ascending order so two callers can never deadlock.
"""

import threading
import zlib
from contextlib import contextmanager
from typing import Iterable, Iterator


class ShardedLocks:
    """A fixed pool of re-entrant locks addressed by key."""

    def __init__(self, shard_count: int = 16):
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._locks = [threading.RLock() for _ in range(shard_count)]

    @property
    def shard_count(self) -> int:
        return len(self._locks)

    def shard_of(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash()
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def for_key(self, key: str) -> threading.RLock:
        return self._locks[self.shard_of(key)]

    def shards_for(self, keys: Iterable[str]) -> list[int]:
        return sorted({self.shard_of(k) for k in keys})

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[list[int]]:
        """Hold every shard covering ``keys``; yields the held shard indexes."""
        shards = self.shards_for(keys)
        acquired: list[int] = []
        try:
            for index in shards:
                self._locks[index].acquire()
                acquired.append(index)
            yield shards
        finally:
            for index in reversed(acquired):
                self._locks[index].release()
