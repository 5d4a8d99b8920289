"""
Keyed asyncio locks for the key store.

Each user id gets a reader/writer lock and each session (or user pair)
gets a mutex. Locks live in weak dictionaries, so an idle key costs
nothing once nobody holds its lock.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import Callable, Hashable


class ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers"""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self):
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class KeyedLocks:
    """Hand out one lock object per key"""

    def __init__(self, factory: Callable = asyncio.Lock):
        self._factory = factory
        self._locks = weakref.WeakValueDictionary()

    def get(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._factory()
            self._locks[key] = lock
        return lock
