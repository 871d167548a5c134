# reliefdispatch/deps.py
from functools import lru_cache

from reliefdispatch.core.config import settings
from reliefdispatch.core.events import EventEmitter
from reliefdispatch.services.allocation import Allocator
from reliefdispatch.services.dispatcher import DispatchScheduler


@lru_cache(maxsize=1)
def get_repo():
    if settings.use_mongo:
        from reliefdispatch.db import get_db
        from reliefdispatch.repos.mongo import MongoRepo
        return MongoRepo(get_db())
    from reliefdispatch.repos.inmemory import InMemoryRepo
    return InMemoryRepo()


@lru_cache(maxsize=1)
def get_events() -> EventEmitter:
    return EventEmitter(get_repo())


@lru_cache(maxsize=1)
def get_allocator() -> Allocator:
    return Allocator(get_repo(), get_events())


@lru_cache(maxsize=1)
def get_scheduler() -> DispatchScheduler:
    return DispatchScheduler(get_repo(), get_allocator())
