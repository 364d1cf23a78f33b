"""
Read-only object caches and the loader that keeps them fresh.

Readers always see one consistent snapshot; the loader swaps in a new one
after every relist.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Iterable, List, Optional, Tuple, Type, TypeVar

import httpx
from loguru import logger
from pydantic import ValidationError

from kubeguard.admission.review import GroupVersionResource
from kubeguard.clients import KubeClient
from kubeguard.exceptions import KubeApiError, NotFoundError
from kubeguard.models import KubeObject

T = TypeVar("T", bound=KubeObject)

IndexFunc = Callable[[KubeObject], List[str]]


@dataclass
class _Snapshot:
    objects: Dict[Tuple[str, str], KubeObject] = field(default_factory=dict)
    indexes: Dict[str, Dict[str, List[KubeObject]]] = field(default_factory=dict)


class ObjectCache(Generic[T]):
    """In-memory store for one resource kind, keyed by namespace and name."""

    def __init__(self, model: Type[T], resource: str, objects: Iterable[T] = ()):
        self.model = model
        self.resource = resource
        self._indexers: Dict[str, IndexFunc] = {}
        self._snapshot = _Snapshot()
        self.replace(objects)

    def get(self, name: str, namespace: str = "") -> T:
        obj = self._snapshot.objects.get((namespace, name))
        if obj is None:
            raise NotFoundError(self.resource, name, namespace)
        return obj

    def list(self, namespace: Optional[str] = None) -> List[T]:
        objects = self._snapshot.objects.values()
        if namespace is None:
            return list(objects)
        return [obj for obj in objects if obj.namespace == namespace]

    def add_indexer(self, name: str, func: IndexFunc):
        self._indexers[name] = func
        self.replace(self._snapshot.objects.values())

    def get_by_index(self, index: str, key: str) -> List[T]:
        if index not in self._indexers:
            raise KeyError(f"index {index} is not registered for {self.resource}")
        return list(self._snapshot.indexes.get(index, {}).get(key, []))

    def replace(self, objects: Iterable[T]):
        """Swap in a new set of objects and rebuild every index."""
        snapshot = _Snapshot()
        for obj in objects:
            snapshot.objects[(obj.namespace, obj.name)] = obj
        for index_name, func in self._indexers.items():
            index: Dict[str, List[KubeObject]] = {}
            for obj in snapshot.objects.values():
                for key in func(obj):
                    index.setdefault(key, []).append(obj)
            snapshot.indexes[index_name] = index
        self._snapshot = snapshot

    def __len__(self) -> int:
        return len(self._snapshot.objects)


class CacheLoader:
    """Periodically relists registered resources into their caches."""

    def __init__(self, client: KubeClient, resync_seconds: int = 30):
        self.client = client
        self.resync_seconds = resync_seconds
        self._sources: List[Tuple[GroupVersionResource, ObjectCache]] = []
        self._task: Optional[asyncio.Task] = None

    def register(self, gvr: GroupVersionResource, cache: ObjectCache):
        self._sources.append((gvr, cache))

    async def sync_once(self):
        for gvr, cache in self._sources:
            await self._relist(gvr, cache)

    async def _relist(self, gvr: GroupVersionResource, cache: ObjectCache):
        raw_items = await self.client.list_objects(gvr)
        objects = []
        for item in raw_items:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed {gvr.group_resource} item: {item!r}")
                continue
            try:
                objects.append(cache.model.model_validate(item))
            except ValidationError as e:
                metadata = item.get("metadata")
                name = metadata.get("name", "") if isinstance(metadata, dict) else ""
                logger.warning(f"Skipping invalid {gvr.group_resource} {name}: {e}")
        cache.replace(objects)
        logger.debug(f"Loaded {len(objects)} {gvr.group_resource}")

    async def _run(self):
        while True:
            try:
                await self.sync_once()
            except (httpx.HTTPError, KubeApiError) as e:
                logger.error(f"Cache relist failed: {e}")
            except Exception:
                logger.exception("Unexpected error relisting caches")
            await asyncio.sleep(self.resync_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
