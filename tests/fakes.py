"""Hand-written test doubles and small helpers shared by the test modules."""

import asyncio
from typing import Any, AsyncIterator, Dict, Iterable, List, Tuple

from objectstore.audit import AccessAuditTrail
from objectstore.bucket_service import BucketService
from objectstore.catalog import MetadataCatalog
from objectstore.iam import AuthorizationGateway, Decision, ResourceRef
from objectstore.locks import KeyedLocks
from objectstore.object_service import ObjectService
from objectstore.storage import FileSystemStore

EVERY_ACTION = "*"


class FakeOracle:
    """Allows everything except the actions it is told to deny, fail on or stall on."""

    def __init__(
        self,
        deny: Iterable[str] = (),
        fail: Iterable[str] = (),
        stall: Iterable[str] = (),
        delay: float = 1.0,
    ):
        self.deny = set(deny)
        self.fail = set(fail)
        self.stall = set(stall)
        self.delay = delay
        self.calls: List[Tuple[str, str, str]] = []

    @staticmethod
    def _hits(actions: set, action: str) -> bool:
        return EVERY_ACTION in actions or action in actions

    async def check(self, actor_id: str, action: str, resource: ResourceRef, context: Dict[str, Any]) -> Decision:
        self.calls.append((actor_id, action, resource.render()))
        if self._hits(self.stall, action):
            await asyncio.sleep(self.delay)
        if self._hits(self.fail, action):
            raise ConnectionError("permission service unreachable")
        if self._hits(self.deny, action):
            return Decision(False, "explicit deny", "TestDenyPolicy")
        return Decision(True, "allowed", "TestAllowPolicy")


class BrokenCatalog:
    """Stands in for a catalog whose access-log writes always fail."""

    def add_access_log(self, entry):
        raise RuntimeError("catalog is down")


def make_services(
    catalog: MetadataCatalog,
    store: FileSystemStore,
    oracle,
    timeout: float = 1.0,
    retries: int = 3,
    list_batch: int = 500,
) -> Tuple[BucketService, ObjectService]:
    gateway = AuthorizationGateway(oracle, timeout)
    audit = AccessAuditTrail(catalog)
    locks = KeyedLocks()
    buckets = BucketService(catalog, store, gateway, audit, locks)
    objects = ObjectService(catalog, store, gateway, audit, locks, buckets, retries, list_batch)
    return buckets, objects


async def collect(stream: AsyncIterator[bytes]) -> bytes:
    return b"".join([chunk async for chunk in stream])


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part
