"""
Keyed-tree document store.

Documents live at slash-separated key paths (``conversationSummaries/<id>``).
Removing a path removes every document below it, and ``children`` /
``range_query`` read the documents one level below a path.

Atomic updates are optimistic: each document carries a version token, the
update function runs against a private copy of the current value, and the
write only lands if the version did not move in the meantime. Conflicting
writers re-read and re-run their function until they win or the attempt
budget runs out.

Engines implement four primitives (_read, _compare_and_set, _write, _remove)
plus _children; everything else is built on top of them here. The SQL engine
lives in storage.py.
"""

import asyncio
import copy
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from wa_inbox.errors import StoreError

logger = logging.getLogger(__name__)

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

DEFAULT_MAX_ATTEMPTS = 64


def child(*parts: str) -> str:
    """Join key path segments."""
    return "/".join(str(p).strip("/") for p in parts if p not in (None, ""))


class PushKeyGenerator:
    """
    Generates 20-character keys that sort lexicographically in creation order.

    The first 8 characters encode the millisecond timestamp, the last 12 are
    random. Keys generated within the same millisecond (or after the clock
    stepped backwards) reuse the previous timestamp and increment the random
    tail, so ordering holds for every key produced by one generator.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last_ms = -1
        self._last_rand = [0] * 12

    def __call__(self) -> str:
        now = int(self._clock() * 1000)
        if now <= self._last_ms:
            now = self._last_ms
            i = 11
            while i >= 0 and self._last_rand[i] == 63:
                self._last_rand[i] = 0
                i -= 1
            if i < 0:
                # random tail exhausted for this millisecond, move the clock on
                now += 1
                self._last_rand = [secrets.randbelow(64) for _ in range(12)]
            else:
                self._last_rand[i] += 1
        else:
            self._last_rand = [secrets.randbelow(64) for _ in range(12)]
        self._last_ms = now

        ts_chars = []
        for _ in range(8):
            ts_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        return "".join(reversed(ts_chars)) + "".join(PUSH_CHARS[r] for r in self._last_rand)


@dataclass
class Versioned:
    value: Any
    version: int


@dataclass
class AtomicResult:
    """Outcome of an atomic update.

    committed is False when the update function aborted by returning None.
    previous is the value the winning attempt was computed from.
    """

    committed: bool
    value: Any
    previous: Any


class DocumentStore:
    """Base class for store engines."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, key_generator: Optional[PushKeyGenerator] = None):
        self.max_attempts = max_attempts
        self._keys = key_generator or PushKeyGenerator()

    # -- engine primitives ------------------------------------------------

    async def _read(self, path: str) -> Optional[Versioned]:
        raise NotImplementedError

    async def _compare_and_set(self, path: str, value: Any, expected_version: Optional[int]) -> bool:
        """Write value only if the stored version equals expected_version (None: must not exist)."""
        raise NotImplementedError

    async def _write(self, path: str, value: Any) -> None:
        raise NotImplementedError

    async def _remove(self, path: str) -> None:
        raise NotImplementedError

    async def _children(self, path: str) -> List[Tuple[str, Any]]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # -- public API ---------------------------------------------------------

    async def get(self, path: str) -> Any:
        doc = await self._read(path)
        return doc.value if doc else None

    async def set(self, path: str, value: Any) -> None:
        """Overwrite the document at path; None removes it."""
        if value is None:
            await self._remove(path)
            return
        await self._write(path, value)

    async def update(self, path: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge fields into the document at path, creating it if absent."""

        def merge(current):
            merged = current if isinstance(current, dict) else {}
            merged.update(fields)
            return merged

        result = await self.atomic_update(path, merge)
        return result.value

    async def remove(self, path: str) -> None:
        await self._remove(path)

    def push_key(self) -> str:
        return self._keys()

    async def push(self, path: str, value: Any) -> str:
        """Store value under a fresh push key below path and return the key."""
        key = self.push_key()
        await self._write(child(path, key), value)
        return key

    async def children(self, path: str) -> Dict[str, Any]:
        return dict(await self._children(path))

    async def range_query(
        self,
        path: str,
        order_by: Optional[str] = None,
        limit_to_last: Optional[int] = None,
    ) -> List[Tuple[str, Any]]:
        """
        Children of path ordered ascending by the order_by field (ties by key),
        or by key when order_by is None, keeping only the last limit_to_last.

        This version sorts and slices in process; engines that can order and
        limit server-side override it.
        """
        items = await self._children(path)
        if order_by:
            items.sort(key=lambda kv: (_field(kv[1], order_by), kv[0]))
        else:
            items.sort(key=lambda kv: kv[0])
        if limit_to_last is not None:
            items = items[-limit_to_last:] if limit_to_last > 0 else []
        return items

    async def atomic_update(self, path: str, fn: Callable[[Any], Any]) -> AtomicResult:
        """
        Apply fn(current) -> next atomically.

        fn receives a private copy of the current value (None if absent) and
        may be called several times under contention; it must not have side
        effects that assume it runs once. Returning None aborts.
        """
        for attempt in range(1, self.max_attempts + 1):
            doc = await self._read(path)
            current = doc.value if doc else None
            version = doc.version if doc else None

            proposed = fn(copy.deepcopy(current))
            if proposed is None:
                return AtomicResult(committed=False, value=current, previous=current)
            if doc is not None and proposed == current:
                return AtomicResult(committed=True, value=current, previous=current)

            if await self._compare_and_set(path, proposed, version):
                if attempt > 1:
                    logger.debug("Atomic update on %s committed after %d attempts", path, attempt)
                return AtomicResult(committed=True, value=proposed, previous=current)

        logger.error("Atomic update on %s gave up after %d attempts", path, self.max_attempts)
        raise StoreError(f"Too much contention updating {path}", {"path": path})


def _field(value: Any, name: str):
    if isinstance(value, dict):
        v = value.get(name)
        if isinstance(v, (int, float)):
            return v
    return 0


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local engine.

    Yields to the event loop between the read and the compare-and-set of an
    atomic update, so concurrent callers interleave the way they would
    against a networked store.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._docs: Dict[str, Versioned] = {}

    async def _read(self, path: str) -> Optional[Versioned]:
        doc = self._docs.get(path)
        if doc is None:
            return None
        return Versioned(copy.deepcopy(doc.value), doc.version)

    async def _compare_and_set(self, path: str, value: Any, expected_version: Optional[int]) -> bool:
        await asyncio.sleep(0)
        doc = self._docs.get(path)
        if expected_version is None:
            if doc is not None:
                return False
            self._docs[path] = Versioned(copy.deepcopy(value), 1)
            return True
        if doc is None or doc.version != expected_version:
            return False
        self._docs[path] = Versioned(copy.deepcopy(value), doc.version + 1)
        return True

    async def _write(self, path: str, value: Any) -> None:
        doc = self._docs.get(path)
        version = doc.version + 1 if doc else 1
        self._docs[path] = Versioned(copy.deepcopy(value), version)

    async def _remove(self, path: str) -> None:
        prefix = path + "/"
        for key in [k for k in self._docs if k == path or k.startswith(prefix)]:
            del self._docs[key]

    async def _children(self, path: str) -> List[Tuple[str, Any]]:
        prefix = path + "/"
        items = []
        for key, doc in self._docs.items():
            if key.startswith(prefix):
                rest = key[len(prefix):]
                if rest and "/" not in rest:
                    items.append((rest, copy.deepcopy(doc.value)))
        return items
