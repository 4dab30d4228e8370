import asyncio
import logging
from typing import Dict, List, Protocol

from .errors import ShutdownDrainError

logger = logging.getLogger("Registry")


class Closable(Protocol):
    async def shutdown(self) -> None: ...


class Registry:
    """
    Active bridges by connection id.

    Only used for accounting and for closing everything at process shutdown;
    forwarding never consults it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Closable] = {}

    def put(self, connection_id: str, entry: Closable) -> None:
        self._entries[connection_id] = entry

    def remove(self, connection_id: str) -> None:
        self._entries.pop(connection_id, None)

    def get(self, connection_id: str):
        return self._entries.get(connection_id)

    def ids(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    async def drain_all(self) -> int:
        """
        Close every entry concurrently, then clear the table.

        Entries registered while the drain is running are closed too.
        Returns how many closes failed.
        """
        failures = 0
        drained = set()
        while True:
            batch = [(cid, entry) for cid, entry in self._entries.items() if cid not in drained]
            if not batch:
                break
            drained.update(cid for cid, _ in batch)
            results = await asyncio.gather(*(self._close_one(cid, entry) for cid, entry in batch))
            failures += results.count(False)
        self._entries.clear()
        if failures:
            logger.warning("Drained registry with %d failed close(s)", failures)
        return failures

    async def _close_one(self, connection_id: str, entry: Closable) -> bool:
        try:
            await entry.shutdown()
        except Exception as e:
            logger.error("%s", ShutdownDrainError(connection_id, e))
            return False
        return True
