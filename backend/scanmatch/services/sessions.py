"""Live scan sessions and the periodic auto-persist loop."""

import asyncio
import logging
from typing import Dict, List, Optional

from .errors import DuplicateError
from .reconciliation import ScanSession, ReconcileOptions, SyncResult
from .store import RowStore
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds the sessions opened by station browsers, keyed by id."""

    def __init__(self, store: RowStore, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self._sessions: Dict[str, ScanSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, prefixes: Optional[str] = None, session_id: Optional[str] = None) -> ScanSession:
        """
        Open a new session.

        Raises:
            DuplicateError: session_id is already open
        """
        if session_id is not None and session_id in self._sessions:
            raise DuplicateError(f"Session already open: {session_id}")
        options = ReconcileOptions.from_settings(self.settings, prefixes)
        session = ScanSession(self.store, options=options, settings=self.settings, session_id=session_id)
        self._sessions[session.session_id] = session
        logger.info(f"Opened session {session.session_id} (prefixes={session.prefix_filter.label})")
        return session

    def get(self, session_id: str) -> Optional[ScanSession]:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> Optional[ScanSession]:
        return self._sessions.pop(session_id, None)

    async def release(self, session_id: str) -> Optional[SyncResult]:
        """
        Flush every pending write of a session, then forget it.

        The session stays open when the flush fails so no scan is lost.
        Returns None for an unknown id.
        """
        session = self.get(session_id)
        if session is None:
            return None
        result = await session.flush_pending(force=True)
        if not result.success:
            logger.warning(f"Session {session_id} kept open: {result.message}")
            return result
        self.close(session_id)
        logger.info(f"Closed session {session_id}")
        return result

    def all(self) -> List[ScanSession]:
        return list(self._sessions.values())

    async def flush_all(self) -> Dict[str, SyncResult]:
        """Retry due pending writes in every session that has any."""
        results = {}
        for session in self.all():
            if len(session.pending):
                results[session.session_id] = await session.flush_pending()
        return results


class AutoPersister:
    """
    Runs SessionRegistry.flush_all every interval as an asyncio task.

    Best effort: a failed sweep is logged and the next tick tries again.
    """

    def __init__(self, registry: SessionRegistry, interval_seconds: Optional[float] = None):
        self.registry = registry
        self.interval = interval_seconds or registry.settings.autosave_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Auto-persist started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Auto-persist stopped")

    async def tick(self) -> Dict[str, SyncResult]:
        results = await self.registry.flush_all()
        failed = [sid for sid, r in results.items() if not r.success]
        if failed:
            logger.warning(f"Auto-persist: {len(failed)} session(s) still unsynced")
        return results

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Auto-persist sweep failed: {e}")
