"""Registry holding at most one live voice session per surface."""

import asyncio
import logging
from typing import Dict, Optional

from ..core.llm.access_policy import ProviderSurface
from ..core.protocols import VoiceSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks the live session of each surface.

    Registering a session stops the one it replaces, so a phone and a
    head-unit conversation can coexist but two phone conversations cannot.
    """

    def __init__(self) -> None:
        self._sessions: Dict[ProviderSurface, VoiceSession] = {}
        self._lock = asyncio.Lock()

    def get(self, surface: ProviderSurface) -> Optional[VoiceSession]:
        return self._sessions.get(surface)

    def __contains__(self, surface: ProviderSurface) -> bool:
        return surface in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def register(self, surface: ProviderSurface, session: VoiceSession) -> None:
        async with self._lock:
            previous = self._sessions.get(surface)
            self._sessions[surface] = session
        if previous is not None and previous is not session:
            logger.info(f"Replacing live {surface.value} session")
            await previous.stop()

    async def unregister(self, surface: ProviderSurface, session: VoiceSession) -> None:
        """Forget ``session`` if it is still the live one. Does not stop it."""
        async with self._lock:
            if self._sessions.get(surface) is session:
                del self._sessions[surface]

    async def stop(self, surface: ProviderSurface) -> None:
        async with self._lock:
            session = self._sessions.pop(surface, None)
        if session is not None:
            await session.stop()

    async def stop_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.stop()
