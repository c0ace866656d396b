"""
Process-wide bookkeeping of active relay sessions.

Only used for cleanup and the health endpoint; sessions never reach into each
other through it.
"""

import asyncio
import secrets
from typing import Any, Dict, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Active sessions keyed by a random hex id."""

    def __init__(self):
        self._sessions: Dict[str, Any] = {}

    def register(self, session: Any) -> str:
        session_id = secrets.token_hex(8)
        while session_id in self._sessions:
            session_id = secrets.token_hex(8)
        self._sessions[session_id] = session
        return session_id

    def unregister(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional[Any]:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    async def close_all(self) -> None:
        """Close every registered session (shutdown)."""
        sessions = list(self._sessions.values())
        if not sessions:
            return
        logger.info("Closing active sessions", count=len(sessions))
        results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Error closing session", error=str(result))


# Singleton instance
_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    """Get or create the process-wide registry."""
    global _registry

    if _registry is None:
        _registry = SessionRegistry()

    return _registry
