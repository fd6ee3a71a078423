import secrets
from dataclasses import dataclass
from typing import Dict, Optional

SESSION_TIMEOUT = 1800  # seconds of inactivity


@dataclass
class Session:
    """Server-side state bound to one opaque token"""
    token: str
    user_id: int
    username: str
    email: str
    last_activity: float
    authenticated: bool = True


class SessionStore:
    """In-memory session table keyed by token.

    Nothing here reads the clock: callers pass ``now`` (epoch seconds), and a
    session expires when it is touched after the timeout, or when a later
    ``create`` sweeps it out.
    """

    def __init__(self, timeout: int = SESSION_TIMEOUT):
        self.timeout = timeout
        self._sessions: Dict[str, Session] = {}

    def create(self, user_id: int, username: str, email: str, now: float) -> Session:
        self._prune(now)
        token = secrets.token_urlsafe(32)
        session = Session(
            token=token,
            user_id=user_id,
            username=username,
            email=email,
            last_activity=now,
        )
        self._sessions[token] = session
        return session

    def get(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        return self._sessions.get(token)

    def touch(self, token: Optional[str], now: float) -> Optional[Session]:
        """Return the live session for token, refreshing its activity time."""
        session = self.get(token)
        if session is None:
            return None

        if now - session.last_activity > self.timeout:
            self.destroy(token)
            return None

        if not session.authenticated:
            return None

        session.last_activity = now
        return session

    def _prune(self, now: float) -> None:
        expired = [token for token, s in self._sessions.items()
                   if now - s.last_activity > self.timeout]
        for token in expired:
            del self._sessions[token]

    def destroy(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return self._sessions.pop(token, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
