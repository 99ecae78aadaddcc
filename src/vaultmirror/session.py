"""
Session lifecycle -- login, unlock, logout per vault target.

Each target walks its own state machine:

    LOGGED_OUT -> LOGGING_IN -> LOGGED_IN -> UNLOCKING -> UNLOCKED
         ^______________________________________________|

Any failure or teardown drops the target back to LOGGED_OUT. Session
tokens are mirrored into an owner-only file under the runtime dir for
the lifetime of the session and erased on every exit path.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import SecretStr

from .client import VaultClient
from .exceptions import AuthError, SessionStateError, SyncError
from .models import Session, SessionState, VaultTarget

logger = logging.getLogger("vaultmirror.session")

_ALLOWED: dict[SessionState, set[SessionState]] = {
    SessionState.LOGGED_OUT: {SessionState.LOGGING_IN},
    SessionState.LOGGING_IN: {SessionState.LOGGED_IN, SessionState.LOGGED_OUT},
    SessionState.LOGGED_IN: {SessionState.UNLOCKING, SessionState.LOGGED_OUT},
    SessionState.UNLOCKING: {SessionState.UNLOCKED, SessionState.LOGGED_OUT},
    SessionState.UNLOCKED: {SessionState.LOGGED_OUT},
}


class SessionManager:
    """Drives authentication for every target in a run.

    Args:
        client: Vault service capability.
        runtime_dir: Private directory for ephemeral token files.
    """

    def __init__(self, client: VaultClient, runtime_dir: Path):
        self.client = client
        self.runtime_dir = Path(runtime_dir).expanduser()
        self._states: dict[str, SessionState] = {}
        self._sessions: dict[str, Session] = {}

    def state(self, target: VaultTarget) -> SessionState:
        return self._states.get(target.name, SessionState.LOGGED_OUT)

    def _transition(self, target: VaultTarget, new: SessionState) -> None:
        current = self.state(target)
        if new == current == SessionState.LOGGED_OUT:
            return
        if new not in _ALLOWED[current]:
            raise SessionStateError(
                f"{target.name}: illegal transition {current.value} -> {new.value}"
            )
        self._states[target.name] = new
        logger.debug("%s: %s -> %s", target.name, current.value, new.value)

    def login(self, target: VaultTarget) -> None:
        """Authenticate against the target, superseding any stale session.

        Raises:
            AuthError: If the server or credentials are rejected.
        """
        self._force_logout(target)
        self._transition(target, SessionState.LOGGING_IN)
        logger.info("Logging into %s (%s)", target.name, target.server_url)
        try:
            self.client.configure_server(target)
            self.client.login(target)
        except SyncError:
            self._transition(target, SessionState.LOGGED_OUT)
            raise
        self._transition(target, SessionState.LOGGED_IN)

    def unlock(self, target: VaultTarget) -> Session:
        """Unlock a logged-in target and return its session.

        Raises:
            AuthError: If the master passphrase is rejected.
            SessionStateError: If the target is not logged in.
        """
        self._transition(target, SessionState.UNLOCKING)
        logger.info("Unlocking %s vault", target.name)
        token_file: Optional[Path] = None
        try:
            token = self.client.unlock(target)
            if not token:
                raise AuthError(f"Empty session token from {target.name}", target=target.name)
            token_file = self._store_token(target, token)
        except BaseException:
            if token_file is not None:
                token_file.unlink(missing_ok=True)
            self._transition(target, SessionState.LOGGED_OUT)
            raise

        session = Session(target=target, token=SecretStr(token), token_file=token_file)
        self._sessions[target.name] = session
        self._transition(target, SessionState.UNLOCKED)
        return session

    def logout(self, session: Session) -> None:
        """Tear down a session. Best-effort: failures are logged, never raised."""
        target = session.target
        try:
            self.client.logout(target)
            logger.info("Logged out of %s", target.name)
        except Exception as exc:
            logger.warning("Logout from %s failed (ignored): %s", target.name, exc)
        finally:
            self._erase(session)
            self._states[target.name] = SessionState.LOGGED_OUT

    @contextmanager
    def open(self, target: VaultTarget) -> Iterator[Session]:
        """Login and unlock a target; always logs out when the block exits."""
        self.login(target)
        try:
            session = self.unlock(target)
        except BaseException:
            self._force_logout(target)
            raise
        try:
            yield session
        finally:
            self.logout(session)

    def close_all(self) -> None:
        """Log out of every session still open."""
        for session in list(self._sessions.values()):
            self.logout(session)

    def _force_logout(self, target: VaultTarget) -> None:
        """Drop any prior session for the target, ignoring absence."""
        stale = self._sessions.get(target.name)
        if stale is not None:
            self._erase(stale)
        try:
            self.client.logout(target)
        except Exception as exc:
            logger.debug("No prior session for %s (%s)", target.name, exc)
        self._states[target.name] = SessionState.LOGGED_OUT

    def _store_token(self, target: VaultTarget, token: str) -> Path:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            prefix=f"session-{target.name}-", suffix=".tok", dir=self.runtime_dir
        )
        os.chmod(name, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token)
        return Path(name)

    def _erase(self, session: Session) -> None:
        if session.token_file is not None:
            session.token_file.unlink(missing_ok=True)
        session.state = SessionState.LOGGED_OUT
        self._sessions.pop(session.target.name, None)
