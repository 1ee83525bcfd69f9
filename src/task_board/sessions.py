"""
Session Registry

Maps live connection ids to authenticated identities. Every mutating
operation resolves its caller here first; a connection without a bound
identity is rejected with ``Unauthenticated`` before anything executes.
Sessions are in-memory only and die with their transport connection.
"""

import logging
import threading
from typing import Dict, List, Optional

from .config import MIN_CREDENTIAL_LENGTH
from .database import BoardDatabase
from .errors import InvalidCredential, Unauthenticated, ValidationError
from .models import Identity

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Connection -> identity map with credential checks.

    Mutation is add/replace/remove only and guarded by a lock, so concurrent
    connects and disconnects cannot corrupt the map.
    """

    def __init__(self, database: BoardDatabase):
        self.db = database
        self._sessions: Dict[str, Identity] = {}
        self._lock = threading.Lock()

    def register(self, login: str, credential: str) -> Identity:
        """
        Create a user and return its identity.

        Raises:
            ValidationError: Empty login or too-short credential
            DuplicateIdentity: Login already registered
        """
        login = (login or "").strip()
        if not login:
            raise ValidationError("Login cannot be empty")
        if not credential or len(credential) < MIN_CREDENTIAL_LENGTH:
            raise ValidationError(
                f"Credential must be at least {MIN_CREDENTIAL_LENGTH} characters"
            )
        user = self.db.create_user(login, credential)
        logger.info(f"Registered user '{login}'")
        return Identity(**user)

    def authenticate(self, login: str, credential: str) -> Identity:
        """
        Check a login/credential pair.

        Raises:
            InvalidCredential: No matching user record
        """
        user = self.db.verify_credential((login or "").strip(), credential or "")
        if not user:
            raise InvalidCredential("Invalid login or credential")
        return Identity(**user)

    def restore(self, login: str) -> Identity:
        """
        Re-authenticate a client-cached identity by login alone.

        The login is trusted as presented; a hardened deployment would verify
        a signed session token here instead.
        """
        user = self.db.get_user_by_login((login or "").strip())
        if not user:
            raise InvalidCredential(f"Cannot restore session for '{login}'")
        return Identity(**user)

    def bind(self, connection_id: str, identity: Identity) -> None:
        """Associate a connection with an identity, replacing any previous one."""
        with self._lock:
            previous = self._sessions.get(connection_id)
            self._sessions[connection_id] = identity
        if previous is None or previous.login != identity.login:
            logger.info(f"Connection {connection_id} bound to '{identity.login}'")

    def resolve(self, connection_id: str) -> Optional[Identity]:
        with self._lock:
            return self._sessions.get(connection_id)

    def require(self, connection_id: str) -> Identity:
        """Resolve or raise Unauthenticated; the gate for mutating operations."""
        identity = self.resolve(connection_id)
        if identity is None:
            raise Unauthenticated("Authentication required")
        return identity

    def unbind(self, connection_id: str) -> Optional[Identity]:
        """Drop the connection's identity; calling it twice is harmless."""
        with self._lock:
            identity = self._sessions.pop(connection_id, None)
        if identity is not None:
            logger.info(f"Connection {connection_id} unbound from '{identity.login}'")
        return identity

    def logins(self) -> List[str]:
        with self._lock:
            return sorted({identity.login for identity in self._sessions.values()})

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)
