"""
Session credentials - basic user identification plus the token handed to the streaming gateway.
No login flow: the identity provider lives outside this package.
"""

import uuid
from typing import Optional

from infrastructure.config.settings import get_config
from infrastructure.monitoring.logging_service import get_logger


class SessionCredentials:
    """
    Credential provider for one user session.

    An empty token means the session is signed out; generation requests are
    then rejected before any state is touched.
    """

    def __init__(self, user_id: Optional[str] = None, token: Optional[str] = None):
        self.logger = get_logger(__name__)
        # Short ID
        self._user_id = user_id or str(uuid.uuid4())[:8]
        self._token = token or None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    async def get_token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]):
        self._token = token or None
        self.logger.info(f"Credential {'updated' if self._token else 'cleared'} for user {self._user_id}")

    def sign_out(self):
        self.set_token(None)

    @classmethod
    def from_config(cls, user_id: Optional[str] = None) -> 'SessionCredentials':
        """Session authenticated with the token configured for this deployment"""
        return cls(user_id=user_id, token=get_config().api.auth_token)


_session_credentials: Optional[SessionCredentials] = None


def get_session_credentials() -> SessionCredentials:
    """Get the global session credentials"""
    global _session_credentials
    if _session_credentials is None:
        _session_credentials = SessionCredentials.from_config()
    return _session_credentials
