"""
Security context for broadcast fetches.
"""

import binascii
import logging
import urllib.parse
from typing import Optional, Tuple

from .identity import KeyPair
from .tokens import FetchToken

logger = logging.getLogger(__name__)

TOKEN_PARAM = "token"
USER_AGENT = "relaycast"


class SecurityManager:
    """
    Decides whether broadcast fetches are authenticated and how.

    With no keypair, authentication is disabled: URLs pass through
    unmodified and the server accepts any request.

    Usage:
        security = SecurityManager(keypair=KeyPair.generate())

        # Worker side
        url = security.authenticate("http://origin:4040/broadcast_7")

        # Server side
        ok, error = security.verify("/broadcast_7", token_string)
    """

    def __init__(self, keypair: Optional[KeyPair] = None, token_ttl: int = 300):
        self.keypair = keypair
        self.token_ttl = token_ttl

    def is_authentication_enabled(self) -> bool:
        return self.keypair is not None

    def authenticate(self, url: str) -> str:
        """Return ``url`` with a signed fetch token bound to its path."""
        if not self.is_authentication_enabled():
            return url

        parsed = urllib.parse.urlsplit(url)
        token = FetchToken.create(parsed.path, self.keypair, ttl_seconds=self.token_ttl)

        query = urllib.parse.parse_qsl(parsed.query)
        query.append((TOKEN_PARAM, token.encode()))
        return urllib.parse.urlunsplit(parsed._replace(query=urllib.parse.urlencode(query)))

    def secure(self, client_kwargs: dict) -> dict:
        """Apply connection-level settings to httpx client arguments."""
        headers = dict(client_kwargs.get("headers") or {})
        headers.setdefault("User-Agent", USER_AGENT)
        if self.is_authentication_enabled():
            headers["X-Relaycast-Key-Id"] = self.keypair.key_id()
        client_kwargs["headers"] = headers
        # Redirects could carry the token to another host
        client_kwargs["follow_redirects"] = False
        return client_kwargs

    def verify(self, path: str, encoded_token: Optional[str]) -> Tuple[bool, str]:
        """
        Verify a token presented for ``path``.

        Returns:
            (success, error_message)
        """
        if not self.is_authentication_enabled():
            return True, ""

        if not encoded_token:
            return False, "Missing token"

        try:
            token = FetchToken.decode(encoded_token)
        except (binascii.Error, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Malformed fetch token: {e}")
            return False, "Malformed token"

        if token.is_expired():
            return False, "Token expired"

        if token.path != path:
            return False, "Token bound to different path"

        if not token.verify(self.keypair):
            return False, "Invalid signature"

        return True, ""
