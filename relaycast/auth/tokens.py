"""
Broadcast fetch tokens.

A token authorizes one GET of one broadcast file. It is bound to the
request path, time-limited, and signed with the cluster key.
"""

import base64
import binascii
import json
import secrets
import time
from dataclasses import dataclass

from .identity import KeyPair


@dataclass
class FetchToken:
    """
    A signed token authorizing a fetch of a single broadcast file.

    Tokens are:
    - Signed with the shared cluster key
    - Time-limited (default 5 minutes)
    - Bound to one request path ("/broadcast_<id>")
    """
    path: str
    issued_at: int
    expires_at: int
    nonce: str  # Random, keeps signatures distinct
    signature: str  # Ed25519 signature (base64)

    @classmethod
    def create(
        cls,
        path: str,
        keypair: KeyPair,
        ttl_seconds: int = 300,
    ) -> "FetchToken":
        """
        Create a new signed fetch token.

        Args:
            path: URL path the token grants access to
            keypair: The cluster keypair used for signing
            ttl_seconds: How long until expiration
        """
        now = int(time.time())

        token = cls(
            path=path,
            issued_at=now,
            expires_at=now + ttl_seconds,
            nonce=secrets.token_hex(8),
            signature="",
        )

        token.signature = base64.b64encode(keypair.sign(token._canonical_bytes())).decode("ascii")
        return token

    def _canonical_bytes(self) -> bytes:
        """Get canonical bytes for signing/verification."""
        data = {
            "path": self.path,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "nonce": self.nonce,
        }
        return json.dumps(data, sort_keys=True, separators=(',', ':')).encode()

    def verify(self, keypair: KeyPair) -> bool:
        """Verify the token signature against the cluster key."""
        try:
            sig_bytes = base64.b64decode(self.signature)
        except (binascii.Error, ValueError):
            return False
        return keypair.verify(self._canonical_bytes(), sig_bytes)

    def is_expired(self) -> bool:
        """Check if token has expired."""
        return time.time() > self.expires_at

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "nonce": self.nonce,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FetchToken":
        return cls(
            path=data["path"],
            issued_at=data["issued_at"],
            expires_at=data["expires_at"],
            nonce=data["nonce"],
            signature=data["signature"],
        )

    def encode(self) -> str:
        """Encode token to a compact URL-safe string."""
        json_bytes = json.dumps(self.to_dict(), separators=(',', ':')).encode()
        return base64.urlsafe_b64encode(json_bytes).decode().rstrip('=')

    @classmethod
    def decode(cls, encoded: str) -> "FetchToken":
        """Decode token from compact string."""
        # Add padding if needed
        padding = 4 - (len(encoded) % 4)
        if padding != 4:
            encoded += '=' * padding

        json_bytes = base64.urlsafe_b64decode(encoded)
        data = json.loads(json_bytes)
        return cls.from_dict(data)
