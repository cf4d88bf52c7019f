"""
Authentication for broadcast fetches.

Provides:
- Cluster signing key (Ed25519 keypair)
- Fetch tokens (signed, path-bound, expiring)
- SecurityManager (the security context used by the transfer protocol)
"""

from .identity import KeyPair, load_cluster_key
from .tokens import FetchToken
from .security import SecurityManager

__all__ = [
    "KeyPair",
    "load_cluster_key",
    "FetchToken",
    "SecurityManager",
]
