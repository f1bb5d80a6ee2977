"""PKCE (Proof Key for Code Exchange) for the authorization code grant.

RFC 7636. The grant always sends an S256 challenge; the verifier is
posted with the code exchange.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


# RFC 7636 section 4.1 bounds on the verifier length, in characters.
_MIN_VERIFIER_LENGTH = 43
_MAX_VERIFIER_LENGTH = 128


def s256_challenge(verifier: str) -> str:
    """Return the base64url SHA-256 challenge for *verifier*, unpadded."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and its S256 challenge.

    Attributes
    ----------
    verifier : str
        High-entropy secret kept by the client until the code exchange.
    challenge : str
        The value sent with the authorization request.
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 96) -> PKCEChallenge:
        """Generate a new verifier/challenge pair.

        Parameters
        ----------
        length : int
            Verifier length in characters, clamped to the 43-128 range
            RFC 7636 allows.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        length = max(_MIN_VERIFIER_LENGTH, min(length, _MAX_VERIFIER_LENGTH))
        verifier = secrets.token_urlsafe(length)[:length]
        return cls(verifier=verifier, challenge=s256_challenge(verifier))
