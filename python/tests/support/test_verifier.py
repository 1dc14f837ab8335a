"""Test-only token verifiers and key material.

This module provides, for use in unit tests only:
- MockJwtVerifier: user token verifier backed by a locally generated RSA keypair
- LocalJwksVerifier: JwksVerifier whose key set is served from memory
- TestKeyPair: an RSA keypair with a kid, published as a PyJWK

It is NOT part of the runtime code and should not be imported in production.
The verifiers validate the same claim structure as the production ones to
catch config mistakes early during testing.
"""

import threading
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt import PyJWK
from jwt.algorithms import RSAAlgorithm

from quire.auth.verifier import JwksVerifier, decode_verified
from quire.errors import TokenValidationError


class TestKeyPair:
    """RSA keypair with a key id, usable for minting and as a JWKS entry."""

    __test__ = False

    def __init__(self, kid: str):
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.public_key = self.private_key.public_key()

    @property
    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def to_pyjwk(self) -> PyJWK:
        jwk = RSAAlgorithm.to_jwk(self.public_key, as_dict=True)
        jwk["kid"] = self.kid
        jwk["use"] = "sig"
        jwk["alg"] = "RS256"
        return PyJWK(jwk)


class StaticJwksClient:
    """Stands in for PyJWKClient; counts forced refreshes."""

    def __init__(self, keys: list[PyJWK]):
        self.keys = list(keys)
        self.refresh_calls = 0

    def get_signing_keys(self, refresh: bool = False) -> list[PyJWK]:
        if refresh:
            self.refresh_calls += 1
        return list(self.keys)


class LocalJwksVerifier(JwksVerifier):
    """JwksVerifier reading its key set from a StaticJwksClient."""

    def __init__(self, client: StaticJwksClient, **kwargs: Any):
        kwargs.setdefault("jwks_url", "https://jwks.test/keys")
        super().__init__(**kwargs)
        self.client = client

    def _get_jwks_client(self):  # type: ignore[override]
        return self.client


class MockJwtVerifier:
    """Test user token verifier using a class-level RSA keypair.

    Usage:
        from tests.support.test_verifier import MockJwtVerifier

        verifier = MockJwtVerifier()
        claims = verifier.verify(token)

        # To mint tokens, use the private key:
        private_key = MockJwtVerifier.get_private_key()
    """

    _keys: TestKeyPair | None = None
    _lock = threading.Lock()

    def __init__(self, issuer: str = "test-issuer", audiences: list[str] | None = None):
        self.issuer = issuer
        self.audiences = audiences or ["test-audience"]

    @classmethod
    def _keypair(cls) -> TestKeyPair:
        with cls._lock:
            if cls._keys is None:
                cls._keys = TestKeyPair("user-test-key")
            return cls._keys

    @classmethod
    def get_private_key(cls) -> bytes:
        return cls._keypair().private_pem

    def verify(self, token: str) -> dict[str, Any]:
        """Verify a test JWT: signature, exp, iss, aud and a non-empty sub.

        Raises:
            TokenValidationError: Token is invalid.
        """
        payload = decode_verified(
            token,
            self._keypair().public_key,
            algorithms=("RS256",),
            issuer=self.issuer,
            audience=self.audiences,
            required=("exp", "iss", "sub"),
        )
        if not payload.get("sub"):
            raise TokenValidationError()
        return payload
