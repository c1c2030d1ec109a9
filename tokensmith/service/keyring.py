"""RSA signing-key ring backing RS256 access tokens and the JWKS document.

Keys live on disk, one directory per key id::

    <key_dir>/<kid>/private.key   PKCS8 PEM
    <key_dir>/<kid>/public.key    SPKI PEM

A key's creation time is read from its directory's metadata rather than
recorded at generation time, so ordering survives restarts and copies that
preserve timestamps. The newest key signs; every key still verifies.
"""

from __future__ import annotations

import base64
import os
import secrets
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tokensmith.logging import get_logger
from tokensmith.service.errors import KeyStorageError
from tokensmith.storage.models import SigningKey

logger = get_logger(__name__)

ALGORITHM = "RS256"
PRIVATE_KEY_FILE = "private.key"
PUBLIC_KEY_FILE = "public.key"


def _b64url_uint(n: int) -> str:
    # Convert integer to base64url without padding
    b = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


class KeyRing:
    """Owns the signing key set; construct once per process and share it."""

    def __init__(
        self,
        key_dir: str | os.PathLike[str],
        *,
        key_size: int = 4096,
        keys_ttl_seconds: float = 600,
        jwks_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key_dir = Path(key_dir)
        self.key_size = key_size
        self.keys_ttl_seconds = keys_ttl_seconds
        self.jwks_ttl_seconds = jwks_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: Optional[Dict[str, SigningKey]] = None
        self._keys_loaded_at = 0.0
        self._jwks: Optional[List[Dict[str, Any]]] = None
        self._jwks_loaded_at = 0.0

    def initialize(self) -> None:
        """Ensure at least one usable key pair exists. Idempotent."""
        try:
            self.key_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KeyStorageError(
                "Unable to create signing key directory",
                detail={"key_dir": str(self.key_dir)},
            ) from exc
        existing = self._scan()
        if existing:
            logger.info("keyring_initialized", key_count=len(existing))
            return
        key = self.generate_key_pair()
        logger.info("keyring_initialized", key_count=1, generated_kid=key.kid)

    def generate_key_pair(self) -> SigningKey:
        """Create and persist a new RSA key pair under a fresh random kid.

        The in-memory key map is not refreshed; readers pick the new key up
        once their cached listing expires.
        """
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537, key_size=self.key_size
            )
        except ValueError as exc:
            raise KeyStorageError("RSA key generation failed") from exc
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("ascii")
        )

        kid = secrets.token_hex(16)
        folder = self.key_dir / kid
        try:
            folder.mkdir(parents=True, exist_ok=False)
            private_path = folder / PRIVATE_KEY_FILE
            private_path.write_text(private_pem)
            os.chmod(private_path, 0o600)
            (folder / PUBLIC_KEY_FILE).write_text(public_pem)
            created_at = self._created_at(folder)
        except OSError as exc:
            raise KeyStorageError(
                "Unable to persist signing key", detail={"kid": kid}
            ) from exc
        logger.info("signing_key_generated", kid=kid, key_size=self.key_size)
        return SigningKey(
            kid=kid,
            public_key=public_pem,
            private_key=private_pem,
            created_at=created_at,
        )

    @staticmethod
    def _created_at(folder: Path) -> datetime:
        return datetime.fromtimestamp(folder.stat().st_mtime, tz=timezone.utc)

    def _scan(self) -> Dict[str, SigningKey]:
        """Read every key directory from disk, skipping incomplete ones."""
        try:
            entries = sorted(self.key_dir.iterdir())
        except OSError as exc:
            raise KeyStorageError(
                "Unable to read signing key directory",
                detail={"key_dir": str(self.key_dir)},
            ) from exc

        keys: Dict[str, SigningKey] = {}
        for entry in entries:
            if not entry.is_dir():
                continue
            try:
                public_pem = (entry / PUBLIC_KEY_FILE).read_text()
                private_pem = (entry / PRIVATE_KEY_FILE).read_text()
                # Reject files that are present but do not hold an RSA key pair
                public_key = serialization.load_pem_public_key(public_pem.encode())
                serialization.load_pem_private_key(private_pem.encode(), password=None)
                if not isinstance(public_key, rsa.RSAPublicKey):
                    raise ValueError("not an RSA public key")
                created_at = self._created_at(entry)
            except (OSError, ValueError, TypeError) as exc:
                logger.warning(
                    "signing_key_corrupt",
                    kid=entry.name,
                    error_type=type(exc).__name__,
                )
                continue
            keys[entry.name] = SigningKey(
                kid=entry.name,
                public_key=public_pem,
                private_key=private_pem,
                created_at=created_at,
            )
        return keys

    def list_keys(self) -> Dict[str, SigningKey]:
        """Return kid -> key, memoized for ``keys_ttl_seconds``."""
        with self._lock:
            now = self._clock()
            if self._keys is None or now - self._keys_loaded_at >= self.keys_ttl_seconds:
                self._keys = self._scan()
                self._keys_loaded_at = now
            return dict(self._keys)

    def select_signing_key(self) -> SigningKey:
        """Newest key by creation time; equal timestamps resolve to the greatest kid."""
        keys = self.list_keys()
        if not keys:
            raise KeyStorageError(
                "No signing keys available", detail={"key_dir": str(self.key_dir)}
            )
        return max(keys.values(), key=lambda key: (key.created_at, key.kid))

    def public_key(self, kid: str) -> Optional[str]:
        key = self.list_keys().get(kid)
        return key.public_key if key else None

    def public_jwk_set(self) -> List[Dict[str, Any]]:
        """Every known public key as a JWK, memoized for ``jwks_ttl_seconds``."""
        with self._lock:
            now = self._clock()
            if self._jwks is not None and now - self._jwks_loaded_at < self.jwks_ttl_seconds:
                return list(self._jwks)
        jwks = [self._to_jwk(key) for key in self.list_keys().values()]
        with self._lock:
            self._jwks = jwks
            self._jwks_loaded_at = self._clock()
        return list(jwks)

    def jwks_document(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"keys": self.public_jwk_set()}

    @staticmethod
    def _to_jwk(key: SigningKey) -> Dict[str, Any]:
        public_key = serialization.load_pem_public_key(key.public_key.encode())
        numbers = public_key.public_numbers()
        return {
            "kid": key.kid,
            "kty": "RSA",
            "use": "sig",
            "alg": ALGORITHM,
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }
