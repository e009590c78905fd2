"""Key encryption keys used to wrap per-blob content keys."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.keywrap import (
    InvalidUnwrap,
    aes_key_unwrap,
    aes_key_wrap,
)

from .errors import ConfigurationError, IntegrityError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

LOG = logging.getLogger("blob_transfer.keys")

_AES_KW_ALGORITHMS = {16: "A128KW", 24: "A192KW", 32: "A256KW"}
RSA_OAEP = "RSA-OAEP"
RSA_OAEP_256 = "RSA-OAEP-256"


@runtime_checkable
class KeyEncryptionKey(Protocol):
    """Anything that can wrap and unwrap a content key."""

    @property
    def kid(self) -> str: ...

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        ...

    def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes: ...


class SymmetricKey:
    """AES key wrap (RFC 3394) with a local secret."""

    def __init__(self, kid: str, secret: bytes):
        if len(secret) not in _AES_KW_ALGORITHMS:
            msg = "symmetric key must be 16, 24 or 32 bytes"
            raise ConfigurationError(msg)
        self._kid = kid
        self._secret = secret

    @classmethod
    def generate(cls, kid: str, size: int = 32) -> SymmetricKey:
        return cls(kid, os.urandom(size))

    @property
    def kid(self) -> str:
        return self._kid

    @property
    def default_algorithm(self) -> str:
        return _AES_KW_ALGORITHMS[len(self._secret)]

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        algorithm = algorithm or self.default_algorithm
        self._check_algorithm(algorithm)
        return aes_key_wrap(self._secret, key), algorithm

    def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes:
        self._check_algorithm(algorithm)
        try:
            return aes_key_unwrap(self._secret, wrapped_key)
        except InvalidUnwrap as error:
            msg = f"failed to unwrap content key with {self._kid!r}"
            raise IntegrityError(msg) from error

    def _check_algorithm(self, algorithm: str) -> None:
        if algorithm != self.default_algorithm:
            msg = (
                f"unsupported key wrap algorithm {algorithm!r} for "
                f"{len(self._secret) * 8}-bit key {self._kid!r}"
            )
            raise ConfigurationError(msg)


class RsaKey:
    """RSA-OAEP key wrapping.

    A key built from a public key can only wrap; unwrapping needs the
    private key.
    """

    def __init__(
        self,
        kid: str,
        *,
        private_key: rsa.RSAPrivateKey | None = None,
        public_key: rsa.RSAPublicKey | None = None,
    ):
        if private_key is None and public_key is None:
            msg = "RsaKey needs a private or a public key"
            raise ConfigurationError(msg)
        self._kid = kid
        self._private_key = private_key
        self._public_key = public_key or private_key.public_key()

    @classmethod
    def generate(cls, kid: str, key_size: int = 2048) -> RsaKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(kid, private_key=private_key)

    @property
    def kid(self) -> str:
        return self._kid

    @property
    def default_algorithm(self) -> str:
        return RSA_OAEP

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        algorithm = algorithm or self.default_algorithm
        return self._public_key.encrypt(key, _oaep(algorithm)), algorithm

    def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes:
        if self._private_key is None:
            msg = f"RSA key {self._kid!r} has no private key to unwrap with"
            raise ConfigurationError(msg)
        try:
            return self._private_key.decrypt(wrapped_key, _oaep(algorithm))
        except ValueError as error:
            msg = f"failed to unwrap content key with {self._kid!r}"
            raise IntegrityError(msg) from error


def _oaep(algorithm: str) -> padding.OAEP:
    if algorithm == RSA_OAEP:
        digest: hashes.HashAlgorithm = hashes.SHA1()
    elif algorithm == RSA_OAEP_256:
        digest = hashes.SHA256()
    else:
        msg = f"unsupported key wrap algorithm {algorithm!r} for RSA key"
        raise ConfigurationError(msg)
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=digest), algorithm=digest, label=None
    )


class KeyResolver:
    """Read-only lookup of key encryption keys by key id."""

    def __init__(
        self,
        keys: Iterable[KeyEncryptionKey] | Mapping[str, KeyEncryptionKey] = (),
    ):
        if hasattr(keys, "items"):
            self._keys = dict(keys.items())
        else:
            self._keys = {key.kid: key for key in keys}

    def resolve(self, kid: str) -> KeyEncryptionKey | None:
        key = self._keys.get(kid)
        if key is None:
            LOG.debug("key resolver has no entry for kid=%s", kid)
        return key

    def __contains__(self, kid: object) -> bool:
        return kid in self._keys

    def __len__(self) -> int:
        return len(self._keys)
