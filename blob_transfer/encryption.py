"""Client-side envelope encryption of blob content.

Blob content is encrypted with AES-256-CBC under a fresh content key and IV
per blob. The content key is wrapped with a caller supplied key encryption
key and stored, together with the IV, as JSON under the ``encryptiondata``
blob metadata key. The JSON field names match the format written by the
other storage client libraries so existing encrypted blobs stay readable.

Ranges of an encrypted blob are decrypted without downloading the whole
blob: the requested range is widened to whole AES blocks, plus one block in
front that serves as the IV (see :func:`adjust_range_for_decryption`).
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Annotated

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
)

from . import __version__
from .errors import (
    ConfigurationError,
    IntegrityError,
    InvalidArgumentError,
    KeyNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    from .keys import KeyEncryptionKey, KeyResolver
    from .settings import EncryptionSettings

LOG = logging.getLogger("blob_transfer.encryption")

ENCRYPTION_DATA_KEY = "encryptiondata"
ENCRYPTION_PROTOCOL_V1 = "1.0"
AES_CBC_256 = "AES_CBC_256"
FULL_BLOB = "FullBlob"
AGENT_METADATA_KEY = "EncryptionLibrary"
AGENT_METADATA_VALUE = f"Python {__version__}"

BLOCK_SIZE = 16
CONTENT_KEY_SIZE = 32
DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024


def _b64decode(value: object) -> object:
    if isinstance(value, str):
        return base64.b64decode(value, validate=True)
    return value


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


Base64Bytes = Annotated[
    bytes,
    BeforeValidator(_b64decode),
    PlainSerializer(_b64encode, return_type=str),
]


class WrappedContentKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    key_id: str = Field(alias="KeyId")
    encrypted_key: Base64Bytes = Field(alias="EncryptedKey")
    algorithm: str = Field(alias="Algorithm")


class EncryptionAgent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    protocol: str = Field(default=ENCRYPTION_PROTOCOL_V1, alias="Protocol")
    encryption_algorithm: str = Field(
        default=AES_CBC_256, alias="EncryptionAlgorithm"
    )


class EncryptionMetadata(BaseModel):
    """Encryption materials stored with an encrypted blob."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    encryption_mode: str = Field(default=FULL_BLOB, alias="EncryptionMode")
    wrapped_content_key: WrappedContentKey = Field(alias="WrappedContentKey")
    encryption_agent: EncryptionAgent = Field(
        default_factory=EncryptionAgent, alias="EncryptionAgent"
    )
    content_encryption_iv: Base64Bytes = Field(alias="ContentEncryptionIV")
    key_wrapping_metadata: dict[str, str] = Field(
        default_factory=dict, alias="KeyWrappingMetadata"
    )

    @field_validator("content_encryption_iv")
    @classmethod
    def _iv_is_one_block(cls, value: bytes) -> bytes:
        if len(value) != BLOCK_SIZE:
            msg = f"ContentEncryptionIV must be {BLOCK_SIZE} bytes, got {len(value)}"
            raise ValueError(msg)
        return value

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, value: str | bytes) -> EncryptionMetadata:
        """Parse the JSON stored under ``encryptiondata``.

        Raises:
            IntegrityError: If the JSON is malformed or incomplete.
        """
        try:
            return cls.model_validate_json(value)
        except ValidationError as error:
            msg = "blob encryption metadata is malformed"
            raise IntegrityError(msg) from error

    def to_blob_metadata(self) -> dict[str, str]:
        return {ENCRYPTION_DATA_KEY: self.to_json()}

    @classmethod
    def from_blob_metadata(
        cls, metadata: Mapping[str, str]
    ) -> EncryptionMetadata | None:
        """Return the parsed metadata, or ``None`` for an unencrypted blob."""
        for name, value in metadata.items():
            if name.lower() == ENCRYPTION_DATA_KEY:
                return cls.from_json(value)
        return None


class BlobEncryptionPolicy:
    """Keys and rules for encrypting uploads and decrypting downloads.

    For decryption the content key is unwrapped with ``key`` when its key id
    matches the blob's, otherwise with the key the resolver returns for the
    blob's key id.
    """

    def __init__(
        self,
        key: KeyEncryptionKey | None = None,
        key_resolver: KeyResolver | None = None,
        *,
        require_encryption: bool = False,
    ):
        self.key = key
        self.key_resolver = key_resolver
        self.require_encryption = require_encryption

    @classmethod
    def from_settings(
        cls,
        key: KeyEncryptionKey | None = None,
        key_resolver: KeyResolver | None = None,
        settings: EncryptionSettings | None = None,
    ) -> BlobEncryptionPolicy:
        from .settings import load_encryption_settings_from_env

        settings = settings or load_encryption_settings_from_env()
        return cls(key, key_resolver, require_encryption=settings.require_encryption)

    def wrap(self, content_key: bytes) -> WrappedContentKey:
        if self.key is None:
            msg = "a key encryption key is required to encrypt blobs"
            raise ConfigurationError(msg)
        encrypted_key, algorithm = self.key.wrap_key(content_key)
        return WrappedContentKey(
            key_id=self.key.kid, encrypted_key=encrypted_key, algorithm=algorithm
        )

    def unwrap(self, metadata: EncryptionMetadata) -> bytes:
        """Return the content key for *metadata*.

        Raises:
            ConfigurationError: If neither a key nor a resolver is set, or the
                blob uses an unsupported protocol or algorithm.
            KeyNotFoundError: If no key matches the blob's key id.
            IntegrityError: If the unwrapped key is not a valid content key.
        """
        _check_agent(metadata.encryption_agent)
        if self.key is None and self.key_resolver is None:
            msg = "a key or a key resolver is required to decrypt blobs"
            raise ConfigurationError(msg)

        wrapped = metadata.wrapped_content_key
        key = None
        if self.key is not None and self.key.kid == wrapped.key_id:
            key = self.key
        if key is None and self.key_resolver is not None:
            key = self.key_resolver.resolve(wrapped.key_id)
        if key is None:
            raise KeyNotFoundError(wrapped.key_id)

        content_key = key.unwrap_key(wrapped.encrypted_key, wrapped.algorithm)
        if len(content_key) != CONTENT_KEY_SIZE:
            msg = (
                f"unwrapped content key is {len(content_key)} bytes, "
                f"expected {CONTENT_KEY_SIZE}"
            )
            raise IntegrityError(msg)
        return content_key

    def metadata_from(
        self, blob_metadata: Mapping[str, str]
    ) -> EncryptionMetadata | None:
        """Parse encryption metadata, enforcing ``require_encryption``."""
        metadata = EncryptionMetadata.from_blob_metadata(blob_metadata)
        if metadata is None and self.require_encryption:
            msg = "encryption is required but the blob has no encryption metadata"
            raise ConfigurationError(msg)
        return metadata

    def encrypt(
        self,
        source: bytes | IO[bytes],
        *,
        no_padding: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> tuple[Iterator[bytes], EncryptionMetadata]:
        return _encrypt(source, self, no_padding=no_padding, chunk_size=chunk_size)


def _check_agent(agent: EncryptionAgent) -> None:
    if agent.protocol != ENCRYPTION_PROTOCOL_V1:
        msg = f"unsupported encryption protocol {agent.protocol!r}"
        raise ConfigurationError(msg)
    if agent.encryption_algorithm != AES_CBC_256:
        msg = f"unsupported encryption algorithm {agent.encryption_algorithm!r}"
        raise ConfigurationError(msg)


def _cipher(content_key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(content_key), modes.CBC(iv))


def _iter_source(source: bytes | IO[bytes], chunk_size: int) -> Iterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
        return
    while chunk := source.read(chunk_size):
        yield chunk


def encrypted_length(plain_length: int, *, no_padding: bool = False) -> int:
    """Size of the ciphertext for *plain_length* bytes of plaintext."""
    if no_padding:
        return plain_length
    return plain_length + (BLOCK_SIZE - plain_length % BLOCK_SIZE)


def encrypt_for_upload(
    source: bytes | IO[bytes],
    key: KeyEncryptionKey | None,
    *,
    no_padding: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> tuple[Iterator[bytes], EncryptionMetadata]:
    """Encrypt *source* under a fresh content key wrapped with *key*.

    The metadata is complete when this returns; the ciphertext is produced
    lazily as the returned iterator is consumed. Store the metadata with the
    blob (see :meth:`EncryptionMetadata.to_blob_metadata`).

    Args:
        source: Plaintext bytes or a binary file object.
        key: Key encryption key used to wrap the content key.
        no_padding: Page blob mode; the plaintext must be block aligned.
        chunk_size: Read size when *source* is a file object.

    Raises:
        ConfigurationError: If *key* is ``None``.
        InvalidArgumentError: If ``no_padding`` is set and the plaintext is
            not a multiple of the block size.
    """
    return _encrypt(
        source, BlobEncryptionPolicy(key), no_padding=no_padding, chunk_size=chunk_size
    )


def _encrypt(
    source: bytes | IO[bytes],
    policy: BlobEncryptionPolicy,
    *,
    no_padding: bool,
    chunk_size: int,
) -> tuple[Iterator[bytes], EncryptionMetadata]:
    if (
        no_padding
        and isinstance(source, (bytes, bytearray, memoryview))
        and len(source) % BLOCK_SIZE
    ):
        msg = f"unpadded encryption needs a multiple of {BLOCK_SIZE} bytes"
        raise InvalidArgumentError(msg)

    content_key = os.urandom(CONTENT_KEY_SIZE)
    iv = os.urandom(BLOCK_SIZE)
    metadata = EncryptionMetadata(
        wrapped_content_key=policy.wrap(content_key),
        content_encryption_iv=iv,
        key_wrapping_metadata={AGENT_METADATA_KEY: AGENT_METADATA_VALUE},
    )
    LOG.debug(
        "encrypting with kid=%s algorithm=%s",
        metadata.wrapped_content_key.key_id,
        metadata.wrapped_content_key.algorithm,
    )

    def ciphertext() -> Iterator[bytes]:
        encryptor = _cipher(content_key, iv).encryptor()
        padder = None if no_padding else padding.PKCS7(BLOCK_SIZE * 8).padder()
        for chunk in _iter_source(source, chunk_size):
            data = chunk if padder is None else padder.update(chunk)
            if out := encryptor.update(data):
                yield out
        tail = b"" if padder is None else encryptor.update(padder.finalize())
        try:
            tail += encryptor.finalize()
        except ValueError as error:
            msg = f"unpadded encryption needs a multiple of {BLOCK_SIZE} bytes"
            raise InvalidArgumentError(msg) from error
        if tail:
            yield tail

    return ciphertext(), metadata


def encrypt_bytes(
    data: bytes, key: KeyEncryptionKey | None, *, no_padding: bool = False
) -> tuple[bytes, EncryptionMetadata]:
    chunks, metadata = encrypt_for_upload(data, key, no_padding=no_padding)
    return b"".join(chunks), metadata


def decrypt_for_download(
    chunks: Iterable[bytes],
    metadata: EncryptionMetadata,
    policy: BlobEncryptionPolicy,
    *,
    no_padding: bool = False,
) -> Iterator[bytes]:
    """Decrypt a whole blob delivered as ciphertext chunks.

    The content key is unwrapped before this returns, so key errors surface
    immediately; data errors surface while iterating.

    Raises:
        KeyNotFoundError: If no key is available for the blob.
        IntegrityError: If the ciphertext is truncated or the padding is
            malformed.
    """
    content_key = policy.unwrap(metadata)
    decryptor = _cipher(content_key, metadata.content_encryption_iv).decryptor()

    def plaintext() -> Iterator[bytes]:
        unpadder = None if no_padding else padding.PKCS7(BLOCK_SIZE * 8).unpadder()
        for chunk in chunks:
            data = decryptor.update(chunk)
            if unpadder is not None:
                data = unpadder.update(data)
            if data:
                yield data
        try:
            tail = decryptor.finalize()
        except ValueError as error:
            msg = "ciphertext length is not a multiple of the block size"
            raise IntegrityError(msg) from error
        if unpadder is not None:
            try:
                tail = unpadder.update(tail) + unpadder.finalize()
            except ValueError as error:
                msg = "invalid PKCS7 padding in final block"
                raise IntegrityError(msg) from error
        if tail:
            yield tail

    return plaintext()


def decrypt_bytes(
    data: bytes,
    metadata: EncryptionMetadata,
    policy: BlobEncryptionPolicy,
    *,
    no_padding: bool = False,
) -> bytes:
    chunks = decrypt_for_download([data], metadata, policy, no_padding=no_padding)
    return b"".join(chunks)


@dataclass(frozen=True)
class AdjustedRange:
    """A plaintext range request and the ciphertext range that serves it.

    Attributes:
        offset: Requested plaintext offset.
        length: Requested plaintext length, ``None`` for "to the end".
        cipher_offset: First ciphertext byte to fetch.
        cipher_length: Ciphertext bytes to fetch, ``None`` for "to the end".
        discard_first: Decrypted bytes to drop before the requested data.
        iv_in_range: The first fetched block is the IV for the rest.
        reaches_end: The fetched range contains the blob's final block.
        length_known: The ciphertext length was known when adjusting, so
            *reaches_end* is exact.
    """

    offset: int
    length: int | None
    cipher_offset: int
    cipher_length: int | None
    discard_first: int
    iv_in_range: bool
    reaches_end: bool
    length_known: bool = False

    @property
    def data_offset(self) -> int:
        """Offset of the first ciphertext block that is decrypted."""
        return self.cipher_offset + (BLOCK_SIZE if self.iv_in_range else 0)


def adjust_range_for_decryption(
    offset: int,
    length: int | None = None,
    *,
    encrypted_length: int | None = None,
    block_size: int = BLOCK_SIZE,
) -> AdjustedRange:
    """Widen a plaintext range to the ciphertext range needed to decrypt it.

    The start is rounded down to a block boundary and moved back one more
    block for the IV unless it is the first block (whose IV comes from the
    metadata). The end is rounded up to a block boundary. When the
    ciphertext length is known the range is clamped to it. Without it a
    closed range of a padded blob can only be decrypted when the service
    returns a short chunk, since the final block cannot be told apart
    from any other.

    Raises:
        InvalidArgumentError: If the offset is negative, the length is not
            positive, or *encrypted_length* is not block aligned.
    """
    if offset < 0:
        msg = f"offset must be >= 0, got {offset}"
        raise InvalidArgumentError(msg)
    if length is not None and length < 1:
        msg = f"length must be >= 1, got {length}"
        raise InvalidArgumentError(msg)
    if encrypted_length is not None:
        if encrypted_length % block_size:
            msg = f"encrypted length {encrypted_length} is not block aligned"
            raise InvalidArgumentError(msg)
        if offset >= encrypted_length:
            msg = f"offset {offset} is beyond the blob end ({encrypted_length})"
            raise InvalidArgumentError(msg)

    end: int | None = None
    if length is not None:
        end = offset + length - 1
        end += -(end + 1) % block_size

    discard_first = offset % block_size
    start = offset - discard_first
    iv_in_range = start >= block_size
    if iv_in_range:
        start -= block_size

    if encrypted_length is not None:
        last = encrypted_length - 1
        end = last if end is None else min(end, last)
    reaches_end = end is None or (
        encrypted_length is not None and end >= encrypted_length - block_size
    )

    return AdjustedRange(
        offset=offset,
        length=length,
        cipher_offset=start,
        cipher_length=None if end is None else end - start + 1,
        discard_first=discard_first,
        iv_in_range=iv_in_range,
        reaches_end=reaches_end,
        length_known=encrypted_length is not None,
    )


def decrypt_range(
    cipher_chunk: bytes,
    adjusted: AdjustedRange,
    metadata: EncryptionMetadata,
    policy: BlobEncryptionPolicy,
    *,
    no_padding: bool = False,
) -> bytes:
    """Decrypt a chunk fetched for *adjusted* and trim it to the request.

    Padding is only validated when the chunk holds the blob's final block,
    either because the range says so or because the service returned fewer
    bytes than asked for.

    Raises:
        KeyNotFoundError: If no key is available for the blob.
        IntegrityError: If the chunk is truncated or the padding is malformed.
        InvalidArgumentError: If *adjusted* was built without the ciphertext
            length for a closed range of a padded blob and the chunk came
            back complete.
    """
    content_key = policy.unwrap(metadata)
    return decrypt_range_with_key(
        cipher_chunk, adjusted, metadata, content_key, no_padding=no_padding
    )


def decrypt_range_with_key(
    cipher_chunk: bytes,
    adjusted: AdjustedRange,
    metadata: EncryptionMetadata,
    content_key: bytes,
    *,
    no_padding: bool = False,
) -> bytes:
    if adjusted.iv_in_range:
        if len(cipher_chunk) < BLOCK_SIZE:
            msg = "range is missing its IV block"
            raise IntegrityError(msg)
        iv, data = cipher_chunk[:BLOCK_SIZE], cipher_chunk[BLOCK_SIZE:]
    else:
        iv, data = metadata.content_encryption_iv, cipher_chunk
    if len(data) % BLOCK_SIZE:
        msg = f"ciphertext range of {len(data)} bytes is not block aligned"
        raise IntegrityError(msg)
    if not data:
        return b""

    expected = adjusted.cipher_length
    if expected is not None and adjusted.iv_in_range:
        expected -= BLOCK_SIZE
    at_end = adjusted.reaches_end or (expected is not None and len(data) < expected)
    if not (at_end or no_padding or adjusted.length_known):
        # A full chunk may still end in the padded final block.
        msg = (
            "encrypted_length is required to decrypt a closed range of a "
            "padded blob"
        )
        raise InvalidArgumentError(msg)

    decryptor = _cipher(content_key, iv).decryptor()
    plain = decryptor.update(data) + decryptor.finalize()
    if at_end and not no_padding:
        unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
        try:
            plain = unpadder.update(plain) + unpadder.finalize()
        except ValueError as error:
            msg = "invalid PKCS7 padding in final block"
            raise IntegrityError(msg) from error

    start = adjusted.discard_first
    stop = None if adjusted.length is None else start + adjusted.length
    return plain[start:stop]
