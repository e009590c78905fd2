"""Range sources: the only boundary between the transfer core and a service.

A :class:`RangeFetcher` answers two questions: how long is the blob (and
which version is it), and what bytes live at ``[offset, offset + length)``.
Implementations here talk to an HTTP blob endpoint through ``httpx``, to an
S3-compatible store through ``boto3``, or decrypt another fetcher's ranges.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError

from .encryption import (
    BLOCK_SIZE,
    adjust_range_for_decryption,
    decrypt_range_with_key,
)
from .errors import (
    BlobTransferError,
    ConfigurationError,
    ConsistencyError,
    FetchError,
    SourceIntegrityError,
)
from .retry import RETRYABLE_STATUS_CODES

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

    from .encryption import AdjustedRange, BlobEncryptionPolicy, EncryptionMetadata
    from .settings import S3Settings

LOG = logging.getLogger("blob_transfer.fetcher")

# Largest range the service returns a transactional MD5 for.
MAX_RANGE_GET_CONTENT_MD5_SIZE = 4 * 1024 * 1024

_CONTENT_RANGE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)
_THROTTLING_CODES = {
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


@dataclass(frozen=True)
class AccessConditions:
    """Preconditions attached to a range request."""

    if_match: str | None = None


@dataclass(frozen=True)
class BlobProperties:
    length: int
    etag: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    content_md5: str | None = None


@dataclass
class RangeResponse:
    """An open range download.

    ``chunks`` must be consumed or the response closed with :meth:`aclose`.
    ``verified`` marks a body the fetcher already checked against the
    service's transactional MD5.
    """

    chunks: AsyncIterator[bytes]
    offset: int
    length: int
    etag: str | None = None
    content_range: str | None = None
    content_md5: str | None = None
    close: Callable[[], Awaitable[None]] | None = None
    verified: bool = False

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self.chunks])

    async def aclose(self) -> None:
        aclose = getattr(self.chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.close is not None:
            await self.close()


@runtime_checkable
class RangeFetcher(Protocol):
    async def probe(self) -> BlobProperties: ...

    async def fetch_range(
        self,
        offset: int,
        length: int | None,
        *,
        conditions: AccessConditions | None = None,
        transactional_md5: bool = False,
    ) -> RangeResponse: ...


def format_range_header(offset: int, length: int | None) -> str:
    if length is None:
        return f"bytes={offset}-"
    return f"bytes={offset}-{offset + length - 1}"


def parse_content_range(value: str) -> tuple[int, int, int | None]:
    """Parse ``bytes start-end/total`` into its parts (total may be unknown).

    Raises:
        ValueError: If the header is not a satisfied byte range.
    """
    match = _CONTENT_RANGE.match(value)
    if match is None:
        msg = f"invalid Content-Range {value!r}"
        raise ValueError(msg)
    start, end, total = match.groups()
    return int(start), int(end), None if total == "*" else int(total)


def content_md5(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")  # noqa: S324


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


class HttpRangeFetcher:
    """Range reads against an HTTP blob URL.

    Blob metadata is read from response headers carrying *metadata_prefix*.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        metadata_prefix: str = "x-ms-meta-",
        headers: Mapping[str, str] | None = None,
    ):
        self._client = client
        self._url = url
        self._metadata_prefix = metadata_prefix.lower()
        self._headers = dict(headers or {})

    async def probe(self) -> BlobProperties:
        request = self._client.build_request(
            "GET", self._url, headers={**self._headers, "Range": "bytes=0-0"}
        )
        response = await self._send(request)
        try:
            if response.status_code == 416:
                # Empty blobs cannot satisfy any range; read the headers from a
                # plain GET instead.
                await response.aclose()
                request = self._client.build_request(
                    "GET", self._url, headers=self._headers
                )
                response = await self._send(request)
            self._raise_for_status(response)
            headers = response.headers
            if response.status_code == 206:
                _, _, total = parse_content_range(headers.get("content-range", ""))
                if total is None:
                    msg = f"service did not report the length of {self._url}"
                    raise FetchError(msg, status_code=206, transient=False)
                length = total
            else:
                length = int(headers.get("content-length", "0"))
        except ValueError as error:
            msg = f"malformed probe response for {self._url}: {error}"
            raise FetchError(
                msg, status_code=response.status_code, transient=False
            ) from error
        finally:
            await response.aclose()

        metadata = {
            name[len(self._metadata_prefix) :]: value
            for name, value in headers.items()
            if name.lower().startswith(self._metadata_prefix)
        }
        LOG.debug("probed %s length=%d etag=%s", self._url, length, headers.get("etag"))
        return BlobProperties(
            length=length,
            etag=headers.get("etag"),
            metadata=metadata,
            content_md5=headers.get("x-ms-blob-content-md5"),
        )

    async def fetch_range(
        self,
        offset: int,
        length: int | None,
        *,
        conditions: AccessConditions | None = None,
        transactional_md5: bool = False,
    ) -> RangeResponse:
        headers = {**self._headers, "Range": format_range_header(offset, length)}
        if conditions is not None and conditions.if_match:
            headers["If-Match"] = conditions.if_match
        if transactional_md5:
            headers["x-ms-range-get-content-md5"] = "true"

        request = self._client.build_request("GET", self._url, headers=headers)
        response = await self._send(request)
        try:
            self._raise_for_status(response)
            if response.status_code != 206:
                msg = (
                    f"expected HTTP 206 for range request, got {response.status_code} "
                    f"({headers['Range']} of {self._url})"
                )
                raise FetchError(msg, status_code=response.status_code, transient=False)
        except BaseException:
            await response.aclose()
            raise

        content_length = response.headers.get("content-length")
        return RangeResponse(
            chunks=self._iter_body(response),
            offset=offset,
            length=int(content_length) if content_length is not None else length or 0,
            etag=response.headers.get("etag"),
            content_range=response.headers.get("content-range"),
            content_md5=response.headers.get("content-md5"),
            close=response.aclose,
        )

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._client.send(request, stream=True)
        except httpx.TransportError as error:
            msg = f"{request.method} {request.url} failed: {error!r}"
            raise FetchError(msg, transient=True) from error

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as error:
            msg = f"reading {self._url} failed: {error!r}"
            raise FetchError(msg, transient=True) from error

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 300:
            return
        if status == 412:
            msg = f"{self._url} changed while it was being read (HTTP 412)"
            raise ConsistencyError(msg)
        msg = f"HTTP {status} from {self._url}"
        transient = status in RETRYABLE_STATUS_CODES
        raise FetchError(msg, status_code=status, transient=transient)


def build_s3_client(settings: S3Settings):
    session = Session(
        aws_access_key_id=settings.access_key,
        aws_secret_access_key=settings.secret_key,
        aws_session_token=settings.session_token,
        region_name=settings.region,
    )
    return session.client(
        "s3",
        endpoint_url=settings.endpoint,
        config=BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": settings.max_attempts},
            s3={"addressing_style": settings.addressing_style},
        ),
    )


class S3RangeFetcher:
    """Range reads of one object in an S3-compatible store.

    boto3 is synchronous; every call runs in a worker thread.
    """

    def __init__(self, client, bucket: str, key: str, *, read_size: int = 64 * 1024):
        self._client = client
        self._bucket = bucket
        self._key = key
        self._read_size = read_size

    @classmethod
    def from_settings(
        cls, bucket: str, key: str, settings: S3Settings | None = None
    ) -> S3RangeFetcher:
        from .settings import load_s3_settings_from_env

        client = build_s3_client(settings or load_s3_settings_from_env())
        return cls(client, bucket, key)

    async def probe(self) -> BlobProperties:
        result = await self._call(
            partial(self._client.head_object, Bucket=self._bucket, Key=self._key)
        )
        return BlobProperties(
            length=result.get("ContentLength", 0),
            etag=result.get("ETag"),
            metadata=result.get("Metadata") or {},
        )

    async def fetch_range(
        self,
        offset: int,
        length: int | None,
        *,
        conditions: AccessConditions | None = None,
        transactional_md5: bool = False,
    ) -> RangeResponse:
        if transactional_md5:
            msg = "S3 does not return per-range MD5 checksums"
            raise ConfigurationError(msg)
        get_kwargs: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": self._key,
            "Range": format_range_header(offset, length),
        }
        if conditions is not None and conditions.if_match:
            get_kwargs["IfMatch"] = conditions.if_match
        result = await self._call(partial(self._client.get_object, **get_kwargs))
        stream = result["Body"]

        async def iterator() -> AsyncIterator[bytes]:
            while True:
                try:
                    chunk = await _run_sync(stream.read, self._read_size)
                except (BotoConnectionError, HTTPClientError) as error:
                    msg = f"reading s3://{self._bucket}/{self._key} failed: {error}"
                    raise FetchError(msg, transient=True) from error
                if not chunk:
                    break
                yield chunk

        return RangeResponse(
            chunks=iterator(),
            offset=offset,
            length=result.get("ContentLength", length or 0),
            etag=result.get("ETag"),
            content_range=result.get("ContentRange"),
            close=partial(_run_sync, stream.close),
        )

    async def _call(self, func: Callable[[], Any]) -> Any:
        try:
            return await _run_sync(func)
        except ClientError as error:
            raise self._translate(error) from error
        except (BotoConnectionError, HTTPClientError) as error:
            msg = f"request for s3://{self._bucket}/{self._key} failed: {error}"
            raise FetchError(msg, transient=True) from error

    def _translate(self, error: ClientError) -> BlobTransferError:
        code = error.response.get("Error", {}).get("Code")
        metadata = error.response.get("ResponseMetadata", {})
        status = int(metadata.get("HTTPStatusCode", 0))
        if status == 412 or code in {"412", "PreconditionFailed"}:
            msg = f"s3://{self._bucket}/{self._key} changed while it was being read"
            return ConsistencyError(msg)
        transient = status in RETRYABLE_STATUS_CODES or code in _THROTTLING_CODES
        msg = f"s3://{self._bucket}/{self._key}: {code} ({status})"
        return FetchError(msg, status_code=status or None, transient=transient)


class EncryptedRangeFetcher:
    """Serves plaintext ranges of a client-side encrypted blob.

    Wraps another fetcher. The probe reports the plaintext length, which
    costs one extra range read of the final two blocks to learn the padding.
    Blobs without encryption metadata pass through unchanged unless the
    policy requires encryption.
    """

    def __init__(
        self,
        inner: RangeFetcher,
        policy: BlobEncryptionPolicy,
        *,
        no_padding: bool = False,
    ):
        self._inner = inner
        self._policy = policy
        self._no_padding = no_padding
        self._probed: BlobProperties | None = None
        self._metadata: EncryptionMetadata | None = None
        self._content_key: bytes | None = None
        self._cipher_length = 0

    async def probe(self) -> BlobProperties:
        properties = await self._inner.probe()
        self._metadata = self._policy.metadata_from(properties.metadata)
        self._cipher_length = properties.length
        if self._metadata is None:
            self._probed = properties
            return properties

        self._content_key = self._policy.unwrap(self._metadata)
        plain_length = await self._plaintext_length(properties.etag)
        LOG.debug(
            "encrypted blob cipher_length=%d plain_length=%d",
            self._cipher_length,
            plain_length,
        )
        self._probed = BlobProperties(
            length=plain_length, etag=properties.etag, metadata=properties.metadata
        )
        return self._probed

    async def fetch_range(
        self,
        offset: int,
        length: int | None,
        *,
        conditions: AccessConditions | None = None,
        transactional_md5: bool = False,
    ) -> RangeResponse:
        if self._probed is None:
            await self.probe()
        if self._metadata is None:
            return await self._inner.fetch_range(
                offset,
                length,
                conditions=conditions,
                transactional_md5=transactional_md5,
            )

        adjusted = adjust_range_for_decryption(
            offset, length, encrypted_length=self._cipher_length
        )
        if transactional_md5:
            cipher, response = await self._read_verified(adjusted, conditions)
        else:
            response = await self._inner.fetch_range(
                adjusted.cipher_offset,
                adjusted.cipher_length,
                conditions=conditions,
            )
            try:
                cipher = await response.read()
            finally:
                await response.aclose()

        plain = decrypt_range_with_key(
            cipher,
            adjusted,
            self._metadata,
            self._content_key,
            no_padding=self._no_padding,
        )
        return RangeResponse(
            chunks=_single_chunk(plain),
            offset=offset,
            length=len(plain),
            etag=response.etag,
            content_range=response.content_range,
            verified=transactional_md5,
        )

    async def _read_verified(
        self, adjusted: AdjustedRange, conditions: AccessConditions | None
    ) -> tuple[bytes, RangeResponse]:
        """Read the ciphertext range in pieces the service returns an MD5 for.

        Widening a plaintext range for the IV and block alignment can push it
        past the per-range MD5 limit, so the ciphertext is fetched and checked
        in pieces of at most ``MAX_RANGE_GET_CONTENT_MD5_SIZE`` bytes.
        """
        position = adjusted.cipher_offset
        end = (
            self._cipher_length
            if adjusted.cipher_length is None
            else adjusted.cipher_offset + adjusted.cipher_length
        )
        parts = []
        response = None
        while position < end:
            count = min(MAX_RANGE_GET_CONTENT_MD5_SIZE, end - position)
            response = await self._inner.fetch_range(
                position, count, conditions=conditions, transactional_md5=True
            )
            try:
                piece = await response.read()
            finally:
                await response.aclose()
            if response.content_md5 is None:
                msg = f"service did not return Content-MD5 for bytes at {position}"
                raise SourceIntegrityError(msg)
            if response.content_md5 != content_md5(piece):
                msg = (
                    f"MD5 mismatch for ciphertext bytes {position}-"
                    f"{position + len(piece) - 1}"
                )
                raise SourceIntegrityError(msg)
            parts.append(piece)
            position += len(piece)
            if len(piece) < count:
                break
        if response is None:
            msg = f"empty ciphertext range at {adjusted.cipher_offset}"
            raise SourceIntegrityError(msg)
        return b"".join(parts), response

    async def _plaintext_length(self, etag: str | None) -> int:
        if self._no_padding or self._cipher_length == 0:
            return self._cipher_length
        adjusted = adjust_range_for_decryption(
            self._cipher_length - BLOCK_SIZE,
            BLOCK_SIZE,
            encrypted_length=self._cipher_length,
        )
        response = await self._inner.fetch_range(
            adjusted.cipher_offset,
            adjusted.cipher_length,
            conditions=AccessConditions(if_match=etag),
        )
        try:
            tail = await response.read()
        finally:
            await response.aclose()
        last_block = decrypt_range_with_key(
            tail, adjusted, self._metadata, self._content_key
        )
        return self._cipher_length - BLOCK_SIZE + len(last_block)
