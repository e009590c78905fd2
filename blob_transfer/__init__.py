"""Client-side blob encryption and parallel ranged downloads."""

__version__ = "0.1.0"

from .download import (  # noqa: E402
    CancellationSignal,
    DownloadRangeTask,
    ParallelDownloadJob,
    ParallelRangeDownloader,
    partition_range,
    validate_range_size,
)
from .encryption import (  # noqa: E402
    AdjustedRange,
    BlobEncryptionPolicy,
    EncryptionMetadata,
    adjust_range_for_decryption,
    decrypt_bytes,
    decrypt_for_download,
    decrypt_range,
    encrypt_bytes,
    encrypt_for_upload,
    encrypted_length,
)
from .errors import (  # noqa: E402
    BlobTransferError,
    ConfigurationError,
    ConsistencyError,
    FetchError,
    IntegrityError,
    InvalidArgumentError,
    KeyNotFoundError,
    OperationCanceledError,
    RangeAlignmentError,
    SourceIntegrityError,
    TransientDownloadError,
)
from .fetcher import (  # noqa: E402
    AccessConditions,
    BlobProperties,
    EncryptedRangeFetcher,
    HttpRangeFetcher,
    RangeFetcher,
    RangeResponse,
    S3RangeFetcher,
)
from .keys import KeyEncryptionKey, KeyResolver, RsaKey, SymmetricKey  # noqa: E402
from .read_stream import BlobReadStream  # noqa: E402
from .retry import RetryPolicy  # noqa: E402
from .settings import DownloadSettings, EncryptionSettings, S3Settings  # noqa: E402

__all__ = [
    "AccessConditions",
    "AdjustedRange",
    "BlobEncryptionPolicy",
    "BlobProperties",
    "BlobReadStream",
    "BlobTransferError",
    "CancellationSignal",
    "ConfigurationError",
    "ConsistencyError",
    "DownloadRangeTask",
    "DownloadSettings",
    "EncryptedRangeFetcher",
    "EncryptionMetadata",
    "EncryptionSettings",
    "FetchError",
    "HttpRangeFetcher",
    "IntegrityError",
    "InvalidArgumentError",
    "KeyEncryptionKey",
    "KeyNotFoundError",
    "KeyResolver",
    "OperationCanceledError",
    "ParallelDownloadJob",
    "ParallelRangeDownloader",
    "RangeAlignmentError",
    "RangeFetcher",
    "RangeResponse",
    "RetryPolicy",
    "RsaKey",
    "S3RangeFetcher",
    "S3Settings",
    "SourceIntegrityError",
    "SymmetricKey",
    "TransientDownloadError",
    "__version__",
    "adjust_range_for_decryption",
    "decrypt_bytes",
    "decrypt_for_download",
    "decrypt_range",
    "encrypt_bytes",
    "encrypt_for_upload",
    "encrypted_length",
    "partition_range",
    "validate_range_size",
]
