from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KIB = 1024
MIB = 1024 * KIB


class DownloadSettings(BaseSettings):
    """Defaults for parallel ranged downloads."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    range_size: int = Field(
        default=16 * MIB,
        validation_alias="BLOB_TRANSFER_RANGE_SIZE",
    )
    max_concurrency: int = Field(
        default=16,
        validation_alias="BLOB_TRANSFER_MAX_CONCURRENCY",
    )
    max_retries: int = Field(
        default=3,
        validation_alias="BLOB_TRANSFER_MAX_RETRIES",
    )
    backoff_base: float = Field(
        default=0.5,
        validation_alias="BLOB_TRANSFER_BACKOFF_BASE",
    )
    backoff_max: float = Field(
        default=30.0,
        validation_alias="BLOB_TRANSFER_BACKOFF_MAX",
    )
    max_idle_seconds: float = Field(
        default=120.0,
        validation_alias="BLOB_TRANSFER_MAX_IDLE_SECONDS",
    )
    use_transactional_md5: bool = Field(
        default=False,
        validation_alias="BLOB_TRANSFER_USE_TRANSACTIONAL_MD5",
    )
    write_buffer_size: int = Field(
        default=1 * MIB,
        validation_alias="BLOB_TRANSFER_WRITE_BUFFER_SIZE",
    )

    @field_validator("max_concurrency", "write_buffer_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            msg = "value must be >= 1"
            raise ValueError(msg)
        return value

    @field_validator("max_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        return value

    @field_validator("max_idle_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            msg = "max_idle_seconds must be > 0"
            raise ValueError(msg)
        return value


class EncryptionSettings(BaseSettings):
    """Defaults for client-side encryption."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    require_encryption: bool = Field(
        default=False,
        validation_alias="BLOB_TRANSFER_REQUIRE_ENCRYPTION",
    )
    chunk_size: int = Field(
        default=4 * MIB,
        validation_alias="BLOB_TRANSFER_ENCRYPTION_CHUNK_SIZE",
    )

    @field_validator("chunk_size")
    @classmethod
    def _block_multiple(cls, value: int) -> int:
        if value < 16 or value % 16:
            msg = "chunk_size must be a positive multiple of 16"
            raise ValueError(msg)
        return value


class S3Settings(BaseSettings):
    """Connection settings for S3-compatible range sources."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="BLOB_TRANSFER_S3_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BLOB_TRANSFER_S3_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BLOB_TRANSFER_S3_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BLOB_TRANSFER_S3_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "BLOB_TRANSFER_S3_REGION",
            "AWS_REGION",
        ),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="virtual",
        validation_alias="BLOB_TRANSFER_S3_ADDRESSING_STYLE",
    )
    max_attempts: int = Field(
        default=3,
        validation_alias="BLOB_TRANSFER_S3_MAX_ATTEMPTS",
    )


def load_download_settings_from_env() -> DownloadSettings:
    """Load download settings from environment variables.

    Returns:
        DownloadSettings instance populated from environment variables.
    """
    return DownloadSettings()


def load_encryption_settings_from_env() -> EncryptionSettings:
    """Load encryption settings from environment variables.

    Returns:
        EncryptionSettings instance populated from environment variables.
    """
    return EncryptionSettings()


def load_s3_settings_from_env() -> S3Settings:
    """Load S3 connection settings from environment variables.

    Returns:
        S3Settings instance populated from environment variables.
    """
    return S3Settings()
