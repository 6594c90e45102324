"""
Engine Configuration
====================

Immutable, environment-aware configuration with security-first defaults.

Security Features:
- Immutable configuration after initialization
- Environment variable override support (ZEROVAULT_ prefix)
- Keys that look like secrets are never read from the environment
- KDF salt and iteration count are constants, not configuration:
  changing them would change every derived content key
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Final, Optional

from zerovault.core.logging import configure_logging


_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key_material", "token", "api_key",
    "private", "credential", "auth", "salt", "iterations",
})

DEFAULT_CHUNK_SIZE: Final[int] = 64 * 1024  # 64 KiB
MAX_CHUNK_SIZE: Final[int] = 16 * 1024 * 1024

DEFAULT_ALLOWED_TYPES: Final[tuple[str, ...]] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip",
    "application/x-zip-compressed",
    "application/octet-stream",
)


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


@dataclass(frozen=True, slots=True)
class CipherConfig:
    """Chunked cipher settings."""

    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.chunk_size <= 0 or self.chunk_size % 16 != 0:
            raise ValueError("chunk_size must be a positive multiple of 16 bytes")
        if self.chunk_size > MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be at most {MAX_CHUNK_SIZE} bytes")


@dataclass(frozen=True, slots=True)
class PreviewConfig:
    """Preview pipeline limits."""

    max_text_preview_chars: int = 100_000
    sniff_prefix_bytes: int = 8192
    max_preview_bytes: int = 100 * 1024 * 1024  # 100 MiB

    def __post_init__(self) -> None:
        if self.max_text_preview_chars < 1:
            raise ValueError("max_text_preview_chars must be positive")
        if self.sniff_prefix_bytes < 16:
            raise ValueError("sniff_prefix_bytes must be at least 16")
        if self.max_preview_bytes < 1:
            raise ValueError("max_preview_bytes must be positive")


@dataclass(frozen=True, slots=True)
class UploadConfig:
    """Client-side checks applied before a file is encrypted."""

    max_file_size: int = 100 * 1024 * 1024  # 100 MiB
    max_filename_length: int = 255
    allowed_types: tuple[str, ...] = field(default=DEFAULT_ALLOWED_TYPES)
    # Server-side rule: after collapsing whitespace, only [A-Za-z0-9._-]
    restrict_filename_charset: bool = False

    def __post_init__(self) -> None:
        if self.max_file_size < 1:
            raise ValueError("max_file_size must be positive")
        if self.max_filename_length < 1:
            raise ValueError("max_filename_length must be positive")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    enable_console: bool = True
    enable_json: bool = False

    def __post_init__(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")

    def apply(self) -> int:
        """Apply these settings to the zerovault loggers."""
        return configure_logging(
            level=self.level,
            enable_console=self.enable_console,
            enable_json=self.enable_json,
        )


class VaultConfig:
    """
    Immutable engine configuration with environment override support.

    Usage:
        config = VaultConfig.load()
        chunk_size = config.cipher.chunk_size

    Unlike a process-wide singleton, a VaultConfig is built by the caller
    and passed to the components that need it.
    """

    __slots__ = ("_cipher", "_preview", "_upload", "_logging", "_frozen", "_config_hash")

    def __init__(
        self,
        cipher: Optional[CipherConfig] = None,
        preview: Optional[PreviewConfig] = None,
        upload: Optional[UploadConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_cipher", cipher or CipherConfig())
        object.__setattr__(self, "_preview", preview or PreviewConfig())
        object.__setattr__(self, "_upload", upload or UploadConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        config_str = f"{self._cipher}|{self._preview}|{self._upload}|{self._logging}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def cipher(self) -> CipherConfig:
        return self._cipher

    @property
    def preview(self) -> PreviewConfig:
        return self._preview

    @property
    def upload(self) -> UploadConfig:
        return self._upload

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @classmethod
    def load(cls, env_prefix: str = "ZEROVAULT", apply_logging: bool = True) -> VaultConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables use double underscores for nested values.

        Examples:
            ZEROVAULT_CIPHER__CHUNK_SIZE=131072
            ZEROVAULT_PREVIEW__MAX_TEXT_PREVIEW_CHARS=20000
            ZEROVAULT_LOGGING__LEVEL=DEBUG

        Args:
            env_prefix: Prefix for environment variables
            apply_logging: Apply the logging section to the zerovault loggers

        Returns:
            Configured VaultConfig instance
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        cipher_kwargs: dict[str, Any] = {}
        if "cipher.chunk_size" in env_overrides:
            cipher_kwargs["chunk_size"] = int(env_overrides["cipher.chunk_size"])

        preview_kwargs: dict[str, Any] = {}
        for name in ("max_text_preview_chars", "sniff_prefix_bytes", "max_preview_bytes"):
            if f"preview.{name}" in env_overrides:
                preview_kwargs[name] = int(env_overrides[f"preview.{name}"])

        upload_kwargs: dict[str, Any] = {}
        for name in ("max_file_size", "max_filename_length"):
            if f"upload.{name}" in env_overrides:
                upload_kwargs[name] = int(env_overrides[f"upload.{name}"])
        if "upload.restrict_filename_charset" in env_overrides:
            upload_kwargs["restrict_filename_charset"] = (
                env_overrides["upload.restrict_filename_charset"].lower() == "true"
            )

        logging_kwargs: dict[str, Any] = {}
        if "logging.level" in env_overrides:
            logging_kwargs["level"] = env_overrides["logging.level"]
        if "logging.enable_console" in env_overrides:
            logging_kwargs["enable_console"] = env_overrides["logging.enable_console"].lower() == "true"
        if "logging.enable_json" in env_overrides:
            logging_kwargs["enable_json"] = env_overrides["logging.enable_json"].lower() == "true"

        config = cls(
            cipher=CipherConfig(**cipher_kwargs) if cipher_kwargs else None,
            preview=PreviewConfig(**preview_kwargs) if preview_kwargs else None,
            upload=UploadConfig(**upload_kwargs) if upload_kwargs else None,
            logging=LoggingConfig(**logging_kwargs) if logging_kwargs else None,
        )
        if apply_logging:
            config.logging.apply()
        return config

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                # ZEROVAULT_SECTION__KEY -> section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    def __repr__(self) -> str:
        return f"VaultConfig(hash={self._config_hash})"

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("VaultConfig is immutable after initialization")
        super().__setattr__(name, value)
