"""
Configuration for the s3conn engine.

Configuration is an immutable snapshot passed explicitly to the components
that need it (through the ClientContext). There is no ambient lookup:
a connection only ever reads the snapshot its context currently holds.

Hierarchy of precedence (highest to lowest):
1. Values passed via S3ConnConfig.with_section_overrides()
2. Environment variables (S3CONN_*) - via S3ConnConfig.with_env_vars()
3. Hardcoded defaults (in dataclass fields)

Example:
    >>> from s3conn import S3ConnConfig
    >>>
    >>> config = S3ConnConfig().with_env_vars().with_section_overrides(
    ...     s3={"host": "s3.eu-west-1.amazonaws.com", "bucket_name": "photos"},
    ...     connection={"max_retries": 5},
    ... ).validate()
    >>> config.connection.max_retries
    5
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self
from urllib.parse import urlsplit

# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("S3CONN_CONNECTION_TIMEOUT", type_hint=int)
        30
        >>> EnvVars.get("S3CONN_S3_HOST")
        's3.amazonaws.com'
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return EnvVars._to_bool
        return str

    @staticmethod
    def _to_bool(value: str) -> bool:
        normalized = value.strip().lower()
        if normalized in ("true", "1", "yes", "on"):
            return True
        if normalized in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial
    field updates and `.with_env_vars()` for applying the environment
    variables declared in field metadata.

    Example:
        >>> config = ConnectionConfig()
        >>> custom = config.with_overrides({"timeout": 60})
        >>> custom.timeout
        60
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
                       Only existing fields are allowed.
            allow_none_fields: Set of field names that accept None as a valid value.
                       By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class S3Config(OverridableConfig):
    """
    Storage endpoint and credentials.

    Attributes:
        host: Service host name. A host starting with the bucket name selects
            virtual-host addressing, anything else path-style addressing.
            Env var: S3CONN_S3_HOST

        port: Service TCP port.
            Env var: S3CONN_S3_PORT

        ssl: Whether to talk HTTPS.
            Env var: S3CONN_S3_SSL

        region: Region used in the v4 credential scope.
            Env var: S3CONN_S3_REGION

        bucket_name: Bucket every request addresses.
            Env var: S3CONN_S3_BUCKET_NAME

        access_key_id: Access key id echoed in the Authorization header.
            Env var: S3CONN_S3_ACCESS_KEY_ID

        secret_access_key: Secret used to compute signatures.
            Env var: S3CONN_S3_SECRET_ACCESS_KEY

        use_awsv4: Select the canonical-request (v4) signing scheme instead of
            the legacy (v2) one.
            Env var: S3CONN_S3_USE_AWSV4
    """

    host: str = field(default="s3.amazonaws.com", metadata={"env": "S3CONN_S3_HOST"})
    port: int = field(default=80, metadata={"env": "S3CONN_S3_PORT"})
    ssl: bool = field(default=False, metadata={"env": "S3CONN_S3_SSL"})
    region: str = field(default="us-east-1", metadata={"env": "S3CONN_S3_REGION"})
    bucket_name: str | None = field(default=None, metadata={"env": "S3CONN_S3_BUCKET_NAME"})
    access_key_id: str | None = field(default=None, metadata={"env": "S3CONN_S3_ACCESS_KEY_ID"})
    secret_access_key: str | None = field(default=None, metadata={"env": "S3CONN_S3_SECRET_ACCESS_KEY"}, repr=False)
    use_awsv4: bool = field(default=False, metadata={"env": "S3CONN_S3_USE_AWSV4"})

    @property
    def scheme(self) -> str:
        return "https" if self.ssl else "http"

    def has_credentials(self) -> bool:
        """Check if both access_key_id and secret_access_key are set."""
        return bool(self.access_key_id and self.secret_access_key)

    def with_endpoint(self, url: str) -> S3Config:
        """
        Return a new config pointing at the endpoint of a redirect.

        Accepts either a full URL (``https://host:port/...``) as sent in a
        ``Location`` header, or a bare host name as found in the
        ``/Error/Endpoint`` element of an error body. A bare host keeps the
        current port and TLS setting.

        Raises:
            ConfigValidationError: If no host can be extracted.

        Example:
            >>> S3Config(host="s3.amazonaws.com").with_endpoint("https://b.s3-eu-west-1.amazonaws.com/x").host
            'b.s3-eu-west-1.amazonaws.com'
        """
        url = (url or "").strip()
        has_scheme = "://" in url
        parsed = urlsplit(url if has_scheme else f"//{url}")

        try:
            host = parsed.hostname
            explicit_port = parsed.port
        except ValueError as e:
            raise ConfigValidationError("host", url, f"Not a valid endpoint: {e}", section="s3") from e

        if not host:
            raise ConfigValidationError("host", url, "Endpoint has no host.", section="s3")

        if has_scheme:
            ssl = parsed.scheme.lower() == "https"
            port = explicit_port or (443 if ssl else 80)
        else:
            ssl = self.ssl
            port = explicit_port or self.port

        return replace(self, host=host, port=port, ssl=ssl)

    def validate(self) -> Self:
        """Validate s3 configuration fields."""
        if not self.host:
            raise ConfigValidationError(
                "host", self.host,
                "Must not be empty.", section="s3"
            )
        if not (0 < self.port < 65536):
            raise ConfigValidationError(
                "port", self.port,
                "Must be between 1 and 65535.", section="s3"
            )
        if not self.region:
            raise ConfigValidationError(
                "region", self.region,
                "Must not be empty.", section="s3"
            )
        if self.bucket_name is not None and self.bucket_name == "":
            raise ConfigValidationError(
                "bucket_name", self.bucket_name,
                "Must not be empty string.", section="s3"
            )
        if self.access_key_id is not None and self.access_key_id == "":
            raise ConfigValidationError(
                "access_key_id", self.access_key_id,
                "Must not be empty string.", section="s3"
            )
        if self.secret_access_key is not None and self.secret_access_key == "":
            raise ConfigValidationError(
                "secret_access_key", "***",
                "Must not be empty string.", section="s3"
            )
        return self


@dataclass(frozen=True)
class ConnectionConfig(OverridableConfig):
    """
    Transport, retry and redirect settings.

    Attributes:
        timeout: Transport timeout in seconds (connect and read).
            Env var: S3CONN_CONNECTION_TIMEOUT

        retries: Transport-level automatic retries for connect/read errors,
            performed by urllib3 below the dispatcher.
            Env var: S3CONN_CONNECTION_RETRIES

        max_retries: Maximum number of failed attempts the dispatcher tolerates
            for one logical request. The attempt that brings the retry counter
            to this value terminates the request.
            Env var: S3CONN_CONNECTION_MAX_RETRIES

        max_redirects: Maximum number of redirects followed for one logical request.
            Env var: S3CONN_CONNECTION_MAX_REDIRECTS

        retry_backoff: Seconds to wait (with jitter) before a retry.
            Use 0 to retry immediately.
            Env var: S3CONN_CONNECTION_RETRY_BACKOFF
    """

    timeout: int = field(default=30, metadata={"env": "S3CONN_CONNECTION_TIMEOUT"})
    retries: int = field(default=2, metadata={"env": "S3CONN_CONNECTION_RETRIES"})
    max_retries: int = field(default=5, metadata={"env": "S3CONN_CONNECTION_MAX_RETRIES"})
    max_redirects: int = field(default=20, metadata={"env": "S3CONN_CONNECTION_MAX_REDIRECTS"})
    retry_backoff: float = field(default=0.0, metadata={"env": "S3CONN_CONNECTION_RETRY_BACKOFF"})

    def validate(self) -> Self:
        """Validate connection configuration fields."""
        if self.timeout <= 0:
            raise ConfigValidationError(
                "timeout", self.timeout,
                "Must be greater than 0.", section="connection"
            )
        if self.retries < 0:
            raise ConfigValidationError(
                "retries", self.retries,
                "Must be >= 0.", section="connection"
            )
        if self.max_retries < 0:
            raise ConfigValidationError(
                "max_retries", self.max_retries,
                "Must be >= 0.", section="connection"
            )
        if self.max_redirects < 0:
            raise ConfigValidationError(
                "max_redirects", self.max_redirects,
                "Must be >= 0.", section="connection"
            )
        if self.retry_backoff < 0:
            raise ConfigValidationError(
                "retry_backoff", self.retry_backoff,
                "Must be >= 0.", section="connection"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A single configuration entry with its current value.

    Attributes:
        name: The field name.
        value: The current value.
        secret: Whether the value must be masked when displayed.
    """

    name: str
    value: Any
    secret: bool = False

    @property
    def formatted_value(self) -> str:
        """
        Return the value formatted for display.

        Secrets are masked; long values are truncated to 50 characters.
        """
        if self.value is None:
            return "None"

        if self.secret:
            str_value = str(self.value)
            return "****" + str_value[-4:] if len(str_value) > 8 else "********"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."

        return str_value


_SECRET_FIELDS = frozenset({"secret_access_key"})


@dataclass(frozen=True)
class S3ConnConfig:
    """
    Root configuration snapshot.

    Aggregates the ``s3`` and ``connection`` sections.

    Attributes:
        s3: Storage endpoint and credentials.
        connection: Transport, retry and redirect settings.

    Example:
        >>> config = S3ConnConfig().with_env_vars()
        >>> config.connection.timeout
        30
    """

    s3: S3Config = field(default_factory=S3Config)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    def with_env_vars(self) -> S3ConnConfig:
        """
        Return a new config with S3CONN_* environment variables applied on top.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        return S3ConnConfig(
            s3=self.s3.with_env_vars(),
            connection=self.connection.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        s3: dict[str, Any] | None = None,
        connection: dict[str, Any] | None = None,
    ) -> S3ConnConfig:
        """
        Return a new config with overrides applied to nested sections.

        Raises:
            ValueError: If any dict contains unknown field names.
        """
        return S3ConnConfig(
            s3=self.s3.with_overrides(s3 or {}),
            connection=self.connection.with_overrides(connection or {}),
        )

    def with_endpoint(self, url: str) -> S3ConnConfig:
        """Return a new config whose s3 section points at ``url``."""
        return replace(self, s3=self.s3.with_endpoint(url))

    def validate(self) -> S3ConnConfig:
        """
        Validate all sections.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self.s3.validate()
        self.connection.validate()
        return self

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return config values per section, secrets flagged for masking."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in ("s3", "connection"):
            section_config = getattr(self, section_name)
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    secret=f.name in _SECRET_FIELDS,
                )
                for f in fields(section_config)
            ]
        return result

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print the configuration, one line per field.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `config.explain(logger.info)`
        """
        name_width = 25
        output("s3conn Configuration:")
        output("=" * 60)
        for section_name, entries in self.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                output(f"  {entry.name} {dots} {entry.formatted_value}")
        output("=" * 60)
