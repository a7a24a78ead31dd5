"""
Connection descriptor validation.

Runs before any network use: a descriptor that fails here never reaches the
connection manager.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from inventra_engine.common.exceptions import ConfigurationError
from inventra_engine.descriptors.schemas import (
    SUPPORTED_ENGINES,
    ConnectionDescriptor,
    HostKind,
    UsernameCheck,
    _DescriptorBase,
    classify_mongo_host,
    descriptor_adapter,
)

USERNAME_MIN_LENGTH = 3
USERNAME_PATTERN = re.compile(r"[a-zA-Z0-9_]+")

# Mail domains in a mongodb host or password mark a corrupted client-side config.
CORRUPTED_MARKERS = ("gmail.com", "yahoo.com", "hotmail.com")


def _coerce_mapping(raw: Any) -> Mapping:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"Database configuration is not valid JSON: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Database configuration must be an object")
    return raw


def _missing_fields(raw: Mapping) -> list[str]:
    host = raw.get("host")
    if host is not None and not isinstance(host, str):
        raise ConfigurationError(
            "Invalid database configuration: host must be a string", engine=raw["type"],
        )
    missing = [name for name in ("host", "database") if not raw.get(name)]
    port = raw.get("port")
    if port in (None, ""):
        needs_port = raw["type"] != "mongodb" or classify_mongo_host(host) is HostKind.SELF_HOSTED
        if needs_port:
            missing.insert(1, "port")
    return missing


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error["loc"] if p not in SUPPORTED_ENGINES)
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "Invalid database configuration: " + "; ".join(parts)


def _reject_corrupted(descriptor: ConnectionDescriptor) -> None:
    password = descriptor.password.get_secret_value()
    for marker in CORRUPTED_MARKERS:
        if marker in descriptor.host:
            raise ConfigurationError(
                f"Corrupted database configuration detected. Host contains invalid domain: "
                f"{descriptor.host}. Please clear your configuration and try again.",
                engine=descriptor.engine,
            )
        if marker in password:
            raise ConfigurationError(
                "Corrupted database configuration detected. Password contains an invalid domain. "
                "Please clear your configuration and try again.",
                engine=descriptor.engine,
            )


def validate_descriptor(raw: Any) -> ConnectionDescriptor:
    """
    Validate a tenant-supplied connection descriptor.

    Accepts an already-built descriptor, a mapping, or a JSON string (the
    header form). Never opens a connection.

    Raises:
        ConfigurationError: missing or unsupported engine tag, missing
            host/port/database, or any malformed field.
    """
    if isinstance(raw, _DescriptorBase):
        return raw

    data = _coerce_mapping(raw)
    engine = data.get("type")
    if not engine:
        raise ConfigurationError("Missing required database configuration fields: type")
    if engine not in SUPPORTED_ENGINES:
        raise ConfigurationError(f"Unsupported database type: {engine}")

    missing = _missing_fields(data)
    if missing:
        raise ConfigurationError(
            f"Missing required database configuration fields: {', '.join(missing)}",
            engine=engine,
        )

    try:
        descriptor = descriptor_adapter.validate_python(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(_format_errors(exc), engine=engine) from exc

    if descriptor.engine == "mongodb":
        _reject_corrupted(descriptor)
    return descriptor


def validate_username_syntax(username: str) -> UsernameCheck:
    """Offline username rules shared by every signup path."""
    if len(username) < USERNAME_MIN_LENGTH:
        return UsernameCheck(
            available=False,
            message=f"Username must be at least {USERNAME_MIN_LENGTH} characters long",
        )
    if not USERNAME_PATTERN.fullmatch(username):
        return UsernameCheck(
            available=False,
            message="Username can only contain letters, numbers, and underscores",
        )
    return UsernameCheck(available=True, message="Username is available")
