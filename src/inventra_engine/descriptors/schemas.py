"""Connection descriptor schemas, one tagged variant per supported engine."""

import enum
import hashlib
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, model_validator

MANAGED_MONGO_DOMAINS = ("mongodb.net",)
MANAGED_MONGO_SCHEME = "mongodb+srv://"

SUPPORTED_ENGINES = ("mysql", "postgresql", "mongodb")


class HostKind(str, enum.Enum):
    MANAGED_CLOUD = "managed-cloud"
    SELF_HOSTED = "self-hosted"


def classify_mongo_host(host: str | None) -> HostKind:
    """Managed-cloud when the host is a hosted-cluster domain or an SRV connection string."""
    host = host.strip() if isinstance(host, str) else ""
    if host.startswith(MANAGED_MONGO_SCHEME):
        return HostKind.MANAGED_CLOUD
    if any(domain in host for domain in MANAGED_MONGO_DOMAINS):
        return HostKind.MANAGED_CLOUD
    return HostKind.SELF_HOSTED


class DescriptorOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    ssl: bool = False
    connection_limit: int = Field(default=10, ge=1, le=100, alias="connectionLimit")
    charset: str = Field(default="utf8mb4", min_length=1, max_length=32)


class _DescriptorBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    host: str = Field(..., min_length=1, max_length=512)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: str = Field(..., min_length=1, max_length=128)
    username: str = ""
    password: SecretStr = SecretStr("")
    options: DescriptorOptions = DescriptorOptions()

    @property
    def engine(self) -> str:
        return self.type  # type: ignore[attr-defined]

    def public_fields(self) -> dict[str, Any]:
        """Non-secret fields safe to echo back to the caller."""
        return {
            "type": self.engine,
            "host": self.host,
            "port": self.port,
            "database": self.database,
        }

    def redacted(self) -> dict[str, Any]:
        """Loggable view with the password masked."""
        secret = self.password.get_secret_value()
        masked = f"{secret[0]}***({len(secret)})" if secret else "(empty)"
        return {**self.public_fields(), "username": self.username, "password": masked}

    def fingerprint(self) -> str:
        """Stable hash over everything that selects a distinct backend session."""
        material = json.dumps(
            [
                self.engine,
                self.host,
                self.port,
                self.database,
                self.username,
                self.password.get_secret_value(),
                self.options.ssl,
                self.options.charset,
                self.options.connection_limit,
            ],
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode()).hexdigest()


class MySQLDescriptor(_DescriptorBase):
    type: Literal["mysql"] = "mysql"

    @model_validator(mode="after")
    def _require_port(self):
        if self.port is None:
            raise ValueError("port is required for mysql")
        return self


class PostgreSQLDescriptor(_DescriptorBase):
    type: Literal["postgresql"] = "postgresql"

    @model_validator(mode="after")
    def _require_port(self):
        if self.port is None:
            raise ValueError("port is required for postgresql")
        return self


class MongoDBDescriptor(_DescriptorBase):
    type: Literal["mongodb"] = "mongodb"

    @property
    def host_kind(self) -> HostKind:
        return classify_mongo_host(self.host)

    @property
    def is_managed(self) -> bool:
        return self.host_kind is HostKind.MANAGED_CLOUD

    @model_validator(mode="after")
    def _require_port(self):
        # SRV records carry the port for managed clusters.
        if self.port is None and not self.is_managed:
            raise ValueError("port is required for self-hosted mongodb")
        return self


RelationalDescriptor = Union[MySQLDescriptor, PostgreSQLDescriptor]

ConnectionDescriptor = Annotated[
    Union[MySQLDescriptor, PostgreSQLDescriptor, MongoDBDescriptor],
    Field(discriminator="type"),
]

descriptor_adapter: TypeAdapter = TypeAdapter(ConnectionDescriptor)


class UsernameCheckRequest(BaseModel):
    username: str = ""
    cluster_url: Optional[str] = Field(default=None, alias="clusterUrl")
    database: Optional[str] = None
    db_type: Optional[str] = Field(default=None, alias="dbType")
    skip_cloud_check: bool = Field(default=False, alias="skipCloudCheck")

    model_config = ConfigDict(populate_by_name=True)


class UsernameCheck(BaseModel):
    available: bool
    message: str
