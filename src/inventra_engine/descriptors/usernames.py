"""Username availability: syntax-only locally, live lookup on managed clusters."""

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from inventra_engine.common.config import InventraSettings
from inventra_engine.common.exceptions import ConfigurationError, ConnectionFailedError
from inventra_engine.descriptors.schemas import (
    HostKind,
    MongoDBDescriptor,
    UsernameCheck,
    classify_mongo_host,
)
from inventra_engine.descriptors.validator import validate_username_syntax

logger = logging.getLogger(__name__)


class UsernameChecker:
    """Checks signup usernames against the global ``users`` directory."""

    def __init__(self, settings: InventraSettings, connections):
        self.settings = settings
        self.connections = connections

    def _target_host(self, cluster_url: Optional[str]) -> Optional[str]:
        """The cluster to look names up on; the server's configured host wins."""
        return self.settings.managed_mongo_host or cluster_url

    def is_bypass(
        self,
        cluster_url: Optional[str],
        db_type: Optional[str],
        skip_cloud_check: bool = False,
    ) -> bool:
        """True when only offline checks apply (local engines or self-hosted mongo)."""
        if skip_cloud_check:
            return True
        if db_type and db_type != "mongodb":
            return True
        return classify_mongo_host(self._target_host(cluster_url)) is HostKind.SELF_HOSTED

    async def check(
        self,
        username: str,
        cluster_url: Optional[str] = None,
        database: Optional[str] = None,
        db_type: Optional[str] = None,
        skip_cloud_check: bool = False,
    ) -> UsernameCheck:
        if not username:
            raise ConfigurationError("Missing required fields: username")

        syntax = validate_username_syntax(username)
        if self.is_bypass(cluster_url, db_type, skip_cloud_check):
            if syntax.available:
                return UsernameCheck(available=True, message="Username is available (local)")
            return syntax
        if not syntax.available:
            return syntax

        host = self._target_host(cluster_url)
        database = self.settings.managed_mongo_database or database
        if not host or not database:
            raise ConfigurationError(
                "Missing required fields: clusterUrl, database", engine="mongodb"
            )
        if not self.settings.has_managed_mongo_credentials:
            raise ConnectionFailedError(
                "MongoDB Atlas credentials not configured. Set INVENTRA_MANAGED_MONGO_USERNAME "
                "and INVENTRA_MANAGED_MONGO_PASSWORD on the server.",
                engine="mongodb",
                server_misconfigured=True,
            )

        descriptor = MongoDBDescriptor(host=host, database=database)
        async with self.connections.acquire(descriptor) as handle:
            try:
                existing = await handle.database["users"].find_one(
                    {"$or": [{"username": username}, {"email": username}]}
                )
            except PyMongoError as exc:
                raise ConnectionFailedError(str(exc), engine="mongodb") from exc

        if existing is not None:
            logger.info("Username %s already taken on %s", username, host)
            return UsernameCheck(available=False, message="Username already exists in the cluster")
        return UsernameCheck(available=True, message="Username is available")
