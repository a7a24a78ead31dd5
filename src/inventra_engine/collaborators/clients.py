"""HTTP clients for the text-extraction and structuring collaborators."""

import logging
from typing import Any, Literal

import httpx

from inventra_engine.collaborators.records import StructuredBatch, revalidate_records
from inventra_engine.common.config import InventraSettings, get_settings
from inventra_engine.common.exceptions import CollaboratorError

logger = logging.getLogger(__name__)

EXTRACT_PATHS = {"pdf": "/extract-pdf", "image": "/extract-image"}


class _CollaboratorClient:
    service = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                resp = await client.post(url, **kwargs)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("%s returned %s", url, exc.response.status_code)
            raise CollaboratorError(
                f"{self.service} service returned {exc.response.status_code}", service=self.service,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s unreachable: %s", url, exc)
            raise CollaboratorError(f"{self.service} service unreachable: {exc}", service=self.service) from exc
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}


class TextExtractionClient(_CollaboratorClient):
    """File in, raw text out. The extractor's internals are opaque."""

    service = "extraction"

    @classmethod
    def from_settings(cls, settings: InventraSettings | None = None, **kwargs) -> "TextExtractionClient":
        settings = settings or get_settings()
        return cls(settings.extraction_url, timeout=settings.collaborator_timeout, **kwargs)

    async def extract(self, filename: str, content: bytes, kind: Literal["pdf", "image"] = "image") -> str:
        data = await self._post(EXTRACT_PATHS[kind], files={"file": (filename, content)})
        if isinstance(data, dict):
            for key in ("text", "raw", "content"):
                if isinstance(data.get(key), str):
                    return data[key]
        if isinstance(data, str):
            return data
        raise CollaboratorError("extraction service returned no text", service=self.service)


class StructuringClient(_CollaboratorClient):
    """Raw text plus a target shape in, revalidated records out."""

    service = "structuring"

    @classmethod
    def from_settings(cls, settings: InventraSettings | None = None, **kwargs) -> "StructuringClient":
        settings = settings or get_settings()
        return cls(settings.structuring_url, timeout=settings.collaborator_timeout, **kwargs)

    async def structure(self, raw_text: str, shape: Literal["products", "sales"]) -> StructuredBatch:
        if not raw_text or not raw_text.strip():
            raise ValueError("Missing raw text to structure")
        payload = await self._post(f"/structure-{shape}", json={"raw": raw_text})
        batch = revalidate_records(shape, payload)
        if batch.rejected:
            logger.warning("Dropped %d invalid %s records from structuring output", len(batch.rejected), shape)
        return batch
