"""ingestion/metadata.py

Off-chain metadata fetcher (job descriptions, proposals, deliveries).

fetch(uri) never raises: it returns a FetchResult holding either the decoded
document or a FetchError. Callers pick the fallback with value_or() /
text_or(); the documented fallback for description text is None, meaning
"not resolved yet", never an invented description.

Bodies are streamed and abandoned as soon as they pass MAX_DOC_BYTES.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY = "ipfs.io"
DEFAULT_TIMEOUT_SEC = 5.0
MAX_DOC_BYTES = 1_000_000

# Keys tried, in order, for the human-readable text of a document
TEXT_KEYS = ("description", "text", "content", "coverLetter", "body")


@dataclass(frozen=True)
class FetchError:
    """Why a document could not be resolved."""
    uri: str
    reason: str  # unsupported | timeout | http | too_large | network
    detail: str = ""


@dataclass(frozen=True)
class FetchResult:
    uri: str
    doc: Optional[Dict[str, Any]] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, fallback: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.doc if self.ok else fallback

    def text_or(self, fallback: Optional[str] = None) -> Optional[str]:
        if not self.ok or not self.doc:
            return fallback
        for key in TEXT_KEYS:
            value = self.doc.get(key)
            if isinstance(value, str) and value.strip():
                return value
        return fallback


class MetadataFetcher:
    """
    Resolves ipfs:// and http(s) URIs through one bounded-timeout client.

    Usage:
        fetcher = MetadataFetcher(gateway="ipfs.io", timeout_sec=5)
        result = await fetcher.fetch(job.description_uri)
        text = result.text_or(None)
    """

    def __init__(
        self,
        gateway: str = DEFAULT_GATEWAY,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.gateway = gateway.rstrip("/").removeprefix("https://").removeprefix("http://")
        self.timeout_sec = timeout_sec
        self._client = client

    def resolve_url(self, uri: str) -> Optional[str]:
        uri = (uri or "").strip()
        if uri.startswith("ipfs://"):
            path = uri[len("ipfs://"):].removeprefix("ipfs/")
            return f"https://{self.gateway}/ipfs/{path}"
        if uri.startswith(("http://", "https://")):
            return uri
        if uri.startswith(("Qm", "bafy")):
            return f"https://{self.gateway}/ipfs/{uri}"
        return None

    async def fetch(self, uri: str) -> FetchResult:
        url = self.resolve_url(uri)
        if url is None:
            return FetchResult(uri=uri, error=FetchError(uri, "unsupported", "not an ipfs:// or http(s) uri"))

        close_client = False
        client = self._client
        if client is None:
            client = httpx.AsyncClient(timeout=self.timeout_sec, follow_redirects=True)
            close_client = True

        try:
            async with client.stream("GET", url, timeout=self.timeout_sec) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > MAX_DOC_BYTES:
                    return FetchResult(uri=uri, error=FetchError(uri, "too_large", f"{declared} bytes declared"))
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > MAX_DOC_BYTES:
                        # stop reading; the rest of the body is never downloaded
                        return FetchResult(uri=uri, error=FetchError(uri, "too_large", f"over {MAX_DOC_BYTES} bytes"))
                encoding = response.encoding or "utf-8"
            try:
                doc = json.loads(bytes(body))
            except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
                doc = {"text": bytes(body).decode(encoding, errors="replace")}
            if not isinstance(doc, dict):
                doc = {"value": doc}
            return FetchResult(uri=uri, doc=doc)
        except httpx.TimeoutException as e:
            logger.warning(f"[metadata] timeout fetching {uri}: {e}")
            return FetchResult(uri=uri, error=FetchError(uri, "timeout", str(e)))
        except httpx.HTTPStatusError as e:
            logger.warning(f"[metadata] HTTP {e.response.status_code} for {uri}")
            return FetchResult(uri=uri, error=FetchError(uri, "http", str(e.response.status_code)))
        except httpx.HTTPError as e:
            logger.warning(f"[metadata] network error for {uri}: {e}")
            return FetchResult(uri=uri, error=FetchError(uri, "network", str(e)))
        finally:
            if close_client:
                await client.aclose()
