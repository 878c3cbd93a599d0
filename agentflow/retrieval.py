import logging
import re
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .schemas import RetrievedDoc


logger = logging.getLogger("uvicorn.error")

CHUNK_MAX_CHARS = 500
MIN_CHUNK_CHARS = 10
MAX_INGEST_CHUNKS = 5
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")


class Retriever(Protocol):
    async def retrieve(self, query: str, top_k: int = 3) -> List[RetrievedDoc]:
        ...


class KnowledgeIndex(Retriever, Protocol):
    async def ingest(self, text: str, source: str, max_chunks: int = MAX_INGEST_CHUNKS) -> int:
        ...


def _parse_matches(data: Dict[str, Any]) -> List[RetrievedDoc]:
    matches = data.get("matches")
    if matches is None:
        matches = (data.get("result") or {}).get("hits") or []
    docs: List[RetrievedDoc] = []
    for match in matches:
        if not isinstance(match, dict):
            continue
        meta = match.get("metadata") or match.get("fields") or {}
        docs.append(
            RetrievedDoc(
                text=str(meta.get("text") or ""),
                source=str(meta.get("source") or "Unknown"),
                score=float(match.get("score") or match.get("_score") or 0.0),
            )
        )
    return docs


def chunk_text(text: str, max_chars: int = CHUNK_MAX_CHARS) -> List[str]:
    """Split text on sentence ends into chunks of at most ``max_chars``; drops fragments of 10 chars or less."""
    if not text:
        return []
    if len(text) <= max_chars:
        chunks = [text.strip()]
    else:
        chunks = []
        current = ""
        for sentence in _SENTENCE_RE.findall(text) or [text]:
            if current and len(current) + len(sentence) > max_chars:
                chunks.append(current.strip())
                current = sentence
            else:
                current += sentence
        if current:
            chunks.append(current.strip())
    return [chunk for chunk in chunks if len(chunk) > MIN_CHUNK_CHARS]


class KnowledgeRetriever:
    """Text query against a hosted vector index; degrades to no results when unconfigured or failing."""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        ingest_url: Optional[str] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.ingest_url = ingest_url
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Api-Key"] = self.api_key
        return headers

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def retrieve(self, query: str, top_k: int = 3) -> List[RetrievedDoc]:
        if not self.enabled:
            logger.info("Retrieval skipped: no index configured")
            return []
        headers = self._headers()
        payload = {"query": {"inputs": {"text": query}, "top_k": top_k}, "top_k": top_k, "include_metadata": True}
        try:
            resp = await self.client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
            return _parse_matches(resp.json())
        except httpx.HTTPStatusError as exc:
            logger.warning("Retrieval failed with HTTP %s", exc.response.status_code)
            return []
        except (httpx.RequestError, ValueError) as exc:
            logger.warning("Retrieval failed: %s", exc)
            return []

    @property
    def ingest_enabled(self) -> bool:
        return bool(self.ingest_url)

    async def ingest(self, text: str, source: str, max_chunks: int = MAX_INGEST_CHUNKS) -> int:
        """Chunk ``text`` and upsert the chunks as index records. Returns the number uploaded."""
        if not self.ingest_enabled:
            logger.info("Ingest skipped for %s: no index configured", source)
            return 0
        chunks = chunk_text(text)[:max_chunks]
        if not chunks:
            raise ValueError("Could not chunk text")
        stamp = int(time.time() * 1000)
        records = [
            {"_id": f"{source}-{i}-{stamp}", "text": chunk, "source": source}
            for i, chunk in enumerate(chunks)
        ]
        resp = await self.client.post(self.ingest_url, json={"records": records}, headers=self._headers())
        resp.raise_for_status()
        logger.info("Ingested %s chunk(s) from %s", len(records), source)
        return len(records)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
