"""Semantic memory collaborators: HTTP client and in-process lexical store."""

from __future__ import annotations

import logging
import re
import threading
from typing import Any
from uuid import uuid4

import httpx

from hive_coord.coordination.collaborators.base import CollaboratorError, MemoryMatch

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HttpSemanticMemory:
    """Client for a memory service exposing ``POST /documents`` and ``POST /query``."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def store(self, content: str, metadata: dict[str, Any]) -> str:
        payload = self._post("/documents", {"content": content, "metadata": metadata})
        document_id = payload.get("id")
        if not isinstance(document_id, str) or not document_id:
            raise CollaboratorError("Memory service returned no document id.")
        return document_id

    def query(self, text: str, max_results: int, threshold: float) -> list[MemoryMatch]:
        payload = self._post(
            "/query",
            {"query": text, "max_results": max_results, "threshold": threshold},
        )
        matches: list[MemoryMatch] = []
        for item in payload.get("results") or []:
            try:
                matches.append(
                    MemoryMatch(
                        content=str(item["content"]),
                        score=float(item["score"]),
                        metadata=dict(item.get("metadata") or {}),
                    ),
                )
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Skipping malformed memory result: %s", error)
        matches.sort(key=lambda match: match.score, reverse=True)
        return [match for match in matches if match.score >= threshold][:max_results]

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as error:
            raise CollaboratorError(f"Memory service timed out on {path}") from error
        except httpx.HTTPError as error:
            raise CollaboratorError(f"Memory service request {path} failed: {error}") from error
        except ValueError as error:
            raise CollaboratorError(f"Memory service returned invalid JSON on {path}") from error
        if not isinstance(payload, dict):
            raise CollaboratorError(f"Memory service returned a non-object payload on {path}")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpSemanticMemory:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class InMemorySemanticMemory:
    """Lexical stand-in: score is the share of query tokens found in a document."""

    def __init__(self) -> None:
        self._documents: dict[str, tuple[str, dict[str, Any], frozenset[str]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._documents)

    def store(self, content: str, metadata: dict[str, Any]) -> str:
        document_id = f"doc-{uuid4().hex}"
        with self._lock:
            self._documents[document_id] = (content, dict(metadata), _tokens(content))
        return document_id

    def query(self, text: str, max_results: int, threshold: float) -> list[MemoryMatch]:
        query_tokens = _tokens(text)
        if not query_tokens:
            return []
        with self._lock:
            documents = list(self._documents.values())
        matches = []
        for content, metadata, tokens in documents:
            score = len(query_tokens & tokens) / len(query_tokens)
            if score >= threshold:
                matches.append(MemoryMatch(content=content, score=score, metadata=dict(metadata)))
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:max_results]

    def close(self) -> None:
        """Nothing to release."""


def _tokens(text: str) -> frozenset[str]:
    return frozenset(token.lower() for token in _TOKEN_RE.findall(text))
