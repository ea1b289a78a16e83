"""
Distillation and embedding providers.

The pipeline only depends on two narrow interfaces:

    Distiller.distill(body, title) -> DistilledArtifact
    Embedder.embed(text) -> List[float]

OpenAI-backed implementations talk to the REST API with httpx. The stub
implementations are deterministic and offline, for local runs and tests.
Callers pick an implementation via ``get_distiller`` / ``get_embedder``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

MAX_DISTILL_BODY_CHARS = 50000

DISTILL_PROMPT = """You are a technical documentation distiller. Extract structured information from an artifact.

Artifact Title: {title}

Artifact Content:
{body}

Return ONLY valid JSON (no markdown, no code fences, no explanation) in this exact format:
{{
  "summary": "A concise 2-4 sentence summary of the artifact's purpose and content",
  "hard_facts": ["3-10 specific, verifiable facts, each a short sentence"],
  "keywords": ["5-15 technical terms, component names or concepts"]
}}"""

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_\-]+")


class DistillationError(Exception):
    """Distillation failed; no atoms can be derived."""

    code = "DISTILLATION_FAILED"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "code": self.code}


class EmbeddingError(Exception):
    """The embedding provider could not produce a vector."""

    code = "EMBEDDING_FAILED"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "code": self.code}


@dataclass
class DistilledArtifact:
    """Structured knowledge extracted from one artifact."""

    summary: str = ""
    hard_facts: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "DistilledArtifact":
        if not isinstance(data, dict):
            raise DistillationError("Invalid distillation result: expected object")
        hard_facts = data.get("hard_facts")
        keywords = data.get("keywords")
        return cls(
            summary=data.get("summary") if isinstance(data.get("summary"), str) else "",
            hard_facts=list(hard_facts) if isinstance(hard_facts, list) else [],
            keywords=list(keywords) if isinstance(keywords, list) else [],
        )


class Distiller(ABC):
    """Turns an artifact body into a summary, hard facts and keywords."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logging and identification."""

    @abstractmethod
    def distill(self, body: str, title: Optional[str] = None) -> DistilledArtifact:
        """Distill an artifact body.

        Raises:
            DistillationError: on any provider or parsing failure
        """

    def close(self) -> None:
        """Release network resources. Providers are reused across calls; close once when done."""


class Embedder(ABC):
    """Maps text to a fixed-dimension vector."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logging and identification."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Length of every vector this embedder returns."""

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed one text.

        Raises:
            EmbeddingError: on any provider failure
        """

    def close(self) -> None:
        """Release network resources. Providers are reused across calls; close once when done."""


def parse_distillation(text: str) -> DistilledArtifact:
    """Parse a model reply into a DistilledArtifact, tolerating code fences and prose."""
    cleaned = _CODE_FENCE_RE.sub("", text.strip()).strip()
    match = _JSON_OBJECT_RE.search(cleaned)
    if match:
        cleaned = match.group(0)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise DistillationError(f"Distillation reply is not valid JSON: {exc}") from exc
    distilled = DistilledArtifact.from_dict(data)
    if not distilled.summary.strip():
        raise DistillationError("Distillation failed: summary is missing or empty")
    return distilled


class _OpenAIClient:
    """Shared httpx plumbing for the OpenAI REST endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.client.post(f"{self.base_url}{path}", json=payload)
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self.client.close()


class OpenAIDistiller(Distiller):
    """Distills artifacts with an OpenAI chat model."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.model = model
        self._api = _OpenAIClient(api_key, base_url, timeout, client)

    @property
    def name(self) -> str:
        return "openai"

    def distill(self, body: str, title: Optional[str] = None) -> DistilledArtifact:
        if not body or not body.strip():
            raise DistillationError("Artifact body is empty or missing")
        if len(body) > MAX_DISTILL_BODY_CHARS:
            body = body[:MAX_DISTILL_BODY_CHARS] + "\n\n[Content truncated due to length]"

        payload = {
            "model": self.model,
            "temperature": 0.3,
            "max_tokens": 2000,
            "messages": [
                {"role": "user", "content": DISTILL_PROMPT.format(title=title or "Untitled", body=body)},
            ],
        }
        try:
            data = self._api.post("/chat/completions", payload)
            reply = data["choices"][0]["message"]["content"] or ""
        except httpx.HTTPError as exc:
            raise DistillationError(f"Distillation request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError) as exc:
            raise DistillationError(f"Unexpected distillation response shape: {exc}") from exc
        return parse_distillation(reply)

    def close(self) -> None:
        self._api.close()


class OpenAIEmbedder(Embedder):
    """Embeds text with an OpenAI embedding model."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.model = model
        self._dimensions = dimensions
        self._api = _OpenAIClient(api_key, base_url, timeout, client)

    @property
    def name(self) -> str:
        return "openai"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> List[float]:
        payload = {"model": self.model, "input": text, "dimensions": self._dimensions}
        try:
            data = self._api.post("/embeddings", payload)
            vector = data["data"][0]["embedding"]
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingError(f"Unexpected embedding response shape: {exc}") from exc
        if not vector:
            raise EmbeddingError("Embedding provider returned an empty vector")
        return [float(x) for x in vector]

    def close(self) -> None:
        self._api.close()


class StubDistiller(Distiller):
    """Offline distiller: first sentence, bullet lines and frequent words."""

    @property
    def name(self) -> str:
        return "stub"

    def distill(self, body: str, title: Optional[str] = None) -> DistilledArtifact:
        if not body or not body.strip():
            raise DistillationError("Artifact body is empty or missing")

        lines = [line.strip() for line in body.splitlines() if line.strip()]
        prose = [line for line in lines if not line.startswith("#")]
        facts = [line.lstrip("-*+ ").strip() for line in prose if line[:1] in "-*+"]
        text = " ".join(prose)
        summary = re.split(r"(?<=[.!?])\s+", text, maxsplit=1)[0] if text else (title or "")

        words = [w for w in _WORD_RE.findall(text.lower()) if len(w) >= 5]
        keywords = [word for word, _ in Counter(words).most_common(8)]
        return DistilledArtifact(summary=summary, hard_facts=facts[:10], keywords=keywords)


class StubEmbedder(Embedder):
    """Offline embedder: hashed bag-of-words, L2-normalised.

    Texts sharing words get positive cosine similarity, which is enough to
    exercise ranking without a network call.
    """

    def __init__(self, dimensions: int = 256):
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return "stub"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self._dimensions
        for token in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self._dimensions] += 1.0
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            return vector
        return [x / norm for x in vector]


def get_distiller(provider: Optional[str] = None) -> Distiller:
    """Factory function to get a distiller by provider name.

    Raises:
        ValueError: If the provider is unsupported or not configured
    """
    settings = get_settings()
    provider = provider or settings.distill_provider
    if provider == "stub":
        return StubDistiller()
    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY.")
        return OpenAIDistiller(
            api_key=settings.openai_api_key,
            model=settings.distill_model,
            base_url=settings.openai_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unsupported distill provider: {provider}. Supported: openai, stub")


def get_embedder(provider: Optional[str] = None) -> Optional[Embedder]:
    """Factory function to get an embedder by provider name.

    Returns None when OpenAI is selected but no API key is configured; search
    then degrades to recency ordering.

    Raises:
        ValueError: If the provider is unsupported
    """
    settings = get_settings()
    provider = provider or settings.embedding_provider
    if provider == "stub":
        return StubEmbedder()
    if provider == "openai":
        if not settings.openai_api_key:
            logger.warning("OpenAI API key not configured; embeddings disabled")
            return None
        return OpenAIEmbedder(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.openai_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unsupported embedding provider: {provider}. Supported: openai, stub")
