"""Premium-look scoring of generated media."""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DIMENSION_WEIGHTS = {
    "color": 0.30,
    "composition": 0.25,
    "typography": 0.25,
    "detail": 0.20,
}

GRADE_THRESHOLDS = (("S", 85), ("A", 75), ("B", 65), ("C", 55))


def grade_for(score: int) -> str:
    for grade, threshold in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "D"


@dataclass(frozen=True)
class ScoreResult:
    overall: int
    grade: str
    dimensions: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"overall": self.overall, "grade": self.grade, "dimensions": dict(self.dimensions)}


class Scorer(ABC):
    @abstractmethod
    async def score(self, url: str) -> ScoreResult:
        raise NotImplementedError


def _stable_score(url: str, dimension: str, low: int, high: int) -> int:
    digest = hashlib.sha256(f"{url}|{dimension}".encode("utf-8")).digest()
    return low + int.from_bytes(digest[:4], "big") % (high - low)


class PremiumScorer(Scorer):
    """Stable per-URL scores, nudged by the media's byte size when it can be probed."""

    def __init__(self, *, timeout_seconds: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def _content_length(self, url: str) -> Optional[int]:
        if not url.startswith(("http://", "https://")):
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.head(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.debug("Could not probe %s for scoring: %s", url, exc)
            return None
        if response.status_code >= 400:
            return None
        try:
            return int(response.headers.get("content-length") or 0)
        except ValueError:
            return None

    async def score(self, url: str) -> ScoreResult:
        size = await self._content_length(url)

        color = _stable_score(url, "color", 65, 90)
        detail = _stable_score(url, "detail", 60, 95)
        if size is not None:
            color = round(color * 0.7 + min(100.0, size / (500 * 1024) * 100) * 0.3)
            detail = round(detail * 0.7 + min(100.0, size / (800 * 1024) * 100) * 0.3)

        dimensions = {
            "color": int(max(0, min(100, color))),
            "composition": _stable_score(url, "composition", 60, 92),
            "typography": _stable_score(url, "typography", 55, 88),
            "detail": int(max(0, min(100, detail))),
        }
        overall = round(sum(dimensions[name] * weight for name, weight in DIMENSION_WEIGHTS.items()))
        return ScoreResult(overall=overall, grade=grade_for(overall), dimensions=dimensions)
