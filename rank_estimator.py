"""
Percentile and rank estimation against previously computed scores.

The historical corpus is anything with count(), count_less_than() and
append(); the estimator only reads the two counts, once per call.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from marks_calculator import ScoreSummary, round_half_up

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class HistoricalScoreRecord:
    total_marks: float
    total_questions: int = 0
    correct: int = 0
    wrong: int = 0
    unattempted: int = 0
    marks_per_correct: float = 1
    negative_per_wrong: float = 0.25
    source_url: Optional[str] = None
    parsed_at: str = field(default_factory=_utc_now)
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    meta: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_summary(
        cls,
        summary: ScoreSummary,
        source_url: Optional[str] = None,
        meta: Optional[Dict[str, object]] = None,
    ) -> "HistoricalScoreRecord":
        return cls(
            total_marks=summary.total_marks,
            total_questions=summary.total_questions,
            correct=summary.correct,
            wrong=summary.wrong,
            unattempted=summary.unattempted,
            marks_per_correct=summary.marks_per_correct,
            negative_per_wrong=summary.negative_per_wrong,
            source_url=source_url,
            meta=dict(meta or {}),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "HistoricalScoreRecord":
        data = json.loads(raw)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class ScoreCorpus(Protocol):
    def count(self) -> int: ...

    def count_less_than(self, value: float) -> int: ...

    def append(self, record: HistoricalScoreRecord) -> None: ...


class InMemoryScoreCorpus:
    """List-backed corpus for tests and local runs."""

    name = "memory"

    def __init__(self, totals: Optional[List[float]] = None) -> None:
        self._lock = threading.Lock()
        self.records: List[HistoricalScoreRecord] = [HistoricalScoreRecord(total_marks=t) for t in totals or []]

    def count(self) -> int:
        with self._lock:
            return len(self.records)

    def count_less_than(self, value: float) -> int:
        with self._lock:
            return sum(1 for r in self.records if r.total_marks < value)

    def append(self, record: HistoricalScoreRecord) -> None:
        with self._lock:
            self.records.append(record)


@dataclass(frozen=True)
class RankEstimate:
    percentile: Optional[float] = None
    estimated_rank: Optional[int] = None
    sample_size: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "percentile": self.percentile,
            "estimatedRank": self.estimated_rank,
            "sampleSize": self.sample_size,
        }


def estimate_rank(new_total: float, corpus: Optional[ScoreCorpus], total_candidates: int) -> RankEstimate:
    """Estimate percentile and rank from the share of past scores below new_total.

    Assumes the stored sample is representative of the whole candidate pool.
    The new score does not need to be in the corpus yet.
    """
    if corpus is None:
        return RankEstimate()

    sample_size = corpus.count()
    if sample_size <= 0:
        return RankEstimate()

    less = corpus.count_less_than(new_total)
    raw_percentile = less / sample_size * 100
    estimated_rank = max(1, int(round_half_up((1 - raw_percentile / 100) * total_candidates, 0)))
    percentile = round_half_up(raw_percentile)
    logger.debug("Rank estimate for %s: %s of %s below", new_total, less, sample_size)
    return RankEstimate(percentile=percentile, estimated_rank=estimated_rank, sample_size=sample_size)
