"""
TrustGraph — Artifact Safety Classifier
Vouch-weighted safety tiers for rated artifacts (skills, capabilities, tools).

Each vouch is weighted by the voucher's composite reputation:

    weight(v)     = rep(voucher) × (1.0 if passed else 0.5)
    weightedScore = 100 · Σ weight(v) / Σ rep(voucher)

Reputations below zero are clamped to 0, which keeps the score in 0-100.
A voucher missing from the latest snapshot counts as rep = 10. That
bootstrap value lets the first vouches on a young platform count for
something; it is fixed, not a setting.

Tier ladder (first match wins):
    trusted            ≥ 5 vouches and score ≥ 70
    community-tested   ≥ 2 vouches and score ≥ 40
    limited-testing    ≥ 1 vouch
    unaudited          no vouches

Ratings are derived per request from live vouches plus a possibly-stale
snapshot. Nothing here is cached.
"""
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from trustgraph.errors import DuplicateVouch, NotFound, ValidationError
from trustgraph.graph.store import normalize_agent_id

logger = structlog.get_logger()

DEFAULT_VOUCHER_REPUTATION = 10.0
PASS_FACTOR = 1.0
FAIL_FACTOR = 0.5


class SafetyTier(str, Enum):
    UNAUDITED        = "unaudited"
    LIMITED_TESTING  = "limited-testing"
    COMMUNITY_TESTED = "community-tested"
    TRUSTED          = "trusted"


@dataclass(frozen=True)
class VouchRecord:
    record_id: str
    rater: str                       # canonical agent id
    artifact_id: str
    passed: bool
    evidence: Optional[str] = None
    created_at: str = ""
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "rater": self.rater,
            "artifact_id": self.artifact_id,
            "passed": self.passed,
            "evidence": self.evidence,
            "created_at": self.created_at,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VouchRecord":
        return cls(
            record_id=data["record_id"],
            rater=data["rater"],
            artifact_id=data["artifact_id"],
            passed=bool(data["passed"]),
            evidence=data.get("evidence"),
            created_at=data.get("created_at", ""),
            active=bool(data.get("active", True)),
        )


@dataclass
class SafetyRating:
    artifact_id: str
    tier: SafetyTier
    numeric_score: float             # 0-100
    vouch_count: int
    weighted_vouch_mass: float       # Σ voucher reputation
    passed_count: int = 0
    failed_count: int = 0

    @property
    def details(self) -> str:
        if not self.vouch_count:
            return "No vouches yet"
        return f"{self.vouch_count} vouch(es), weighted score: {round(self.numeric_score)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "tier": self.tier.value,
            "score": round(self.numeric_score, 1),
            "vouch_count": self.vouch_count,
            "weighted_vouch_mass": round(self.weighted_vouch_mass, 2),
            "passed": self.passed_count,
            "failed": self.failed_count,
            "details": self.details,
        }


# =============================================
# VOUCH STORE
# =============================================

class VouchStore:
    """
    Per-(rater, artifact) unique vouch records.
    Locked independently of the graph store: vouches may land while an
    influence recompute is running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, VouchRecord] = {}
        self._active: Dict[Tuple[str, str], str] = {}       # (rater, artifact) -> record_id
        self._listeners: List[Callable[[VouchRecord], None]] = []

    def add_listener(self, callback: Callable[[VouchRecord], None]) -> None:
        """Called with every written record (new or revoked)."""
        self._listeners.append(callback)

    def add(self, rater: str, artifact_id: str, passed: bool, evidence: Optional[str] = None) -> VouchRecord:
        """
        Raises:
            ValidationError: blank rater or artifact
            DuplicateVouch: this rater already has an active vouch on the artifact
        """
        key_rater = normalize_agent_id(rater)
        artifact = _clean_artifact(artifact_id)
        record = VouchRecord(
            record_id=f"vouch_{uuid.uuid4().hex[:16]}",
            rater=key_rater,
            artifact_id=artifact,
            passed=bool(passed),
            evidence=evidence or None,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        with self._lock:
            if (key_rater, artifact) in self._active:
                raise DuplicateVouch(rater, artifact)
            self._records[record.record_id] = record
            self._active[(key_rater, artifact)] = record.record_id

        logger.info("vouch_recorded", rater=key_rater, artifact=artifact, passed=record.passed)
        self._fire(record)
        return record

    def revoke(self, rater: str, artifact_id: str) -> VouchRecord:
        key = (normalize_agent_id(rater), _clean_artifact(artifact_id))
        with self._lock:
            record_id = self._active.pop(key, None)
            if record_id is None:
                raise NotFound("vouch", f"{rater} -> {artifact_id}")
            record = replace(self._records[record_id], active=False)
            self._records[record_id] = record

        logger.info("vouch_revoked", rater=key[0], artifact=key[1])
        self._fire(record)
        return record

    def restore(self, records: Iterable[VouchRecord]) -> None:
        with self._lock:
            for record in records:
                self._records[record.record_id] = record
                if record.active:
                    self._active[(record.rater, record.artifact_id)] = record.record_id

    def active_for(self, artifact_id: str) -> List[VouchRecord]:
        artifact = _clean_artifact(artifact_id)
        with self._lock:
            return [
                self._records[rid] for (_, art), rid in self._active.items()
                if art == artifact
            ]

    def for_artifact(self, artifact_id: str, include_revoked: bool = False) -> List[VouchRecord]:
        """Records on one artifact, oldest first."""
        artifact = _clean_artifact(artifact_id)
        return self._select(lambda r: r.artifact_id == artifact, include_revoked)

    def by_rater(self, rater: str, include_revoked: bool = False) -> List[VouchRecord]:
        """Records written by one rater, oldest first."""
        key = normalize_agent_id(rater)
        return self._select(lambda r: r.rater == key, include_revoked)

    def _select(self, match: Callable[[VouchRecord], bool], include_revoked: bool) -> List[VouchRecord]:
        with self._lock:
            records = [r for r in self._records.values()
                       if match(r) and (include_revoked or r.active)]
        return sorted(records, key=lambda r: (r.created_at, r.record_id))

    def artifacts(self) -> List[str]:
        with self._lock:
            return sorted({art for (_, art) in self._active})

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def _fire(self, record: VouchRecord) -> None:
        for callback in self._listeners:
            callback(record)


def _clean_artifact(artifact_id: str) -> str:
    if not isinstance(artifact_id, str) or not artifact_id.strip():
        raise ValidationError("Artifact identifier must be a non-empty string")
    return artifact_id.strip()


# =============================================
# CLASSIFIER
# =============================================

class SafetyClassifier:
    """
    Usage:
        classifier = SafetyClassifier(vouches, reputation_lookup=cache.composite_score)
        rating = classifier.classify("skill-weather-v2")
    """

    def __init__(self, vouches: VouchStore, reputation_lookup: Callable[[str], Optional[float]]):
        self.vouches = vouches
        self._lookup = reputation_lookup

    def classify(self, artifact_id: str) -> SafetyRating:
        records = self.vouches.active_for(artifact_id)
        if not records:
            return SafetyRating(
                artifact_id=artifact_id,
                tier=SafetyTier.UNAUDITED,
                numeric_score=0.0,
                vouch_count=0,
                weighted_vouch_mass=0.0,
            )

        weighted = 0.0
        total = 0.0
        passed = 0
        for record in records:
            rep = self._lookup(record.rater)
            if rep is None:
                rep = DEFAULT_VOUCHER_REPUTATION
            # negative karma can sink a composite below zero; it carries no weight
            rep = max(rep, 0.0)
            weighted += rep * (PASS_FACTOR if record.passed else FAIL_FACTOR)
            total += rep
            passed += record.passed

        # all-zero voucher reputation gives no signal
        score = (weighted / total) * 100.0 if total > 0 else 0.0
        count = len(records)

        return SafetyRating(
            artifact_id=artifact_id,
            tier=classify_tier(count, score),
            numeric_score=score,
            vouch_count=count,
            weighted_vouch_mass=total,
            passed_count=passed,
            failed_count=count - passed,
        )

    def overview(self) -> Dict[str, Any]:
        by_tier = {tier.value: 0 for tier in SafetyTier}
        artifacts = self.vouches.artifacts()
        for artifact in artifacts:
            by_tier[self.classify(artifact).tier.value] += 1
        return {
            "artifacts": len(artifacts),
            "vouches": len(self.vouches),
            "by_tier": by_tier,
            "avg_vouches_per_artifact": round(len(self.vouches) / len(artifacts), 2) if artifacts else 0,
        }


def classify_tier(vouch_count: int, score: float) -> SafetyTier:
    if vouch_count >= 5 and score >= 70:
        return SafetyTier.TRUSTED
    elif vouch_count >= 2 and score >= 40:
        return SafetyTier.COMMUNITY_TESTED
    elif vouch_count >= 1:
        return SafetyTier.LIMITED_TESTING
    return SafetyTier.UNAUDITED
