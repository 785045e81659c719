"""
Per-patient feature aggregation for cohort materialization.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..catalog import parse_number
from ..models import Fact


def group_facts_by_patient(facts: Iterable[Fact]) -> Dict[str, List[Fact]]:
    grouped: Dict[str, List[Fact]] = defaultdict(list)
    for fact in facts:
        if fact.patient_id:
            grouped[fact.patient_id].append(fact)
    return dict(grouped)


def latest_fact(facts: List[Fact]) -> Optional[Fact]:
    """Fact with the greatest event time; the first seen wins ties."""
    latest = None
    for fact in facts:
        if latest is None or fact.event_time > latest.event_time:
            latest = fact
    return latest


def build_materialized_features(
    patient_id: str,
    cohort_id: str,
    facts: List[Fact],
    materialized_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Feature set for one patient.

    Keys: cohort_id, patient_id, record_count, materialized_at, and when the
    patient has records latest_concept / latest_value / latest_timestamp plus
    average_value (mean of numeric "value" attributes, omitted when none are
    numeric).
    """
    materialized_at = materialized_at or datetime.utcnow()
    features: Dict[str, Any] = {
        "cohort_id": cohort_id,
        "patient_id": patient_id,
        "record_count": len(facts),
        "materialized_at": materialized_at.isoformat(),
    }
    if not facts:
        return features

    latest = latest_fact(facts)
    canonical = latest.canonical or {}
    if "concept" in canonical:
        features["latest_concept"] = canonical["concept"]
    if "value" in canonical:
        features["latest_value"] = canonical["value"]
    features["latest_timestamp"] = latest.event_time.isoformat()

    numeric = [v for v in (parse_number((f.canonical or {}).get("value")) for f in facts) if v is not None]
    if numeric:
        features["average_value"] = sum(numeric) / len(numeric)
    return features
