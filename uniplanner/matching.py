from __future__ import annotations

from typing import Dict, Iterable, Optional

import pandas as pd

from .schemas import RISK_TIERS, University
from .scoring import risk_score, tier_for_score, tier_rank


MATCH_COLUMNS = [
    "university_id",
    "name",
    "country",
    "avg_gpa",
    "avg_sat",
    "acceptance_rate",
    "risk_score",
    "risk",
]


def match_universities(
    user_gpa: float,
    user_sat: Optional[float],
    universities: Iterable[University],
) -> pd.DataFrame:
    """Tabulate the admissions risk of every university in the catalog.

    Rows come back most favorable tier first, then by risk score, then by
    name.
    """
    rows = []
    for uni in universities:
        score = risk_score(user_gpa, user_sat, uni)
        rows.append({
            "university_id": uni.id,
            "name": uni.name,
            "country": uni.country,
            "avg_gpa": uni.avg_gpa,
            "avg_sat": uni.avg_sat,
            "acceptance_rate": uni.acceptance_rate,
            "risk_score": score,
            "risk": tier_for_score(score),
        })
    if not rows:
        return pd.DataFrame(columns=MATCH_COLUMNS)

    df = pd.DataFrame(rows, columns=MATCH_COLUMNS)
    df["_tier"] = df["risk"].map(tier_rank)
    df = df.sort_values(["_tier", "risk_score", "name"], ascending=[True, False, True], kind="mergesort")
    return df.drop(columns="_tier").reset_index(drop=True)


def summarize_matches(df: pd.DataFrame) -> Dict[str, int]:
    counts = df["risk"].value_counts() if not df.empty else pd.Series(dtype="int64")
    return {tier: int(counts.get(tier, 0)) for tier in RISK_TIERS}


def matches_to_records(df: pd.DataFrame) -> list:
    # NaN -> None so the payload stays JSON-clean
    return df.astype(object).where(pd.notnull(df), None).to_dict(orient="records")
