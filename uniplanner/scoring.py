from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .schemas import (
    MATH,
    READING_WRITING,
    RISK_TIERS,
    ActivityHours,
    Course,
    Extracurricular,
    ImprovementInsight,
    RiskTier,
    SatSections,
    StandardizedScore,
    University,
    UserProfile,
)


# (inclusive lower bound, grade points), checked top-down
GRADE_POINT_TABLE: Tuple[Tuple[float, float], ...] = (
    (93, 4.0),
    (90, 3.7),
    (87, 3.3),
    (83, 3.0),
    (80, 2.7),
    (70, 2.0),
    (60, 1.0),
)

SELECTIVE_ACCEPTANCE_RATE = 15.0
IMPROVEMENT_BUMP = 5.0


def round2(value: float) -> float:
    # half-up on the binary float
    return round(value + 1e-12, 2)


def _grade_of(item: Any) -> float:
    if isinstance(item, (int, float)):
        return float(item)
    if isinstance(item, dict):
        return float(item["grade"])
    return float(item.grade)


def grade_points(grade: float) -> float:
    for lower, points in GRADE_POINT_TABLE:
        if grade >= lower:
            return points
    return 0.0


def calculate_gpa(courses: Iterable[Any]) -> float:
    """Unweighted GPA on a 4.0 scale from 0-100 grades.

    Accepts Course models, row dicts or bare grades. An empty collection
    yields 0.0; callers tell "no courses" apart from "all failing" by the
    course count, not by this value.
    """
    points = [grade_points(_grade_of(c)) for c in courses]
    if not points:
        return 0.0
    return round2(sum(points) / len(points))


def effective_gpa(profile: Optional[UserProfile], courses: Sequence[Any]) -> float:
    if profile is not None and profile.current_gpa is not None:
        return profile.current_gpa
    return calculate_gpa(courses)


def risk_score(user_gpa: float, user_sat: Optional[float], uni: University) -> int:
    score = 0

    # GPA
    if user_gpa >= uni.avg_gpa + 0.2:
        score += 2
    elif user_gpa >= uni.avg_gpa - 0.1:
        score += 1
    else:
        score -= 2

    # SAT, only when both sides have one
    if user_sat and uni.avg_sat:
        if user_sat >= uni.avg_sat + 50:
            score += 2
        elif user_sat >= uni.avg_sat - 30:
            score += 1
        else:
            score -= 2

    # Selectivity; an unknown (None/0) acceptance rate carries no penalty
    if uni.acceptance_rate and uni.acceptance_rate < SELECTIVE_ACCEPTANCE_RATE:
        score -= 2

    return score


def tier_for_score(score: int) -> RiskTier:
    if score >= 3:
        return "Safety"
    if score >= 0:
        return "Target"
    if score >= -2:
        return "Reach"
    return "High Reach"


def calculate_admissions_risk(user_gpa: float, user_sat: Optional[float], uni: University) -> RiskTier:
    return tier_for_score(risk_score(user_gpa, user_sat, uni))


def tier_rank(tier: str) -> int:
    """0 for Safety up to 3 for High Reach."""
    return RISK_TIERS.index(tier)


def risk_counts(tiers: Iterable[str]) -> Dict[str, int]:
    counts = {t: 0 for t in RISK_TIERS}
    for t in tiers:
        counts[t] += 1
    return counts


def get_best_score(scores: Iterable[StandardizedScore], test_type: str) -> Optional[float]:
    values = [s.score for s in scores if s.test_type == test_type]
    if not values:
        return None
    return max(values)


def sat_section_scores(scores: Iterable[StandardizedScore]) -> SatSections:
    """Math and reading/writing sub-scores from the best SAT sitting.

    Only SAT records that carry section scores are considered; the one with
    the highest composite wins, the first one listed on ties. Keys are
    already canonical (see schemas.normalize_section_key).
    """
    best: Optional[StandardizedScore] = None
    for s in scores:
        if s.test_type != "SAT" or not s.section_scores:
            continue
        if best is None or s.score > best.score:
            best = s
    if best is None:
        return SatSections()
    sections = best.section_scores or {}
    return SatSections(math=sections.get(MATH), reading_writing=sections.get(READING_WRITING))


def simulate_improvement(courses: Sequence[Course], bump: float = IMPROVEMENT_BUMP) -> Optional[ImprovementInsight]:
    """What-if: raise the weakest course by `bump` points (max 100).

    The first course with the lowest grade in the given order is chosen.
    The input is not modified.
    """
    if not courses:
        return None

    lowest_idx = min(range(len(courses)), key=lambda i: courses[i].grade)
    lowest = courses[lowest_idx]
    to_grade = max(lowest.grade, min(100.0, lowest.grade + bump))

    grades: List[float] = [c.grade for c in courses]
    grades[lowest_idx] = to_grade

    current = calculate_gpa(courses)
    projected = calculate_gpa(grades)
    return ImprovementInsight(
        course_name=lowest.name,
        from_grade=lowest.grade,
        to_grade=to_grade,
        current_gpa=current,
        projected_gpa=projected,
        delta=round2(projected - current),
    )


def activity_hours(activities: Sequence[Extracurricular]) -> ActivityHours:
    total = sum(a.hours_per_week or 0.0 for a in activities)
    average = total / len(activities) if activities else 0.0
    return ActivityHours(total=total, average=round2(average))
