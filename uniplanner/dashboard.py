from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from .config import settings
from .schemas import (
    ActivityHours,
    DashboardStats,
    ImprovementInsight,
    PortfolioSnapshot,
    SatSections,
    University,
    UniversityRisk,
)
from .scoring import (
    activity_hours,
    effective_gpa,
    get_best_score,
    risk_counts,
    risk_score,
    sat_section_scores,
    simulate_improvement,
    tier_for_score,
)


class DashboardViewModel:
    """Display values for one user's dashboard, derived from a snapshot.

    Holds no state beyond its inputs; build a new one per snapshot.
    """

    def __init__(
        self,
        snapshot: PortfolioSnapshot,
        universities: Sequence[University] = (),
        fallback_count: Optional[int] = None,
        improvement_bump: Optional[float] = None,
    ) -> None:
        self.snapshot = snapshot
        self.universities = list(universities)
        self.fallback_count = settings.dashboard_fallback_universities if fallback_count is None else fallback_count
        self.improvement_bump = settings.improvement_bump if improvement_bump is None else improvement_bump

    def gpa(self) -> float:
        return effective_gpa(self.snapshot.profile, self.snapshot.courses)

    def sat_score(self) -> Optional[float]:
        return get_best_score(self.snapshot.scores, "SAT")

    def act_score(self) -> Optional[float]:
        return get_best_score(self.snapshot.scores, "ACT")

    def target_universities(self) -> List[University]:
        # Without targets the dashboard shows the head of the catalog
        joined = [t.university for t in self.snapshot.targets if t.university is not None]
        if joined:
            return joined
        return self.universities[: self.fallback_count]

    def university_risks(self) -> List[UniversityRisk]:
        gpa = self.gpa()
        sat = self.sat_score()
        out = []
        for uni in self.target_universities():
            score = risk_score(gpa, sat, uni)
            out.append(UniversityRisk(university=uni, risk=tier_for_score(score), risk_score=score))
        return out

    def sat_sections(self) -> SatSections:
        return sat_section_scores(self.snapshot.scores)

    def risk_counts(self) -> Dict[str, int]:
        return risk_counts(r.risk for r in self.university_risks())

    def activity_hours(self) -> ActivityHours:
        return activity_hours(self.snapshot.extracurriculars)

    def improvement_insight(self) -> Optional[ImprovementInsight]:
        return simulate_improvement(self.snapshot.courses, bump=self.improvement_bump)

    def build(self) -> DashboardStats:
        risks = self.university_risks()
        return DashboardStats(
            user_id=self.snapshot.user_id,
            gpa=self.gpa(),
            course_count=len(self.snapshot.courses),
            sat_score=self.sat_score(),
            act_score=self.act_score(),
            sat_sections=self.sat_sections(),
            university_risks=risks,
            risk_counts=risk_counts(r.risk for r in risks),
            activity_hours=self.activity_hours(),
            improvement=self.improvement_insight(),
            recommendations=self.snapshot.recommendations,
        )
