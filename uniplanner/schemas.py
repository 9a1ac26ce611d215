from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, confloat, constr, field_validator


TestType = Literal["SAT", "ACT", "AP", "IB", "TOEFL", "IELTS", "Other"]
CourseTerm = Literal["Fall", "Spring", "Summer", "Winter"]
RiskTier = Literal["Safety", "Target", "Reach", "High Reach"]

# Most favorable first
RISK_TIERS: tuple = ("Safety", "Target", "Reach", "High Reach")


# -----------------------------
# Section score keys
# -----------------------------

MATH = "math"
READING_WRITING = "reading_writing"

_SECTION_ALIASES = {
    "math": MATH,
    "maths": MATH,
    "mathematics": MATH,
    "reading_writing": READING_WRITING,
    "reading_and_writing": READING_WRITING,
    "readingwriting": READING_WRITING,
    "evidence_based_reading_and_writing": READING_WRITING,
    "ebrw": READING_WRITING,
    "rw": READING_WRITING,
}


def normalize_section_key(key: str) -> str:
    """Map a section-score key to its canonical identifier.

    "reading & writing", "Reading/Writing", "readingWriting" and
    "reading_writing" all become "reading_writing". Keys without a known
    alias are returned lower-cased and snake_cased.
    """
    k = (key or "").strip().lower().replace("&", " and ")
    k = re.sub(r"[^a-z0-9]+", "_", k).strip("_")
    if k in _SECTION_ALIASES:
        return _SECTION_ALIASES[k]
    collapsed = k.replace("_and_", "_")
    return _SECTION_ALIASES.get(collapsed, k)


def normalize_section_scores(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    if not raw:
        return None
    out: Dict[str, float] = {}
    for key, value in raw.items():
        if value is None:
            continue
        try:
            out[normalize_section_key(str(key))] = float(value)
        except (TypeError, ValueError):
            continue
    return out or None


# -----------------------------
# Stored records
# -----------------------------


class UserProfile(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    intended_major: Optional[str] = None
    current_gpa: Optional[float] = None


class Course(BaseModel):
    id: str
    user_id: str
    name: str
    grade: float
    year: int
    semester: CourseTerm
    created_at: Optional[datetime] = None


class StandardizedScore(BaseModel):
    id: str
    user_id: str
    test_type: TestType
    score: float
    section_scores: Optional[Dict[str, float]] = None
    date_taken: Optional[date] = None

    @field_validator("section_scores", mode="before")
    @classmethod
    def _canonical_sections(cls, value: Any) -> Optional[Dict[str, float]]:
        if value is None or isinstance(value, dict):
            return normalize_section_scores(value)
        return value


class University(BaseModel):
    id: str
    name: str
    country: str = ""
    image_url: Optional[str] = None
    avg_gpa: float = 0.0
    avg_sat: float = 0.0
    avg_act: float = 0.0
    # None means "not on record"; see scoring.calculate_admissions_risk
    acceptance_rate: Optional[float] = None
    tuition: float = 0.0
    majors_offered: Optional[List[str]] = None
    extracurricular_expectations: Optional[Any] = None

    @field_validator("avg_gpa", "avg_sat", "avg_act", "tuition", mode="before")
    @classmethod
    def _null_to_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class UserTarget(BaseModel):
    id: str
    user_id: str
    university_id: str
    university: Optional[University] = None
    reason_for_interest: Optional[str] = None
    created_at: Optional[datetime] = None


class Extracurricular(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    level: Optional[str] = None
    hours_per_week: float = 0.0
    years_participated: float = 0.0

    @field_validator("hours_per_week", "years_participated", mode="before")
    @classmethod
    def _null_to_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class Achievement(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    awarded_by: Optional[str] = None
    date_awarded: Optional[date] = None


class Recommendation(BaseModel):
    id: str
    user_id: str
    source: str
    recommendation: str
    created_at: Optional[datetime] = None


class PortfolioSnapshot(BaseModel):
    user_id: str
    profile: Optional[UserProfile] = None
    courses: List[Course] = Field(default_factory=list)
    scores: List[StandardizedScore] = Field(default_factory=list)
    targets: List[UserTarget] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    extracurriculars: List[Extracurricular] = Field(default_factory=list)
    achievements: List[Achievement] = Field(default_factory=list)
    fetched_at: datetime


# -----------------------------
# Forms (inbound)
# -----------------------------


def _current_year() -> int:
    return date.today().year


class CourseForm(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    grade: confloat(ge=0, le=100)
    year: int
    semester: CourseTerm

    @field_validator("year")
    @classmethod
    def _valid_year(cls, value: int) -> int:
        if value < 1900 or value > _current_year() + 10:
            raise ValueError("Invalid year")
        return value


class CourseUpdate(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    grade: Optional[confloat(ge=0, le=100)] = None
    year: Optional[int] = None
    semester: Optional[CourseTerm] = None

    @field_validator("year")
    @classmethod
    def _valid_year(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and (value < 1900 or value > _current_year() + 10):
            raise ValueError("Invalid year")
        return value


class ScoreForm(BaseModel):
    test_type: TestType
    score: confloat(ge=0)
    section_scores: Optional[Dict[str, float]] = None
    date_taken: Optional[date] = None

    @field_validator("section_scores", mode="before")
    @classmethod
    def _canonical_sections(cls, value: Any) -> Optional[Dict[str, float]]:
        if value is None or isinstance(value, dict):
            return normalize_section_scores(value)
        return value


class TargetForm(BaseModel):
    university_id: constr(strip_whitespace=True, min_length=1)
    reason_for_interest: Optional[str] = None


class UniversityForm(BaseModel):
    """A student-added university. Stats start at zero until curated."""

    name: constr(strip_whitespace=True, min_length=1)
    country: constr(strip_whitespace=True, min_length=1)


class ExtracurricularForm(BaseModel):
    title: constr(strip_whitespace=True, min_length=1)
    description: Optional[str] = None
    level: Optional[str] = None
    hours_per_week: confloat(ge=0) = 0
    years_participated: confloat(ge=0) = 0


class AchievementForm(BaseModel):
    title: constr(strip_whitespace=True, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    awarded_by: Optional[str] = None
    date_awarded: Optional[date] = None


class OnboardingForm(BaseModel):
    full_name: constr(strip_whitespace=True, min_length=2)
    intended_major: constr(strip_whitespace=True, min_length=2)
    current_gpa: confloat(ge=0, le=4.0)
    sat_score: Optional[float] = None
    dream_university_id: constr(strip_whitespace=True, min_length=1)


# -----------------------------
# Derived outputs
# -----------------------------


class SatSections(BaseModel):
    math: Optional[float] = None
    reading_writing: Optional[float] = None


class ImprovementInsight(BaseModel):
    course_name: str
    from_grade: float
    to_grade: float
    current_gpa: float
    projected_gpa: float
    delta: float


class ActivityHours(BaseModel):
    total: float
    average: float


class UniversityRisk(BaseModel):
    university: University
    risk: RiskTier
    risk_score: int


class DashboardStats(BaseModel):
    user_id: str
    gpa: float
    course_count: int
    sat_score: Optional[float]
    act_score: Optional[float]
    sat_sections: SatSections
    university_risks: List[UniversityRisk]
    risk_counts: Dict[str, int]
    activity_hours: ActivityHours
    improvement: Optional[ImprovementInsight]
    recommendations: List[Recommendation] = Field(default_factory=list)


class StatsPreviewRequest(BaseModel):
    grades: List[confloat(ge=0)] = Field(default_factory=list)
    current_gpa: Optional[float] = None
    sat: Optional[float] = None
    university: University


class StatsPreviewResponse(BaseModel):
    # gpa is what risk was scored with: current_gpa when posted, else computed_gpa
    gpa: float
    computed_gpa: float
    risk: RiskTier
    risk_score: int
    improvement: Optional[ImprovementInsight]


class RefreshJob(BaseModel):
    job_id: str
    user_id: str
    reason: Literal["portfolio_updated", "onboarding", "manual"]
    enqueued_at: datetime
    config_version: str
    attempt: int = 1


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None
