import os
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

os.environ["ENVIRONMENT"] = "test"

from uniplanner.schemas import (  # noqa: E402
    Achievement,
    Course,
    Extracurricular,
    Recommendation,
    StandardizedScore,
    University,
    UniversityForm,
    UserProfile,
    UserTarget,
)


USER_ID = "11111111-1111-1111-1111-111111111111"


def make_university(uid: str, name: str, avg_gpa=3.5, avg_sat=1400, acceptance_rate=50.0) -> University:
    return University(
        id=uid,
        name=name,
        country="USA",
        avg_gpa=avg_gpa,
        avg_sat=avg_sat,
        avg_act=30,
        acceptance_rate=acceptance_rate,
        tuition=50000,
    )


class FakeRepo:
    """In-memory stand-in for repo.Database with the same coroutine surface."""

    def __init__(self) -> None:
        self.profiles: Dict[str, UserProfile] = {}
        self.courses: List[Course] = []
        self.scores: List[StandardizedScore] = []
        self.targets: List[UserTarget] = []
        self.recommendations: List[Recommendation] = []
        self.extracurriculars: List[Extracurricular] = []
        self.achievements: List[Achievement] = []
        self.universities: List[University] = []
        self.fail_on: Optional[str] = None
        self.calls: Dict[str, int] = {}

    def _hit(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.fail_on == name:
            raise RuntimeError(f"{name} unavailable")

    @staticmethod
    def _id() -> str:
        return str(uuid.uuid4())

    async def get_profile(self, user_id):
        self._hit("get_profile")
        return self.profiles.get(user_id)

    async def upsert_profile(self, user_id, *, name, email, intended_major, current_gpa):
        self._hit("upsert_profile")
        existing = self.profiles.get(user_id)
        if existing is not None:
            email = existing.email
        profile = UserProfile(id=user_id, name=name, email=email, intended_major=intended_major, current_gpa=current_gpa)
        self.profiles[user_id] = profile
        return profile

    async def list_courses(self, user_id):
        self._hit("list_courses")
        return [c for c in self.courses if c.user_id == user_id]

    async def create_course(self, user_id, form):
        self._hit("create_course")
        course = Course(id=self._id(), user_id=user_id, **form.model_dump())
        self.courses.append(course)
        return course

    async def update_course(self, user_id, course_id, update):
        self._hit("update_course")
        for i, c in enumerate(self.courses):
            if c.id == course_id and c.user_id == user_id:
                self.courses[i] = c.model_copy(update=update.model_dump(exclude_none=True))
                return self.courses[i]
        return None

    async def delete_course(self, user_id, course_id):
        self._hit("delete_course")
        before = len(self.courses)
        self.courses = [c for c in self.courses if not (c.id == course_id and c.user_id == user_id)]
        return len(self.courses) < before

    async def list_scores(self, user_id):
        self._hit("list_scores")
        return [s for s in self.scores if s.user_id == user_id]

    async def create_score(self, user_id, form):
        self._hit("create_score")
        score = StandardizedScore(id=self._id(), user_id=user_id, **form.model_dump())
        self.scores.append(score)
        return score

    async def delete_score(self, user_id, score_id):
        self._hit("delete_score")
        before = len(self.scores)
        self.scores = [s for s in self.scores if not (s.id == score_id and s.user_id == user_id)]
        return len(self.scores) < before

    async def list_targets(self, user_id):
        self._hit("list_targets")
        out = []
        for t in self.targets:
            if t.user_id == user_id:
                uni = next((u for u in self.universities if u.id == t.university_id), None)
                out.append(t.model_copy(update={"university": uni}))
        return out

    async def find_target(self, user_id, university_id):
        return next((t for t in self.targets if t.user_id == user_id and t.university_id == university_id), None)

    async def add_target(self, user_id, form):
        self._hit("add_target")
        existing = await self.find_target(user_id, form.university_id)
        if existing is not None:
            return existing, False
        target = UserTarget(
            id=self._id(),
            user_id=user_id,
            university_id=form.university_id,
            reason_for_interest=form.reason_for_interest,
            created_at=datetime.now(timezone.utc),
        )
        self.targets.append(target)
        return target, True

    async def delete_target(self, user_id, target_id):
        self._hit("delete_target")
        before = len(self.targets)
        self.targets = [t for t in self.targets if not (t.id == target_id and t.user_id == user_id)]
        return len(self.targets) < before

    async def delete_target_for_university(self, user_id, university_id):
        self._hit("delete_target_for_university")
        before = len(self.targets)
        self.targets = [t for t in self.targets if not (t.university_id == university_id and t.user_id == user_id)]
        return len(self.targets) < before

    async def list_recommendations(self, user_id):
        self._hit("list_recommendations")
        return [r for r in self.recommendations if r.user_id == user_id]

    async def list_extracurriculars(self, user_id):
        self._hit("list_extracurriculars")
        return [e for e in self.extracurriculars if e.user_id == user_id]

    async def create_extracurricular(self, user_id, form):
        self._hit("create_extracurricular")
        activity = Extracurricular(id=self._id(), user_id=user_id, **form.model_dump())
        self.extracurriculars.append(activity)
        return activity

    async def delete_extracurricular(self, user_id, activity_id):
        before = len(self.extracurriculars)
        self.extracurriculars = [e for e in self.extracurriculars if not (e.id == activity_id and e.user_id == user_id)]
        return len(self.extracurriculars) < before

    async def list_achievements(self, user_id):
        self._hit("list_achievements")
        return [a for a in self.achievements if a.user_id == user_id]

    async def create_achievement(self, user_id, form):
        self._hit("create_achievement")
        achievement = Achievement(id=self._id(), user_id=user_id, **form.model_dump())
        self.achievements.append(achievement)
        return achievement

    async def delete_achievement(self, user_id, achievement_id):
        before = len(self.achievements)
        self.achievements = [a for a in self.achievements if not (a.id == achievement_id and a.user_id == user_id)]
        return len(self.achievements) < before

    async def list_universities(self, query=None, country=None):
        self._hit("list_universities")
        unis = sorted(self.universities, key=lambda u: u.name)
        if country:
            unis = [u for u in unis if u.country == country]
        if query:
            unis = [u for u in unis if query.lower() in u.name.lower()]
        return unis

    async def get_university(self, university_id):
        return next((u for u in self.universities if u.id == university_id), None)

    async def create_university(self, form: UniversityForm):
        self._hit("create_university")
        for uni in self.universities:
            if uni.name.lower() == form.name.lower():
                return uni, False
        uni = University(id=self._id(), name=form.name, country=form.country, acceptance_rate=0)
        self.universities.append(uni)
        return uni, True


class FakeCache:
    connected = True

    def __init__(self) -> None:
        self.snapshots: Dict[str, str] = {}
        self.generations: Dict[str, int] = {}
        self.universities = None

    async def get_snapshot(self, user_id):
        return self.snapshots.get(user_id)

    async def set_snapshot(self, user_id, payload, ttl_seconds=None):
        self.snapshots[user_id] = payload

    async def clear_snapshot(self, user_id):
        self.snapshots.pop(user_id, None)

    async def bump_generation(self, user_id):
        self.generations[user_id] = self.generations.get(user_id, 0) + 1
        return self.generations[user_id]

    async def get_generation(self, user_id):
        return self.generations.get(user_id, 0)

    async def set_snapshot_if_generation(self, user_id, payload, generation, ttl_seconds=None):
        if self.generations.get(user_id, 0) != generation:
            return False
        self.snapshots[user_id] = payload
        return True

    async def get_universities(self):
        return self.universities

    async def set_universities(self, payload, ttl_seconds=None):
        self.universities = payload

    async def clear_universities(self):
        self.universities = None


@pytest.fixture
def repo() -> FakeRepo:
    r = FakeRepo()
    r.universities = [
        make_university("u-mit", "MIT", avg_gpa=3.9, avg_sat=1550, acceptance_rate=4.0),
        make_university("u-state", "State University", avg_gpa=3.2, avg_sat=1150, acceptance_rate=70.0),
        make_university("u-tech", "Tech Institute", avg_gpa=3.6, avg_sat=1420, acceptance_rate=35.0),
        make_university("u-west", "Western College", avg_gpa=3.4, avg_sat=1300, acceptance_rate=None),
    ]
    return r


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()
