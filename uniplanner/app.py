from __future__ import annotations

from datetime import date
from typing import List, Optional

import logging
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from .cache import snapshot_cache
from .config import settings
from .dashboard import DashboardViewModel
from .matching import match_universities, matches_to_records, summarize_matches
from .portfolio import PortfolioAggregator, PortfolioLoadError
from .queue import RedisQueue, enqueue_refresh, queue
from .repo import Database, RepositoryError, db
from .schemas import (
    Achievement,
    AchievementForm,
    AuthUser,
    Course,
    CourseForm,
    CourseUpdate,
    DashboardStats,
    Extracurricular,
    ExtracurricularForm,
    OnboardingForm,
    PortfolioSnapshot,
    ScoreForm,
    StandardizedScore,
    StatsPreviewRequest,
    StatsPreviewResponse,
    TargetForm,
    University,
    UniversityForm,
    UserTarget,
)
from .scoring import calculate_gpa, risk_score, simulate_improvement, tier_for_score
from .security import get_current_user, get_current_user_id


logger = logging.getLogger("uniplanner.app")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="UniPlanner Portfolio Service", version="0.1.0")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.environment != "test":
        await queue.connect()
        if settings.database_url:
            try:
                await db.connect()
            except Exception:
                # Fall back to Supabase REST for all reads and writes
                logger.exception("Postgres pool unavailable; using Supabase REST")
        await snapshot_cache.connect()
    logger.info(
        "App startup: env=%s supabase=%s direct_db=%s",
        settings.environment,
        settings.supabase_configured,
        bool(settings.database_url),
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if settings.environment != "test":
        await queue.disconnect()
        await db.disconnect()
        await snapshot_cache.disconnect()


@app.exception_handler(RepositoryError)
async def repository_error_handler(request: Request, exc: RepositoryError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": "storage backend error"}, status_code=502)


@app.exception_handler(PortfolioLoadError)
async def portfolio_error_handler(request: Request, exc: PortfolioLoadError):
    return JSONResponse({"detail": "failed to load portfolio"}, status_code=502)


# -----------------------------
# Dependencies
# -----------------------------


def get_repo() -> Database:
    return db


def get_queue() -> RedisQueue:
    return queue


def get_aggregator(repo: Database = Depends(get_repo)) -> PortfolioAggregator:
    return PortfolioAggregator(repo, snapshot_cache)


async def _after_edit(user_id: str, aggregator: PortfolioAggregator, q: RedisQueue) -> None:
    await aggregator.invalidate(user_id)
    await enqueue_refresh(q, user_id)


# -----------------------------
# Portfolio and dashboard
# -----------------------------


@app.get("/api/config")
async def get_config():
    return {"config_version": settings.config_version}


@app.get("/api/portfolio", response_model=PortfolioSnapshot)
async def get_portfolio(
    user_id: str = Depends(get_current_user_id),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
):
    return await aggregator.load(user_id)


@app.post("/api/portfolio/refresh", response_model=PortfolioSnapshot)
async def refresh_portfolio(
    user_id: str = Depends(get_current_user_id),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
):
    return await aggregator.refresh(user_id)


@app.get("/api/dashboard", response_model=DashboardStats)
async def get_dashboard(
    user_id: str = Depends(get_current_user_id),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
):
    snapshot = await aggregator.load(user_id)
    universities: List[University] = []
    if not any(t.university is not None for t in snapshot.targets):
        universities = await aggregator.universities()
    return DashboardViewModel(snapshot, universities).build()


# -----------------------------
# Courses
# -----------------------------


@app.post("/api/courses", response_model=Course, status_code=201)
async def create_course(
    form: CourseForm,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    course = await repo.create_course(user_id, form)
    await _after_edit(user_id, aggregator, q)
    return course


@app.patch("/api/courses/{course_id}", response_model=Course)
async def update_course(
    course_id: str,
    update: CourseUpdate,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    course = await repo.update_course(user_id, course_id, update)
    if course is None:
        raise HTTPException(status_code=404, detail="course not found")
    await _after_edit(user_id, aggregator, q)
    return course


@app.delete("/api/courses/{course_id}", status_code=204)
async def delete_course(
    course_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_course(user_id, course_id):
        raise HTTPException(status_code=404, detail="course not found")
    await _after_edit(user_id, aggregator, q)


# -----------------------------
# Test scores
# -----------------------------


@app.post("/api/scores", response_model=StandardizedScore, status_code=201)
async def create_score(
    form: ScoreForm,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    score = await repo.create_score(user_id, form)
    await _after_edit(user_id, aggregator, q)
    return score


@app.delete("/api/scores/{score_id}", status_code=204)
async def delete_score(
    score_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_score(user_id, score_id):
        raise HTTPException(status_code=404, detail="score not found")
    await _after_edit(user_id, aggregator, q)


# -----------------------------
# Targets
# -----------------------------


@app.post("/api/targets", response_model=UserTarget)
async def add_target(
    form: TargetForm,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if await repo.get_university(form.university_id) is None:
        raise HTTPException(status_code=404, detail="university not found")
    target, created = await repo.add_target(user_id, form)
    if created:
        response.status_code = 201
        await _after_edit(user_id, aggregator, q)
    return target


@app.delete("/api/targets/{target_id}", status_code=204)
async def delete_target(
    target_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_target(user_id, target_id):
        raise HTTPException(status_code=404, detail="target not found")
    await _after_edit(user_id, aggregator, q)


@app.delete("/api/targets/university/{university_id}", status_code=204)
async def delete_target_for_university(
    university_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_target_for_university(user_id, university_id):
        raise HTTPException(status_code=404, detail="target not found")
    await _after_edit(user_id, aggregator, q)


# -----------------------------
# Extracurriculars and achievements
# -----------------------------


@app.post("/api/extracurriculars", response_model=Extracurricular, status_code=201)
async def create_extracurricular(
    form: ExtracurricularForm,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    activity = await repo.create_extracurricular(user_id, form)
    await _after_edit(user_id, aggregator, q)
    return activity


@app.delete("/api/extracurriculars/{activity_id}", status_code=204)
async def delete_extracurricular(
    activity_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_extracurricular(user_id, activity_id):
        raise HTTPException(status_code=404, detail="extracurricular not found")
    await _after_edit(user_id, aggregator, q)


@app.post("/api/achievements", response_model=Achievement, status_code=201)
async def create_achievement(
    form: AchievementForm,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    achievement = await repo.create_achievement(user_id, form)
    await _after_edit(user_id, aggregator, q)
    return achievement


@app.delete("/api/achievements/{achievement_id}", status_code=204)
async def delete_achievement(
    achievement_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if not await repo.delete_achievement(user_id, achievement_id):
        raise HTTPException(status_code=404, detail="achievement not found")
    await _after_edit(user_id, aggregator, q)


# -----------------------------
# Universities
# -----------------------------


@app.get("/api/universities", response_model=List[University])
async def list_universities(
    q: Optional[str] = None,
    country: Optional[str] = None,
    repo: Database = Depends(get_repo),
):
    return await repo.list_universities(query=q, country=country)


@app.post("/api/universities", response_model=University)
async def create_university(
    form: UniversityForm,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
):
    university, created = await repo.create_university(form)
    if created:
        response.status_code = 201
        await aggregator.invalidate_universities()
        logger.info("University added by user_id=%s: id=%s", user_id, university.id)
    return university


@app.get("/api/universities/match")
async def match_catalog(
    country: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
):
    snapshot = await aggregator.load(user_id)
    universities = await repo.list_universities(country=country)
    vm = DashboardViewModel(snapshot)
    gpa, sat = vm.gpa(), vm.sat_score()
    df = match_universities(gpa, sat, universities)
    return {
        "gpa": gpa,
        "sat": sat,
        "counts": summarize_matches(df),
        "matches": matches_to_records(df),
    }


# -----------------------------
# Onboarding and previews
# -----------------------------


@app.post("/api/onboarding")
async def onboarding(
    form: OnboardingForm,
    user: AuthUser = Depends(get_current_user),
    repo: Database = Depends(get_repo),
    aggregator: PortfolioAggregator = Depends(get_aggregator),
    q: RedisQueue = Depends(get_queue),
):
    if await repo.get_university(form.dream_university_id) is None:
        raise HTTPException(status_code=404, detail="university not found")

    user_id = user.id
    profile = await repo.upsert_profile(
        user_id,
        name=form.full_name,
        email=user.email,
        intended_major=form.intended_major,
        current_gpa=form.current_gpa,
    )
    sat_saved = False
    if form.sat_score is not None and form.sat_score > 0:
        await repo.create_score(user_id, ScoreForm(test_type="SAT", score=form.sat_score))
        sat_saved = True
    target, _ = await repo.add_target(user_id, TargetForm(university_id=form.dream_university_id))

    await aggregator.invalidate(user_id)
    await enqueue_refresh(q, user_id, reason="onboarding")
    logger.info("Onboarding complete: user_id=%s sat_saved=%s", user_id, sat_saved)
    return {
        "ok": True,
        "profile": profile.model_dump(mode="json"),
        "sat_saved": sat_saved,
        "target": target.model_dump(mode="json"),
    }


@app.post("/api/stats/preview", response_model=StatsPreviewResponse)
async def stats_preview(payload: StatsPreviewRequest):
    courses = [
        Course(
            id=str(i),
            user_id="preview",
            name=f"Course {i + 1}",
            grade=g,
            year=date.today().year,
            semester="Fall",
        )
        for i, g in enumerate(payload.grades)
    ]
    computed = calculate_gpa(courses)
    gpa = payload.current_gpa if payload.current_gpa is not None else computed
    score = risk_score(gpa, payload.sat, payload.university)
    return StatsPreviewResponse(
        gpa=gpa,
        computed_gpa=computed,
        risk=tier_for_score(score),
        risk_score=score,
        improvement=simulate_improvement(courses, bump=settings.improvement_bump),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
