import asyncio

import pytest
from conftest import USER_ID

from uniplanner.portfolio import PortfolioAggregator, PortfolioLoadError
from uniplanner.schemas import Course, Recommendation, UserTarget


def seed(repo):
    repo.courses = [
        Course(id="c1", user_id=USER_ID, name="Biology", grade=91, year=2025, semester="Spring"),
        Course(id="c2", user_id="someone-else", name="Physics", grade=40, year=2025, semester="Spring"),
    ]
    repo.targets = [UserTarget(id="t1", user_id=USER_ID, university_id="u-tech")]
    repo.recommendations = [Recommendation(id="r1", user_id=USER_ID, source="GPA Analyzer", recommendation="Retake Physics")]


def test_fetch_collects_every_table(repo):
    seed(repo)
    snapshot = asyncio.run(PortfolioAggregator(repo).fetch(USER_ID))
    assert [c.name for c in snapshot.courses] == ["Biology"]
    assert snapshot.targets[0].university.name == "Tech Institute"
    assert snapshot.recommendations[0].source == "GPA Analyzer"
    assert snapshot.profile is None
    for name in ("get_profile", "list_courses", "list_scores", "list_targets",
                 "list_recommendations", "list_extracurriculars", "list_achievements"):
        assert repo.calls[name] == 1


def test_load_serves_from_cache_until_invalidated(repo, fake_cache):
    seed(repo)
    aggregator = PortfolioAggregator(repo, fake_cache)

    async def scenario():
        first = await aggregator.load(USER_ID)
        repo.courses.append(Course(id="c3", user_id=USER_ID, name="Art", grade=99, year=2025, semester="Fall"))
        cached = await aggregator.load(USER_ID)
        await aggregator.invalidate(USER_ID)
        fresh = await aggregator.load(USER_ID)
        return first, cached, fresh

    first, cached, fresh = asyncio.run(scenario())
    assert len(first.courses) == 1
    assert len(cached.courses) == 1
    assert repo.calls["list_courses"] == 2
    assert len(fresh.courses) == 2


def test_refresh_bypasses_cache(repo, fake_cache):
    seed(repo)
    aggregator = PortfolioAggregator(repo, fake_cache)

    async def scenario():
        await aggregator.load(USER_ID)
        repo.courses.append(Course(id="c3", user_id=USER_ID, name="Art", grade=99, year=2025, semester="Fall"))
        return await aggregator.refresh(USER_ID)

    snapshot = asyncio.run(scenario())
    assert len(snapshot.courses) == 2
    assert USER_ID in fake_cache.snapshots


def test_failed_read_fails_the_load_and_caches_nothing(repo, fake_cache):
    seed(repo)
    repo.fail_on = "list_scores"
    aggregator = PortfolioAggregator(repo, fake_cache)
    with pytest.raises(PortfolioLoadError) as info:
        asyncio.run(aggregator.load(USER_ID))
    assert info.value.user_id == USER_ID
    assert fake_cache.snapshots == {}


def test_disconnected_cache_is_ignored(repo, fake_cache):
    fake_cache.connected = False
    aggregator = PortfolioAggregator(repo, fake_cache)
    asyncio.run(aggregator.load(USER_ID))
    asyncio.run(aggregator.load(USER_ID))
    assert repo.calls["list_courses"] == 2
    assert fake_cache.snapshots == {}


def test_universities_are_cached(repo, fake_cache):
    aggregator = PortfolioAggregator(repo, fake_cache)
    first = asyncio.run(aggregator.universities())
    second = asyncio.run(aggregator.universities())
    assert [u.name for u in first] == [u.name for u in second]
    assert repo.calls["list_universities"] == 1


def test_edit_during_load_is_not_cached_over(repo, fake_cache):
    aggregator = PortfolioAggregator(repo, fake_cache)
    list_courses = repo.list_courses

    async def scenario():
        release = asyncio.Event()

        async def held_list_courses(user_id):
            rows = await list_courses(user_id)
            await release.wait()
            return rows

        repo.list_courses = held_list_courses
        pending = asyncio.create_task(aggregator.load(USER_ID))
        while "list_courses" not in repo.calls:
            await asyncio.sleep(0)
        # edit lands while the read is still in flight
        repo.courses.append(Course(id="c9", user_id=USER_ID, name="Art", grade=99, year=2025, semester="Fall"))
        await aggregator.invalidate(USER_ID)
        release.set()
        before_edit = await pending
        after_edit = await aggregator.load(USER_ID)
        return before_edit, after_edit

    before_edit, after_edit = asyncio.run(scenario())
    assert before_edit.courses == []
    assert [c.name for c in after_edit.courses] == ["Art"]
    assert repo.calls["list_courses"] == 2


def test_invalidate_bumps_generation(repo, fake_cache):
    aggregator = PortfolioAggregator(repo, fake_cache)
    asyncio.run(aggregator.load(USER_ID))
    assert USER_ID in fake_cache.snapshots
    asyncio.run(aggregator.invalidate(USER_ID))
    assert fake_cache.generations[USER_ID] == 1
    assert USER_ID not in fake_cache.snapshots
