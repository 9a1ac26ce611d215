from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
import httpx

from .config import settings
from .schemas import (
    Achievement,
    AchievementForm,
    Course,
    CourseForm,
    CourseUpdate,
    Extracurricular,
    ExtracurricularForm,
    Recommendation,
    ScoreForm,
    StandardizedScore,
    TargetForm,
    University,
    UniversityForm,
    UserProfile,
    UserTarget,
)


logger = logging.getLogger("uniplanner.repo")

JSON_COLUMNS = {"section_scores", "extracurricular_expectations", "university"}

# (column, descending)
Order = Sequence[Tuple[str, bool]]


class RepositoryError(RuntimeError):
    pass


def _default(obj: Any):
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (uuid.UUID, Decimal)):
        return str(obj)
    raise TypeError(f"Type not serializable: {type(obj)}")


def _decode_record(record: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in dict(record).items():
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, Decimal):
            value = float(value)
        elif key in JSON_COLUMNS and isinstance(value, str):
            value = json.loads(value)
        out[key] = value
    return out


def _encode_param(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value, default=_default)
    return value


class Database:
    """Table access for the portfolio store.

    Talks to Postgres directly through an asyncpg pool when a DSN is
    configured, otherwise to the Supabase PostgREST endpoint with the
    service key. Table and column names only ever come from this module.
    """

    def __init__(
        self,
        dsn: str,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None
        self._supabase_url = (supabase_url or "").rstrip("/")
        self._supabase_key = supabase_key
        self._timeout = timeout
        self._transport = transport

    async def connect(self) -> None:
        if self._dsn and self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=20)

    async def disconnect(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def transaction(self):
        if self._pool is None:
            raise RuntimeError("Database pool not configured. Set DATABASE_URL or use Supabase REST mode.")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    # -----------------------------
    # Low-level access
    # -----------------------------

    async def _fetch_sql(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        try:
            async with self.transaction() as conn:
                rows = await conn.fetch(sql, *args)
        except asyncpg.PostgresError as exc:
            logger.error("Postgres error: %s sql=%s", exc, sql)
            raise RepositoryError(str(exc)) from exc
        return [_decode_record(r) for r in rows]

    async def _rest(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not self._supabase_url:
            raise RepositoryError("SUPABASE_URL is not set")
        if not self._supabase_key:
            raise RepositoryError("SUPABASE_SERVICE_KEY or SUPABASE_ANON_KEY must be set")
        url = f"{self._supabase_url}/rest/v1/{table}"
        headers = {
            "apikey": self._supabase_key,
            "Authorization": f"Bearer {self._supabase_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        content = json.dumps(body, default=_default) if body is not None else None
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.request(method, url, params=params, headers=headers, content=content)
        except httpx.HTTPError as exc:
            logger.error("Supabase %s %s failed: %s", method, table, exc)
            raise RepositoryError(str(exc)) from exc
        if r.status_code >= 400:
            logger.error("Supabase %s %s error %s: %s", method, table, r.status_code, r.text)
            raise RepositoryError(f"{table}: HTTP {r.status_code}")
        if r.status_code == 204 or not r.content:
            return []
        data = r.json()
        return data if isinstance(data, list) else [data]

    @staticmethod
    def _rest_filters(filters: Dict[str, Any]) -> Dict[str, str]:
        return {col: f"eq.{val}" for col, val in filters.items()}

    async def _select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order: Order = (),
        ilike: Optional[Tuple[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or {}
        if self._pool is not None:
            clauses = []
            args: List[Any] = []
            for col, val in filters.items():
                args.append(val)
                clauses.append(f"{col} = ${len(args)}")
            if ilike:
                args.append(f"%{ilike[1]}%")
                clauses.append(f"{ilike[0]} ILIKE ${len(args)}")
            sql = f"SELECT * FROM {table}"
            if clauses:
                sql += " WHERE " + " AND ".join(clauses)
            if order:
                sql += " ORDER BY " + ", ".join(f"{c} {'DESC' if d else 'ASC'}" for c, d in order)
            return await self._fetch_sql(sql, *args)

        params = {"select": "*", **self._rest_filters(filters)}
        if ilike:
            params[ilike[0]] = f"ilike.*{ilike[1]}*"
        if order:
            params["order"] = ",".join(f"{c}.{'desc' if d else 'asc'}" for c, d in order)
        return await self._rest("GET", table, params=params)

    async def _insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        if self._pool is not None:
            cols = list(values)
            placeholders = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
            sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders}) RETURNING *"
            rows = await self._fetch_sql(sql, *[_encode_param(c, values[c]) for c in cols])
        else:
            rows = await self._rest("POST", table, body=values)
        if not rows:
            raise RepositoryError(f"{table}: insert returned no row")
        return rows[0]

    async def _update(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not values:
            rows = await self._select(table, filters)
            return rows[0] if rows else None
        if self._pool is not None:
            cols = list(values)
            args = [_encode_param(c, values[c]) for c in cols]
            sets = ", ".join(f"{c} = ${i}" for i, c in enumerate(cols, start=1))
            where = []
            for col, val in filters.items():
                args.append(val)
                where.append(f"{col} = ${len(args)}")
            sql = f"UPDATE {table} SET {sets} WHERE {' AND '.join(where)} RETURNING *"
            rows = await self._fetch_sql(sql, *args)
        else:
            rows = await self._rest("PATCH", table, params=self._rest_filters(filters), body=values)
        return rows[0] if rows else None

    async def _delete(self, table: str, filters: Dict[str, Any]) -> int:
        if self._pool is not None:
            args = list(filters.values())
            where = " AND ".join(f"{col} = ${i}" for i, col in enumerate(filters, start=1))
            rows = await self._fetch_sql(f"DELETE FROM {table} WHERE {where} RETURNING id", *args)
        else:
            rows = await self._rest("DELETE", table, params=self._rest_filters(filters))
        return len(rows)

    # -----------------------------
    # Users
    # -----------------------------

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = await self._select("users", {"id": user_id})
        return UserProfile.model_validate(rows[0]) if rows else None

    async def upsert_profile(
        self,
        user_id: str,
        *,
        name: Optional[str],
        email: Optional[str],
        intended_major: Optional[str],
        current_gpa: Optional[float],
    ) -> UserProfile:
        values = {"name": name, "intended_major": intended_major, "current_gpa": current_gpa}
        existing = await self.get_profile(user_id)
        if existing is not None:
            row = await self._update("users", {"id": user_id}, values)
            return UserProfile.model_validate(row) if row else existing
        row = await self._insert("users", {"id": user_id, "email": email, **values})
        return UserProfile.model_validate(row)

    # -----------------------------
    # Courses
    # -----------------------------

    async def list_courses(self, user_id: str) -> List[Course]:
        rows = await self._select("courses", {"user_id": user_id}, order=[("year", True), ("semester", True)])
        return [Course.model_validate(r) for r in rows]

    async def create_course(self, user_id: str, form: CourseForm) -> Course:
        row = await self._insert("courses", {"user_id": user_id, **form.model_dump()})
        return Course.model_validate(row)

    async def update_course(self, user_id: str, course_id: str, update: CourseUpdate) -> Optional[Course]:
        values = update.model_dump(exclude_none=True)
        row = await self._update("courses", {"id": course_id, "user_id": user_id}, values)
        return Course.model_validate(row) if row else None

    async def delete_course(self, user_id: str, course_id: str) -> bool:
        return await self._delete("courses", {"id": course_id, "user_id": user_id}) > 0

    # -----------------------------
    # Standardized scores
    # -----------------------------

    async def list_scores(self, user_id: str) -> List[StandardizedScore]:
        rows = await self._select("standardized_scores", {"user_id": user_id}, order=[("created_at", True)])
        return [StandardizedScore.model_validate(r) for r in rows]

    async def create_score(self, user_id: str, form: ScoreForm) -> StandardizedScore:
        row = await self._insert("standardized_scores", {"user_id": user_id, **form.model_dump()})
        return StandardizedScore.model_validate(row)

    async def delete_score(self, user_id: str, score_id: str) -> bool:
        return await self._delete("standardized_scores", {"id": score_id, "user_id": user_id}) > 0

    # -----------------------------
    # Targets
    # -----------------------------

    async def list_targets(self, user_id: str) -> List[UserTarget]:
        if self._pool is not None:
            rows = await self._fetch_sql(
                """
                SELECT t.id, t.user_id, t.university_id, t.reason_for_interest, t.created_at,
                       row_to_json(u.*) AS university
                FROM user_targets t
                JOIN universities u ON u.id = t.university_id
                WHERE t.user_id = $1
                ORDER BY t.created_at DESC
                """,
                user_id,
            )
        else:
            rows = await self._rest(
                "GET",
                "user_targets",
                params={"select": "*,universities(*)", "user_id": f"eq.{user_id}", "order": "created_at.desc"},
            )
            for r in rows:
                r["university"] = r.pop("universities", None)
        return [UserTarget.model_validate(r) for r in rows]

    async def find_target(self, user_id: str, university_id: str) -> Optional[UserTarget]:
        rows = await self._select("user_targets", {"user_id": user_id, "university_id": university_id})
        return UserTarget.model_validate(rows[0]) if rows else None

    async def add_target(self, user_id: str, form: TargetForm) -> Tuple[UserTarget, bool]:
        """Returns (target, created). An existing (user, university) pair is reused."""
        existing = await self.find_target(user_id, form.university_id)
        if existing is not None:
            return existing, False
        row = await self._insert(
            "user_targets",
            {
                "user_id": user_id,
                "university_id": form.university_id,
                "reason_for_interest": form.reason_for_interest or None,
            },
        )
        return UserTarget.model_validate(row), True

    async def delete_target(self, user_id: str, target_id: str) -> bool:
        return await self._delete("user_targets", {"id": target_id, "user_id": user_id}) > 0

    async def delete_target_for_university(self, user_id: str, university_id: str) -> bool:
        return await self._delete("user_targets", {"user_id": user_id, "university_id": university_id}) > 0

    # -----------------------------
    # Recommendations, activities, achievements
    # -----------------------------

    async def list_recommendations(self, user_id: str) -> List[Recommendation]:
        rows = await self._select("recommendations_ai", {"user_id": user_id}, order=[("created_at", True)])
        return [Recommendation.model_validate(r) for r in rows]

    async def list_extracurriculars(self, user_id: str) -> List[Extracurricular]:
        rows = await self._select("extracurriculars", {"user_id": user_id}, order=[("created_at", True)])
        return [Extracurricular.model_validate(r) for r in rows]

    async def create_extracurricular(self, user_id: str, form: ExtracurricularForm) -> Extracurricular:
        row = await self._insert("extracurriculars", {"user_id": user_id, **form.model_dump()})
        return Extracurricular.model_validate(row)

    async def delete_extracurricular(self, user_id: str, activity_id: str) -> bool:
        return await self._delete("extracurriculars", {"id": activity_id, "user_id": user_id}) > 0

    async def list_achievements(self, user_id: str) -> List[Achievement]:
        rows = await self._select("achievements", {"user_id": user_id}, order=[("created_at", True)])
        return [Achievement.model_validate(r) for r in rows]

    async def create_achievement(self, user_id: str, form: AchievementForm) -> Achievement:
        row = await self._insert("achievements", {"user_id": user_id, **form.model_dump()})
        return Achievement.model_validate(row)

    async def delete_achievement(self, user_id: str, achievement_id: str) -> bool:
        return await self._delete("achievements", {"id": achievement_id, "user_id": user_id}) > 0

    # -----------------------------
    # Universities (global reference data)
    # -----------------------------

    async def list_universities(self, query: Optional[str] = None, country: Optional[str] = None) -> List[University]:
        filters = {"country": country} if country else {}
        ilike = ("name", query) if query else None
        rows = await self._select("universities", filters, order=[("name", False)], ilike=ilike)
        return [University.model_validate(r) for r in rows]

    async def get_university(self, university_id: str) -> Optional[University]:
        rows = await self._select("universities", {"id": university_id})
        return University.model_validate(rows[0]) if rows else None

    async def create_university(self, form: UniversityForm) -> Tuple[University, bool]:
        """Returns (university, created). A name already in the catalog, compared
        case-insensitively, is reused instead of inserting a duplicate row.
        """
        wanted = form.name.lower()
        for uni in await self.list_universities(query=form.name):
            if uni.name.strip().lower() == wanted:
                return uni, False
        row = await self._insert(
            "universities",
            {
                "name": form.name,
                "country": form.country,
                "avg_gpa": 0,
                "avg_sat": 0,
                "avg_act": 0,
                "acceptance_rate": 0,
                "tuition": 0,
            },
        )
        logger.info("Created university: name=%s country=%s", form.name, form.country)
        return University.model_validate(row), True


db = Database(
    settings.database_url,
    supabase_url=settings.supabase_url,
    supabase_key=settings.supabase_service_key or settings.supabase_anon_key,
    timeout=settings.supabase_timeout_seconds,
)
