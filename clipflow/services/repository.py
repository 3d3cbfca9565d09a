from __future__ import annotations

import copy
import json
import threading
import zlib
from collections.abc import Iterable
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from clipflow.core.config import get_settings
from clipflow.services.states import is_terminal


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write collides with an existing entity."""


JOB_MUTABLE_COLUMNS = {
    "attempt",
    "provider",
    "output_ref",
    "publish_ref",
    "error",
    "publish_retries",
    "next_attempt_at",
}

SCHEMA_SQL = """
create table if not exists jobs (
  id uuid primary key,
  subject_id text not null,
  source_event_key text not null,
  state text not null,
  attempt int not null default 0,
  provider text not null,
  output_ref text,
  publish_ref text,
  error text,
  publish_retries int not null default 0,
  next_attempt_at timestamptz,
  inputs_json jsonb not null default '{}'::jsonb,
  created_at timestamptz not null,
  updated_at timestamptz not null
);
create unique index if not exists jobs_live_source_event_key_idx
  on jobs (source_event_key) where state not in ('PUBLISHED', 'FAILED');
create index if not exists jobs_source_event_key_idx on jobs (source_event_key, created_at desc);
create index if not exists jobs_state_next_attempt_idx on jobs (state, next_attempt_at);
create index if not exists jobs_state_updated_idx on jobs (state, updated_at);

create table if not exists idempotency_records (
  key text primary key,
  first_seen_at timestamptz not null,
  expires_at timestamptz not null,
  result_summary jsonb
);

create table if not exists provider_requests (
  id bigserial primary key,
  job_id uuid not null references jobs (id),
  provider text not null,
  attempt int not null,
  external_ref text,
  submitted_at timestamptz not null,
  resolved_at timestamptz,
  resolution text
);
create unique index if not exists provider_requests_external_ref_idx
  on provider_requests (external_ref) where external_ref is not null;
create unique index if not exists provider_requests_open_job_idx
  on provider_requests (job_id) where resolved_at is null;

create table if not exists rate_limit_counters (
  key text primary key,
  window_start timestamptz not null,
  count int not null
);
"""

_JOB_RETURNING = """
  id::text as id,
  subject_id,
  source_event_key,
  state,
  attempt,
  provider,
  output_ref,
  publish_ref,
  error,
  publish_retries,
  next_attempt_at,
  inputs_json,
  created_at,
  updated_at
"""

_PROVIDER_REQUEST_RETURNING = """
  id,
  job_id::text as job_id,
  provider,
  attempt,
  external_ref,
  submitted_at,
  resolved_at,
  resolution
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        auto_migrate: bool = True,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.auto_migrate = auto_migrate
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # jobs

    async def create_job(
        self,
        *,
        subject_id: str,
        source_event_key: str,
        provider: str,
        inputs_json: dict[str, Any],
        now: datetime,
        next_attempt_at: datetime | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into jobs (
                  id, subject_id, source_event_key, state, attempt, provider,
                  publish_retries, next_attempt_at, inputs_json, created_at, updated_at
                )
                values ($1::uuid, $2, $3, 'CREATED', 0, $4, 0, $7, $6::jsonb, $5, $5)
                returning {_JOB_RETURNING}
                """,
                str(uuid4()),
                subject_id,
                source_event_key,
                provider,
                now,
                json.dumps(inputs_json),
                next_attempt_at or now,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("a live job already exists for this event") from exc
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_RETURNING} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def get_job_by_source_key(self, source_event_key: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_RETURNING}
            from jobs
            where source_event_key = $1
            order by created_at desc
            limit 1
            """,
            source_event_key,
        )
        return self._job_row_to_dict(row) if row else None

    async def list_jobs(self, *, state: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_RETURNING}
            from jobs
            where ($1::text is null or state = $1)
            order by created_at desc
            limit $2 offset $3
            """,
            state,
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def transition_job(
        self,
        job_id: str,
        *,
        from_states: Iterable[str],
        to_state: str | None,
        now: datetime,
        expected_attempt: int | None = None,
        changes: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        updates = dict(changes or {})
        unknown = set(updates) - JOB_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported job columns: {sorted(unknown)}")

        params: list[Any] = [job_id, [_state_text(state) for state in from_states], now]
        assignments = ["updated_at = $3"]
        if to_state is not None:
            params.append(_state_text(to_state))
            assignments.append(f"state = ${len(params)}")
        for column, value in updates.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        attempt_clause = ""
        if expected_attempt is not None:
            params.append(expected_attempt)
            attempt_clause = f" and attempt = ${len(params)}"

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update jobs
                set {", ".join(assignments)}
                where id = $1::uuid and state = any($2::text[]){attempt_clause}
                returning {_JOB_RETURNING}
                """,
                *params,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_dict(row) if row else None

    async def list_due_jobs(self, *, states: Iterable[str], now: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_RETURNING}
            from jobs
            where state = any($1::text[])
              and next_attempt_at is not null
              and next_attempt_at <= $2
            order by next_attempt_at asc
            limit $3
            """,
            [_state_text(state) for state in states],
            now,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_stalled_jobs(
        self,
        *,
        states: Iterable[str],
        updated_before: datetime,
        limit: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_RETURNING}
            from jobs
            where state = any($1::text[]) and updated_at <= $2
            order by updated_at asc
            limit $3
            """,
            [_state_text(state) for state in states],
            updated_before,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_dict(row) for row in rows]

    # idempotency records

    async def insert_idempotency_record(
        self,
        *,
        key: str,
        now: datetime,
        expires_at: datetime,
    ) -> tuple[bool, dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                insert into idempotency_records (key, first_seen_at, expires_at)
                values ($1, $2, $3)
                on conflict (key) do update
                set first_seen_at = excluded.first_seen_at,
                    expires_at = excluded.expires_at,
                    result_summary = null
                where idempotency_records.expires_at <= excluded.first_seen_at
                  and idempotency_records.result_summary is null
                returning key, first_seen_at, expires_at, result_summary
                """,
                key,
                now,
                expires_at,
            )
            if row:
                return True, self._idempotency_row_to_dict(row)
            existing = await conn.fetchrow(
                "select key, first_seen_at, expires_at, result_summary from idempotency_records where key = $1",
                key,
            )
        if not existing:
            raise RepositoryConflictError("idempotency record vanished during admission")
        return False, self._idempotency_row_to_dict(existing)

    async def get_idempotency_record(self, key: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select key, first_seen_at, expires_at, result_summary from idempotency_records where key = $1",
            key,
        )
        return self._idempotency_row_to_dict(row) if row else None

    async def set_idempotency_result(self, *, key: str, summary: dict[str, Any]) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update idempotency_records
            set result_summary = $2::jsonb
            where key = $1 and result_summary is null
            returning key
            """,
            key,
            json.dumps(summary),
        )
        return row is not None

    async def delete_idempotency_record(self, key: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "delete from idempotency_records where key = $1 and result_summary is null returning key",
            key,
        )
        return row is not None

    # provider requests

    async def insert_provider_request(
        self,
        *,
        job_id: str,
        provider: str,
        attempt: int,
        external_ref: str | None,
        submitted_at: datetime,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into provider_requests (job_id, provider, attempt, external_ref, submitted_at)
                values ($1::uuid, $2, $3, $4, $5)
                returning {_PROVIDER_REQUEST_RETURNING}
                """,
                job_id,
                provider,
                attempt,
                external_ref,
                submitted_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("job already has an outstanding provider request") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return dict(row)

    async def get_provider_request_by_ref(self, external_ref: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_PROVIDER_REQUEST_RETURNING} from provider_requests where external_ref = $1",
            external_ref,
        )
        return dict(row) if row else None

    async def get_open_provider_request(self, job_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_PROVIDER_REQUEST_RETURNING}
            from provider_requests
            where job_id = $1::uuid and resolved_at is null
            """,
            job_id,
        )
        return dict(row) if row else None

    async def resolve_provider_request(
        self,
        *,
        job_id: str,
        attempt: int,
        resolution: str,
        now: datetime,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update provider_requests
            set resolved_at = $3, resolution = $4
            where job_id = $1::uuid and attempt = $2 and resolved_at is null
            returning id
            """,
            job_id,
            attempt,
            now,
            resolution,
        )
        return row is not None

    # rate limit counters

    async def increment_rate_counter(
        self,
        *,
        key: str,
        window_seconds: int,
        now: datetime,
    ) -> tuple[int, datetime]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into rate_limit_counters as c (key, window_start, count)
            values ($1, $2, 1)
            on conflict (key) do update
            set
              count = case
                when c.window_start + ($3::int * interval '1 second') <= excluded.window_start then 1
                else c.count + 1
              end,
              window_start = case
                when c.window_start + ($3::int * interval '1 second') <= excluded.window_start then excluded.window_start
                else c.window_start
              end
            returning count, window_start
            """,
            key,
            now,
            window_seconds,
        )
        return int(row["count"]), row["window_start"]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CLIPFLOW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc
        if self.auto_migrate:
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        return self._pool

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        inputs_json = row["inputs_json"]
        if isinstance(inputs_json, str):
            try:
                inputs_json = json.loads(inputs_json)
            except json.JSONDecodeError:
                inputs_json = {}
        if inputs_json is None:
            inputs_json = {}

        return {
            "id": row["id"],
            "subject_id": row["subject_id"],
            "source_event_key": row["source_event_key"],
            "state": row["state"],
            "attempt": row["attempt"],
            "provider": row["provider"],
            "output_ref": row["output_ref"],
            "publish_ref": row["publish_ref"],
            "error": row["error"],
            "publish_retries": row["publish_retries"],
            "next_attempt_at": row["next_attempt_at"],
            "inputs_json": inputs_json,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _idempotency_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        summary = row["result_summary"]
        if isinstance(summary, str):
            try:
                summary = json.loads(summary)
            except json.JSONDecodeError:
                summary = None
        return {
            "key": row["key"],
            "first_seen_at": row["first_seen_at"],
            "expires_at": row["expires_at"],
            "result_summary": summary,
        }


class InMemoryRepository:
    """Process-local store with the same conditional-write contract as Postgres.

    Each entity is guarded by one of a fixed set of shard locks chosen by its
    key, so writers for different jobs or counters do not serialize on a
    single lock. Nothing here survives a restart.
    """

    SHARD_COUNT = 16

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._jobs_by_source: dict[str, list[str]] = {}
        self._idempotency: dict[str, dict[str, Any]] = {}
        self._provider_requests: list[dict[str, Any]] = []
        self._requests_by_ref: dict[str, dict[str, Any]] = {}
        self._open_requests: dict[str, dict[str, Any]] = {}
        self._counters: dict[str, dict[str, Any]] = {}
        self._shards = [threading.Lock() for _ in range(self.SHARD_COUNT)]

    async def close(self) -> None:
        return None

    async def create_job(
        self,
        *,
        subject_id: str,
        source_event_key: str,
        provider: str,
        inputs_json: dict[str, Any],
        now: datetime,
        next_attempt_at: datetime | None = None,
    ) -> dict[str, Any]:
        with self._lock_for("source", source_event_key):
            for existing_id in self._jobs_by_source.get(source_event_key, []):
                if not is_terminal(self._jobs[existing_id]["state"]):
                    raise RepositoryConflictError("a live job already exists for this event")
            job_id = str(uuid4())
            job = {
                "id": job_id,
                "subject_id": subject_id,
                "source_event_key": source_event_key,
                "state": "CREATED",
                "attempt": 0,
                "provider": provider,
                "output_ref": None,
                "publish_ref": None,
                "error": None,
                "publish_retries": 0,
                "next_attempt_at": next_attempt_at or now,
                "inputs_json": copy.deepcopy(inputs_json),
                "created_at": now,
                "updated_at": now,
            }
            self._jobs[job_id] = job
            self._jobs_by_source.setdefault(source_event_key, []).append(job_id)
            return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def get_job_by_source_key(self, source_event_key: str) -> dict[str, Any] | None:
        job_ids = self._jobs_by_source.get(source_event_key)
        if not job_ids:
            return None
        return copy.deepcopy(self._jobs[job_ids[-1]])

    async def list_jobs(self, *, state: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = sorted(self._jobs.values(), key=lambda job: job["created_at"], reverse=True)
        if state:
            rows = [row for row in rows if row["state"] == state]
        bounded = max(1, min(limit, 500))
        return [copy.deepcopy(row) for row in rows[max(0, offset) : max(0, offset) + bounded]]

    async def transition_job(
        self,
        job_id: str,
        *,
        from_states: Iterable[str],
        to_state: str | None,
        now: datetime,
        expected_attempt: int | None = None,
        changes: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        updates = dict(changes or {})
        unknown = set(updates) - JOB_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported job columns: {sorted(unknown)}")
        allowed = {_state_text(state) for state in from_states}

        with self._lock_for("job", job_id):
            job = self._jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job["state"] not in allowed:
                return None
            if expected_attempt is not None and job["attempt"] != expected_attempt:
                return None
            job.update(updates)
            if to_state is not None:
                job["state"] = _state_text(to_state)
            job["updated_at"] = now
            return copy.deepcopy(job)

    async def list_due_jobs(self, *, states: Iterable[str], now: datetime, limit: int) -> list[dict[str, Any]]:
        wanted = {_state_text(state) for state in states}
        rows = [
            job
            for job in list(self._jobs.values())
            if job["state"] in wanted and job["next_attempt_at"] is not None and job["next_attempt_at"] <= now
        ]
        rows.sort(key=lambda job: job["next_attempt_at"])
        return [copy.deepcopy(row) for row in rows[: max(1, min(limit, 1000))]]

    async def list_stalled_jobs(
        self,
        *,
        states: Iterable[str],
        updated_before: datetime,
        limit: int,
    ) -> list[dict[str, Any]]:
        wanted = {_state_text(state) for state in states}
        rows = [job for job in list(self._jobs.values()) if job["state"] in wanted and job["updated_at"] <= updated_before]
        rows.sort(key=lambda job: job["updated_at"])
        return [copy.deepcopy(row) for row in rows[: max(1, min(limit, 1000))]]

    async def insert_idempotency_record(
        self,
        *,
        key: str,
        now: datetime,
        expires_at: datetime,
    ) -> tuple[bool, dict[str, Any]]:
        with self._lock_for("idempotency", key):
            existing = self._idempotency.get(key)
            if existing is not None and (existing["result_summary"] is not None or existing["expires_at"] > now):
                return False, copy.deepcopy(existing)
            record = {"key": key, "first_seen_at": now, "expires_at": expires_at, "result_summary": None}
            self._idempotency[key] = record
            return True, copy.deepcopy(record)

    async def get_idempotency_record(self, key: str) -> dict[str, Any] | None:
        record = self._idempotency.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def set_idempotency_result(self, *, key: str, summary: dict[str, Any]) -> bool:
        with self._lock_for("idempotency", key):
            record = self._idempotency.get(key)
            if record is None or record["result_summary"] is not None:
                return False
            record["result_summary"] = copy.deepcopy(summary)
            return True

    async def delete_idempotency_record(self, key: str) -> bool:
        with self._lock_for("idempotency", key):
            record = self._idempotency.get(key)
            if record is None or record["result_summary"] is not None:
                return False
            del self._idempotency[key]
            return True

    async def insert_provider_request(
        self,
        *,
        job_id: str,
        provider: str,
        attempt: int,
        external_ref: str | None,
        submitted_at: datetime,
    ) -> dict[str, Any]:
        with self._lock_for("job", job_id):
            if job_id not in self._jobs:
                raise RepositoryNotFoundError("job not found")
            if job_id in self._open_requests:
                raise RepositoryConflictError("job already has an outstanding provider request")
            if external_ref is not None and external_ref in self._requests_by_ref:
                raise RepositoryConflictError("external_ref already recorded")
            request = {
                "id": len(self._provider_requests) + 1,
                "job_id": job_id,
                "provider": provider,
                "attempt": attempt,
                "external_ref": external_ref,
                "submitted_at": submitted_at,
                "resolved_at": None,
                "resolution": None,
            }
            self._provider_requests.append(request)
            self._open_requests[job_id] = request
            if external_ref is not None:
                self._requests_by_ref[external_ref] = request
            return dict(request)

    async def get_provider_request_by_ref(self, external_ref: str) -> dict[str, Any] | None:
        request = self._requests_by_ref.get(external_ref)
        return dict(request) if request is not None else None

    async def get_open_provider_request(self, job_id: str) -> dict[str, Any] | None:
        request = self._open_requests.get(job_id)
        return dict(request) if request is not None else None

    async def resolve_provider_request(
        self,
        *,
        job_id: str,
        attempt: int,
        resolution: str,
        now: datetime,
    ) -> bool:
        with self._lock_for("job", job_id):
            request = self._open_requests.get(job_id)
            if request is None or request["attempt"] != attempt:
                return False
            request["resolved_at"] = now
            request["resolution"] = resolution
            del self._open_requests[job_id]
            return True

    async def increment_rate_counter(
        self,
        *,
        key: str,
        window_seconds: int,
        now: datetime,
    ) -> tuple[int, datetime]:
        with self._lock_for("rate", key):
            counter = self._counters.get(key)
            if counter is None or counter["window_start"] + timedelta(seconds=window_seconds) <= now:
                counter = {"window_start": now, "count": 0}
                self._counters[key] = counter
            counter["count"] += 1
            return counter["count"], counter["window_start"]

    def _lock_for(self, namespace: str, key: str) -> threading.Lock:
        shard = zlib.crc32(f"{namespace}:{key}".encode("utf-8")) % self.SHARD_COUNT
        return self._shards[shard]


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        auto_migrate=settings.database_auto_migrate,
    )


def _state_text(state: Any) -> str:
    return state.value if isinstance(state, Enum) else str(state)
