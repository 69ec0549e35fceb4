"""
PostgreSQL persistence layer for the Automation Service.

Entities are stored as JSONB documents next to the columns used for
filtering. Scheduler jobs keep their queue state in real columns so the
claim query can lock rows with FOR UPDATE SKIP LOCKED.
"""

import json
from datetime import datetime
from typing import Dict, Any, Optional, List

import asyncpg

from shared.logging import get_logger
from shared.errors import NotFoundError, ServiceError
from ..rules.models import (
    Record, Workflow, AutomationRun, SchedulerJob, Cadence, CadenceEnrollment,
    Macro, AssignmentRule, TriggerType, RunStatus, JobStatus, EnrollmentStatus,
    new_id, utcnow
)
from .base import AutomationStore, CLOSED_STATUSES


class PostgreSQLStore(AutomationStore):
    """asyncpg-backed store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("automation.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=self._init_connection,
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("Failed to start PostgreSQL persistence", {"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def health_check(self) -> str:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return "ok"
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return "error"

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_records (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    module_id VARCHAR(64) NOT NULL,
                    owner_id VARCHAR(64),
                    status VARCHAR(100),
                    doc JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
                CREATE INDEX IF NOT EXISTS idx_records_module ON automation_records(org_id, module_id);
                CREATE INDEX IF NOT EXISTS idx_records_owner ON automation_records(org_id, owner_id);

                CREATE TABLE IF NOT EXISTS automation_workflows (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    module_id VARCHAR(64) NOT NULL,
                    trigger_type VARCHAR(32) NOT NULL,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    priority INTEGER NOT NULL DEFAULT 0,
                    doc JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
                CREATE INDEX IF NOT EXISTS idx_workflows_trigger
                    ON automation_workflows(org_id, module_id, trigger_type, enabled);

                CREATE TABLE IF NOT EXISTS automation_runs (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    workflow_id VARCHAR(64),
                    status VARCHAR(32) NOT NULL,
                    idempotency_key VARCHAR(255),
                    started_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    doc JSONB NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_runs_org ON automation_runs(org_id, started_at DESC);
                CREATE INDEX IF NOT EXISTS idx_runs_idempotency ON automation_runs(idempotency_key);

                CREATE TABLE IF NOT EXISTS automation_jobs (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    job_type VARCHAR(32) NOT NULL,
                    entity_type VARCHAR(64) NOT NULL,
                    entity_id VARCHAR(64) NOT NULL,
                    record_id VARCHAR(64),
                    run_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    status VARCHAR(32) NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    last_error TEXT,
                    last_attempt_at TIMESTAMP WITH TIME ZONE,
                    payload JSONB NOT NULL DEFAULT '{}',
                    result JSONB,
                    idempotency_key VARCHAR(255) UNIQUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMP WITH TIME ZONE
                );
                CREATE INDEX IF NOT EXISTS idx_jobs_due ON automation_jobs(status, run_at);

                CREATE TABLE IF NOT EXISTS automation_cadences (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    doc JSONB NOT NULL
                );

                CREATE TABLE IF NOT EXISTS automation_enrollments (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    cadence_id VARCHAR(64) NOT NULL,
                    record_id VARCHAR(64) NOT NULL,
                    status VARCHAR(32) NOT NULL,
                    next_step_at TIMESTAMP WITH TIME ZONE,
                    doc JSONB NOT NULL,
                    UNIQUE (cadence_id, record_id)
                );
                CREATE INDEX IF NOT EXISTS idx_enrollments_due ON automation_enrollments(status, next_step_at);

                CREATE TABLE IF NOT EXISTS automation_macros (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    module_id VARCHAR(64) NOT NULL,
                    doc JSONB NOT NULL
                );

                CREATE TABLE IF NOT EXISTS automation_assignment_rules (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    module_id VARCHAR(64) NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    doc JSONB NOT NULL
                );

                CREATE TABLE IF NOT EXISTS automation_entities (
                    id VARCHAR(64) PRIMARY KEY,
                    org_id VARCHAR(64) NOT NULL,
                    kind VARCHAR(64) NOT NULL,
                    record_id VARCHAR(64),
                    payload JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
                CREATE INDEX IF NOT EXISTS idx_entities_kind ON automation_entities(org_id, kind, record_id);

                CREATE TABLE IF NOT EXISTS automation_profiles (
                    org_id VARCHAR(64) NOT NULL,
                    user_id VARCHAR(64) NOT NULL,
                    crm_role VARCHAR(32) NOT NULL,
                    PRIMARY KEY (org_id, user_id)
                );
            """)

    # Records

    async def save_record(self, record: Record) -> Record:
        async with self.pool.acquire() as conn:
            saved = await conn.fetchval("""
                INSERT INTO automation_records (id, org_id, module_id, owner_id, status, doc, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    module_id = EXCLUDED.module_id,
                    owner_id = EXCLUDED.owner_id,
                    status = EXCLUDED.status,
                    doc = EXCLUDED.doc
                WHERE automation_records.org_id = EXCLUDED.org_id
                RETURNING id
            """, record.id, record.org_id, record.module_id, record.owner_id,
                record.status, record.to_dict(), record.created_at)
        if saved is None:
            raise NotFoundError("Record", record.id)
        return record

    async def get_record(self, org_id: str, record_id: str) -> Optional[Record]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval(
                "SELECT doc FROM automation_records WHERE id = $1 AND org_id = $2",
                record_id, org_id
            )
        return Record.from_dict(doc) if doc else None

    async def update_record(self, org_id: str, record_id: str, updates: Dict[str, Any]) -> Optional[Record]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                doc = await conn.fetchval(
                    "SELECT doc FROM automation_records WHERE id = $1 AND org_id = $2 FOR UPDATE",
                    record_id, org_id
                )
                if not doc:
                    return None
                record = Record.from_dict(doc)
                record.apply_updates(updates)
                await conn.execute("""
                    UPDATE automation_records SET owner_id = $2, status = $3, doc = $4 WHERE id = $1
                """, record.id, record.owner_id, record.status, record.to_dict())
        return record

    async def list_records(self, org_id: str, module_id: str, limit: int = 100) -> List[Record]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_records
                WHERE org_id = $1 AND module_id = $2
                ORDER BY created_at LIMIT $3
            """, org_id, module_id, limit)
        return [Record.from_dict(row["doc"]) for row in rows]

    async def count_open_records(self, org_id: str, owner_ids: List[str]) -> Dict[str, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT owner_id, COUNT(*) AS open_count FROM automation_records
                WHERE org_id = $1 AND owner_id = ANY($2::varchar[])
                  AND LOWER(COALESCE(status, '')) <> ALL($3::varchar[])
                GROUP BY owner_id
            """, org_id, owner_ids, list(CLOSED_STATUSES))
        counts = {owner_id: 0 for owner_id in owner_ids}
        for row in rows:
            counts[row["owner_id"]] = row["open_count"]
        return counts

    # Workflows

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_workflows (id, org_id, module_id, trigger_type, enabled, priority, doc, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (id) DO UPDATE SET
                    module_id = EXCLUDED.module_id,
                    trigger_type = EXCLUDED.trigger_type,
                    enabled = EXCLUDED.enabled,
                    priority = EXCLUDED.priority,
                    doc = EXCLUDED.doc
            """, workflow.id, workflow.org_id, workflow.module_id, workflow.trigger_type.value,
                workflow.enabled, workflow.priority, workflow.to_dict(), workflow.created_at)
        self.logger.info("Workflow saved", workflow_id=workflow.id, name=workflow.name)
        return workflow

    async def get_workflow(self, org_id: Optional[str], workflow_id: str) -> Optional[Workflow]:
        async with self.pool.acquire() as conn:
            if org_id is None:
                doc = await conn.fetchval("SELECT doc FROM automation_workflows WHERE id = $1", workflow_id)
            else:
                doc = await conn.fetchval(
                    "SELECT doc FROM automation_workflows WHERE id = $1 AND org_id = $2",
                    workflow_id, org_id
                )
        return Workflow.from_dict(doc) if doc else None

    async def delete_workflow(self, org_id: str, workflow_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM automation_workflows WHERE id = $1 AND org_id = $2",
                workflow_id, org_id
            )
        return result.endswith(" 1")

    async def list_workflows(self, org_id: str, module_id: Optional[str] = None,
                             trigger_type: Optional[TriggerType] = None,
                             enabled_only: bool = False) -> List[Workflow]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_workflows
                WHERE org_id = $1
                  AND ($2::varchar IS NULL OR module_id = $2)
                  AND ($3::varchar IS NULL OR trigger_type = $3)
                  AND (NOT $4 OR enabled)
                ORDER BY priority ASC, created_at ASC
            """, org_id, module_id, trigger_type.value if trigger_type else None, enabled_only)
        return [Workflow.from_dict(row["doc"]) for row in rows]

    async def list_scheduled_workflows(self, limit: int = 100) -> List[Workflow]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_workflows
                WHERE trigger_type = 'scheduled' AND enabled
                ORDER BY priority ASC, created_at ASC LIMIT $1
            """, limit)
        return [Workflow.from_dict(row["doc"]) for row in rows]

    async def record_workflow_run(self, workflow_id: str, status: str, at: datetime):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE automation_workflows SET doc = doc || jsonb_build_object(
                    'run_count', COALESCE((doc->>'run_count')::int, 0) + 1,
                    'last_run_at', $2::text,
                    'last_run_status', $3::text
                ) WHERE id = $1
            """, workflow_id, at.isoformat(), status)

    async def set_last_scheduled_at(self, workflow_id: str, at: datetime):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE automation_workflows
                SET doc = jsonb_set(doc, '{last_scheduled_at}', to_jsonb($2::text))
                WHERE id = $1
            """, workflow_id, at.isoformat())

    # Runs

    async def create_run(self, run: AutomationRun) -> AutomationRun:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_runs (id, org_id, workflow_id, status, idempotency_key, started_at, doc)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, run.id, run.org_id, run.workflow_id, run.status.value, run.idempotency_key,
                run.started_at, run.to_dict())
        return run

    async def complete_run(self, run: AutomationRun) -> AutomationRun:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE automation_runs SET status = $2, doc = $3 WHERE id = $1
            """, run.id, run.status.value, run.to_dict())
        return run

    async def get_run(self, org_id: str, run_id: str) -> Optional[AutomationRun]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval(
                "SELECT doc FROM automation_runs WHERE id = $1 AND org_id = $2", run_id, org_id
            )
        return AutomationRun.from_dict(doc) if doc else None

    async def list_runs(self, org_id: str, workflow_id: Optional[str] = None,
                        status: Optional[RunStatus] = None, limit: int = 100) -> List[AutomationRun]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_runs
                WHERE org_id = $1
                  AND ($2::varchar IS NULL OR workflow_id = $2)
                  AND ($3::varchar IS NULL OR status = $3)
                ORDER BY started_at DESC LIMIT $4
            """, org_id, workflow_id, status.value if status else None, limit)
        return [AutomationRun.from_dict(row["doc"]) for row in rows]

    async def idempotency_key_exists(self, key: str) -> bool:
        async with self.pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM automation_runs WHERE idempotency_key = $1 AND status <> $2 LIMIT 1",
                key, RunStatus.FAILED.value
            )
        return found is not None

    async def increment_run_retry(self, run_id: str) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval("""
                UPDATE automation_runs SET doc = jsonb_set(
                    doc, '{retry_count}', to_jsonb(COALESCE((doc->>'retry_count')::int, 0) + 1)
                ) WHERE id = $1
                RETURNING (doc->>'retry_count')::int
            """, run_id)
        return count or 0

    # Scheduler jobs

    @staticmethod
    def _job_from_row(row) -> SchedulerJob:
        return SchedulerJob.from_dict(dict(row))

    async def insert_job(self, job: SchedulerJob) -> SchedulerJob:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO automation_jobs (
                    id, org_id, job_type, entity_type, entity_id, record_id, run_at, status,
                    attempts, max_attempts, payload, idempotency_key, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING *
            """, job.id, job.org_id, job.job_type.value, job.entity_type, job.entity_id,
                job.record_id, job.run_at, job.status.value, job.attempts, job.max_attempts,
                job.payload, job.idempotency_key, job.created_at)
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM automation_jobs WHERE idempotency_key = $1", job.idempotency_key
                )
        return self._job_from_row(row)

    async def get_job(self, org_id: str, job_id: str) -> Optional[SchedulerJob]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM automation_jobs WHERE id = $1 AND org_id = $2", job_id, org_id
            )
        return self._job_from_row(row) if row else None

    async def list_jobs(self, org_id: str, status: Optional[JobStatus] = None,
                        entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                        limit: int = 100) -> List[SchedulerJob]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM automation_jobs
                WHERE org_id = $1
                  AND ($2::varchar IS NULL OR status = $2)
                  AND ($3::varchar IS NULL OR entity_type = $3)
                  AND ($4::varchar IS NULL OR entity_id = $4)
                ORDER BY run_at ASC LIMIT $5
            """, org_id, status.value if status else None, entity_type, entity_id, limit)
        return [self._job_from_row(row) for row in rows]

    async def claim_due_jobs(self, now: datetime, limit: int) -> List[SchedulerJob]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch("""
                    UPDATE automation_jobs
                    SET status = 'processing', attempts = attempts + 1, last_attempt_at = $1
                    WHERE id IN (
                        SELECT id FROM automation_jobs
                        WHERE status = 'pending' AND run_at <= $1
                        ORDER BY created_at ASC
                        LIMIT $2
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                """, now, limit)
        jobs = [self._job_from_row(row) for row in rows]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    async def complete_job(self, job_id: str, result: Dict[str, Any], at: datetime):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE automation_jobs SET status = 'completed', result = $2, completed_at = $3
                WHERE id = $1
            """, job_id, result, at)

    async def fail_job(self, job_id: str, error: str, at: datetime, retry_at: Optional[datetime]):
        async with self.pool.acquire() as conn:
            if retry_at is None:
                await conn.execute("""
                    UPDATE automation_jobs SET status = 'failed', last_error = $2, completed_at = $3
                    WHERE id = $1
                """, job_id, error, at)
            else:
                await conn.execute("""
                    UPDATE automation_jobs SET status = 'pending', last_error = $2, run_at = $3
                    WHERE id = $1
                """, job_id, error, retry_at)

    async def cancel_job(self, org_id: str, job_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE automation_jobs SET status = 'cancelled', completed_at = NOW()
                WHERE id = $1 AND org_id = $2 AND status = 'pending'
            """, job_id, org_id)
        return result.endswith(" 1")

    # Cadences

    async def save_cadence(self, cadence: Cadence) -> Cadence:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_cadences (id, org_id, doc) VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
            """, cadence.id, cadence.org_id, cadence.to_dict())
        return cadence

    async def get_cadence(self, org_id: str, cadence_id: str) -> Optional[Cadence]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval(
                "SELECT doc FROM automation_cadences WHERE id = $1 AND org_id = $2", cadence_id, org_id
            )
        return Cadence.from_dict(doc) if doc else None

    async def list_cadences(self, org_id: str) -> List[Cadence]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT doc FROM automation_cadences WHERE org_id = $1", org_id)
        return [Cadence.from_dict(row["doc"]) for row in rows]

    async def save_enrollment(self, enrollment: CadenceEnrollment) -> CadenceEnrollment:
        enrollment.updated_at = utcnow()
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_enrollments (id, org_id, cadence_id, record_id, status, next_step_at, doc)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    next_step_at = EXCLUDED.next_step_at,
                    doc = EXCLUDED.doc
            """, enrollment.id, enrollment.org_id, enrollment.cadence_id, enrollment.record_id,
                enrollment.status.value, enrollment.next_step_at, enrollment.to_dict())
        return enrollment

    async def get_enrollment(self, org_id: str, cadence_id: str, record_id: str) -> Optional[CadenceEnrollment]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval("""
                SELECT doc FROM automation_enrollments
                WHERE org_id = $1 AND cadence_id = $2 AND record_id = $3
            """, org_id, cadence_id, record_id)
        return CadenceEnrollment.from_dict(doc) if doc else None

    async def list_enrollments(self, org_id: str, record_id: Optional[str] = None,
                               status: Optional[EnrollmentStatus] = None) -> List[CadenceEnrollment]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_enrollments
                WHERE org_id = $1
                  AND ($2::varchar IS NULL OR record_id = $2)
                  AND ($3::varchar IS NULL OR status = $3)
            """, org_id, record_id, status.value if status else None)
        return [CadenceEnrollment.from_dict(row["doc"]) for row in rows]

    async def list_due_enrollments(self, now: datetime, limit: int) -> List[CadenceEnrollment]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_enrollments
                WHERE status = 'active' AND next_step_at <= $1
                ORDER BY next_step_at ASC LIMIT $2
            """, now, limit)
        return [CadenceEnrollment.from_dict(row["doc"]) for row in rows]

    # Macros

    async def save_macro(self, macro: Macro) -> Macro:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_macros (id, org_id, module_id, doc) VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET module_id = EXCLUDED.module_id, doc = EXCLUDED.doc
            """, macro.id, macro.org_id, macro.module_id, macro.to_dict())
        return macro

    async def get_macro(self, org_id: str, macro_id: str) -> Optional[Macro]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval(
                "SELECT doc FROM automation_macros WHERE id = $1 AND org_id = $2", macro_id, org_id
            )
        return Macro.from_dict(doc) if doc else None

    async def list_macros(self, org_id: str, module_id: Optional[str] = None) -> List[Macro]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_macros
                WHERE org_id = $1 AND ($2::varchar IS NULL OR module_id = $2)
            """, org_id, module_id)
        return [Macro.from_dict(row["doc"]) for row in rows]

    # Assignment rules

    async def save_assignment_rule(self, rule: AssignmentRule) -> AssignmentRule:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_assignment_rules (id, org_id, module_id, priority, doc)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    module_id = EXCLUDED.module_id,
                    priority = EXCLUDED.priority,
                    doc = EXCLUDED.doc
            """, rule.id, rule.org_id, rule.module_id, rule.priority, rule.to_dict())
        return rule

    async def get_assignment_rule(self, org_id: str, rule_id: str) -> Optional[AssignmentRule]:
        async with self.pool.acquire() as conn:
            doc = await conn.fetchval(
                "SELECT doc FROM automation_assignment_rules WHERE id = $1 AND org_id = $2", rule_id, org_id
            )
        return AssignmentRule.from_dict(doc) if doc else None

    async def list_assignment_rules(self, org_id: str, module_id: Optional[str] = None) -> List[AssignmentRule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT doc FROM automation_assignment_rules
                WHERE org_id = $1 AND ($2::varchar IS NULL OR module_id = $2)
                ORDER BY priority ASC
            """, org_id, module_id)
        return [AssignmentRule.from_dict(row["doc"]) for row in rows]

    # Side effects

    async def create_entity(self, org_id: str, kind: str, payload: Dict[str, Any],
                            record_id: Optional[str] = None) -> Dict[str, Any]:
        entity_id = new_id()
        created_at = utcnow()
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_entities (id, org_id, kind, record_id, payload, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
            """, entity_id, org_id, kind, record_id, payload, created_at)
        return {
            "id": entity_id,
            "org_id": org_id,
            "kind": kind,
            "record_id": record_id,
            "payload": payload,
            "created_at": created_at.isoformat(),
        }

    async def list_entities(self, org_id: str, kind: str, record_id: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, org_id, kind, record_id, payload, created_at FROM automation_entities
                WHERE org_id = $1 AND kind = $2 AND ($3::varchar IS NULL OR record_id = $3)
                ORDER BY created_at ASC
            """, org_id, kind, record_id)
        return [
            {**dict(row), "created_at": row["created_at"].isoformat()}
            for row in rows
        ]

    # User profiles

    async def save_profile(self, org_id: str, user_id: str, role: str):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_profiles (org_id, user_id, crm_role) VALUES ($1, $2, $3)
                ON CONFLICT (org_id, user_id) DO UPDATE SET crm_role = EXCLUDED.crm_role
            """, org_id, user_id, role)

    async def get_profile_role(self, org_id: str, user_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT crm_role FROM automation_profiles WHERE org_id = $1 AND user_id = $2",
                org_id, user_id
            )
