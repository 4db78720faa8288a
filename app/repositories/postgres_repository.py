"""
Postgres-backed repository (psycopg 3 via the shared db_pool).

Entity saves are conditional updates guarded by ``version``; zero affected rows
means another writer got there first and StaleEntityError is raised. Campaign
membership lives in ``campaign_mailboxes`` and is rewritten in the same
transaction as the campaign row. Tenant assessments serialize on a Postgres
advisory lock, so concurrent API workers and the scheduler never overlap.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    AssessmentSummary,
    AuditEntry,
    BlacklistName,
    BlacklistStatus,
    Campaign,
    CampaignStatus,
    CategorySummary,
    Domain,
    EntityType,
    Finding,
    FindingCategory,
    FindingSeverity,
    HealingOrigin,
    HealthStatus,
    InfrastructureReport,
    Mailbox,
    Recommendation,
    RecoveryPhase,
    ReportType,
    StateTransition,
    Tenant,
    TriggeredBy,
)
from app.repositories.base import InfrastructureRepository
from app.services.errors import EntityNotFoundError, StaleEntityError

logger = get_logger(__name__)

DOMAIN_COLUMNS = [f.name for f in fields(Domain)]
MAILBOX_COLUMNS = [f.name for f in fields(Mailbox)]
CAMPAIGN_COLUMNS = [f.name for f in fields(Campaign) if f.name != "mailbox_ids"]


def _assessment_lock_key(tenant_id: str) -> str:
    return f"infrastructure_assessment:{tenant_id}"


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return Jsonb({_db_value(k): _db_value(v) for k, v in value.items()})
    return value


def _optional(enum_type: type[Enum], value: str | None):
    return enum_type(value) if value is not None else None


def _row_to_domain(row: dict) -> Domain:
    data = {name: row[name] for name in DOMAIN_COLUMNS}
    data["status"] = HealthStatus(row["status"])
    data["recovery_phase"] = RecoveryPhase(row["recovery_phase"])
    data["healing_origin"] = _optional(HealingOrigin, row["healing_origin"])
    data["blacklist_results"] = {
        BlacklistName(name): BlacklistStatus(status)
        for name, status in (row["blacklist_results"] or {}).items()
    }
    return Domain(**data)


def _row_to_mailbox(row: dict) -> Mailbox:
    data = {name: row[name] for name in MAILBOX_COLUMNS}
    data["status"] = HealthStatus(row["status"])
    data["recovery_phase"] = RecoveryPhase(row["recovery_phase"])
    data["healing_origin"] = _optional(HealingOrigin, row["healing_origin"])
    return Mailbox(**data)


def _row_to_campaign(row: dict, mailbox_ids: list[str]) -> Campaign:
    data = {name: row[name] for name in CAMPAIGN_COLUMNS}
    data["status"] = CampaignStatus(row["status"])
    data["recovery_phase"] = _optional(RecoveryPhase, row["recovery_phase"])
    return Campaign(mailbox_ids=mailbox_ids, **data)


def _summary_from_json(data: dict) -> AssessmentSummary:
    return AssessmentSummary(
        domains=CategorySummary(**data["domains"]),
        mailboxes=CategorySummary(**data["mailboxes"]),
        campaigns=CategorySummary(**data["campaigns"]),
    )


def _finding_from_json(data: dict) -> Finding:
    return Finding(
        severity=FindingSeverity(data["severity"]),
        category=FindingCategory(data["category"]),
        entity_type=EntityType(data["entity_type"]),
        entity_id=data["entity_id"],
        entity_name=data["entity_name"],
        title=data["title"],
        message=data["message"],
        remediation=data["remediation"],
    )


def _row_to_report(row: dict) -> InfrastructureReport:
    return InfrastructureReport(
        id=row["id"],
        tenant_id=row["tenant_id"],
        report_type=ReportType(row["report_type"]),
        assessment_version=row["assessment_version"],
        overall_score=row["overall_score"],
        summary=_summary_from_json(row["summary"]),
        findings=tuple(_finding_from_json(f) for f in row["findings"]),
        recommendations=tuple(Recommendation(**r) for r in row["recommendations"]),
        created_at=row["created_at"],
    )


def _insert_sql(table: str, columns: list[str]) -> str:
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _cas_update_sql(table: str, columns: list[str]) -> str:
    assignments = ", ".join(f"{c} = %s" for c in columns if c not in ("id", "version"))
    return f"UPDATE {table} SET {assignments}, version = version + 1 WHERE id = %s AND version = %s"


def _cas_params(entity, columns: list[str]) -> tuple:
    values = [_db_value(getattr(entity, c)) for c in columns if c not in ("id", "version")]
    return (*values, entity.id, entity.version)


class PostgresInfrastructureRepository(InfrastructureRepository):
    """Relational implementation of InfrastructureRepository."""

    # Tenants ------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = await fetch_one(
            "SELECT id, name, assessment_completed, transition_acknowledged FROM tenants WHERE id = %s",
            (tenant_id,),
        )
        return Tenant(**row) if row else None

    async def list_tenants(self) -> list[Tenant]:
        rows = await fetch_all(
            "SELECT id, name, assessment_completed, transition_acknowledged FROM tenants ORDER BY id"
        )
        return [Tenant(**row) for row in rows]

    async def add_tenant(self, tenant: Tenant) -> Tenant:
        await execute_query(
            _insert_sql("tenants", ["id", "name", "assessment_completed", "transition_acknowledged"]),
            (tenant.id, tenant.name, tenant.assessment_completed, tenant.transition_acknowledged),
        )
        return tenant

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def set_assessment_completed(self, tenant_id: str, completed: bool) -> None:
        updated = await execute_query(
            "UPDATE tenants SET assessment_completed = %s WHERE id = %s", (completed, tenant_id)
        )
        if updated == 0:
            raise EntityNotFoundError("tenant", tenant_id)

    async def set_transition_acknowledged(self, tenant_id: str, acknowledged: bool) -> None:
        updated = await execute_query(
            "UPDATE tenants SET transition_acknowledged = %s WHERE id = %s", (acknowledged, tenant_id)
        )
        if updated == 0:
            raise EntityNotFoundError("tenant", tenant_id)

    # Domains ------------------------------------------------------------

    async def get_domain(self, domain_id: str) -> Domain | None:
        row = await fetch_one(f"SELECT {', '.join(DOMAIN_COLUMNS)} FROM domains WHERE id = %s", (domain_id,))
        return _row_to_domain(row) if row else None

    async def list_domains(self, tenant_id: str) -> list[Domain]:
        rows = await fetch_all(
            f"SELECT {', '.join(DOMAIN_COLUMNS)} FROM domains WHERE tenant_id = %s ORDER BY domain",
            (tenant_id,),
        )
        return [_row_to_domain(row) for row in rows]

    async def add_domain(self, domain: Domain) -> Domain:
        stored = replace(domain, version=0)
        await execute_query(
            _insert_sql("domains", DOMAIN_COLUMNS),
            tuple(_db_value(getattr(stored, c)) for c in DOMAIN_COLUMNS),
        )
        return stored

    async def save_domain(self, domain: Domain) -> Domain:
        updated = await execute_query(_cas_update_sql("domains", DOMAIN_COLUMNS), _cas_params(domain, DOMAIN_COLUMNS))
        await self._check_cas(updated, "domains", "domain", domain)
        return replace(domain, version=domain.version + 1)

    # Mailboxes ----------------------------------------------------------

    async def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        row = await fetch_one(f"SELECT {', '.join(MAILBOX_COLUMNS)} FROM mailboxes WHERE id = %s", (mailbox_id,))
        return _row_to_mailbox(row) if row else None

    async def list_mailboxes(self, tenant_id: str, domain_id: str | None = None) -> list[Mailbox]:
        query = f"SELECT {', '.join(MAILBOX_COLUMNS)} FROM mailboxes WHERE tenant_id = %s"
        params: tuple = (tenant_id,)
        if domain_id is not None:
            query += " AND domain_id = %s"
            params = (tenant_id, domain_id)
        rows = await fetch_all(query + " ORDER BY email", params)
        return [_row_to_mailbox(row) for row in rows]

    async def add_mailbox(self, mailbox: Mailbox) -> Mailbox:
        stored = replace(mailbox, version=0)
        await execute_query(
            _insert_sql("mailboxes", MAILBOX_COLUMNS),
            tuple(_db_value(getattr(stored, c)) for c in MAILBOX_COLUMNS),
        )
        return stored

    async def save_mailbox(self, mailbox: Mailbox) -> Mailbox:
        updated = await execute_query(
            _cas_update_sql("mailboxes", MAILBOX_COLUMNS), _cas_params(mailbox, MAILBOX_COLUMNS)
        )
        await self._check_cas(updated, "mailboxes", "mailbox", mailbox)
        return replace(mailbox, version=mailbox.version + 1)

    # Campaigns ----------------------------------------------------------

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        row = await fetch_one(f"SELECT {', '.join(CAMPAIGN_COLUMNS)} FROM campaigns WHERE id = %s", (campaign_id,))
        if not row:
            return None
        memberships = await self._memberships([campaign_id])
        return _row_to_campaign(row, memberships.get(campaign_id, []))

    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        rows = await fetch_all(
            f"SELECT {', '.join(CAMPAIGN_COLUMNS)} FROM campaigns WHERE tenant_id = %s ORDER BY name",
            (tenant_id,),
        )
        memberships = await self._memberships([row["id"] for row in rows])
        return [_row_to_campaign(row, memberships.get(row["id"], [])) for row in rows]

    async def list_campaigns_for_mailbox(self, mailbox_id: str) -> list[Campaign]:
        columns = ", ".join(f"c.{c}" for c in CAMPAIGN_COLUMNS)
        rows = await fetch_all(
            f"""
            SELECT {columns}
            FROM campaigns c
            JOIN campaign_mailboxes cm ON cm.campaign_id = c.id
            WHERE cm.mailbox_id = %s
            ORDER BY c.name
            """,
            (mailbox_id,),
        )
        memberships = await self._memberships([row["id"] for row in rows])
        return [_row_to_campaign(row, memberships.get(row["id"], [])) for row in rows]

    async def add_campaign(self, campaign: Campaign) -> Campaign:
        stored = replace(campaign, version=0)
        async with db_pool.transaction() as conn:
            await execute_query(
                _insert_sql("campaigns", CAMPAIGN_COLUMNS),
                tuple(_db_value(getattr(stored, c)) for c in CAMPAIGN_COLUMNS),
                connection=conn,
            )
            await self._write_memberships(stored, conn)
        return stored

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        async with db_pool.transaction() as conn:
            updated = await execute_query(
                _cas_update_sql("campaigns", CAMPAIGN_COLUMNS),
                _cas_params(campaign, CAMPAIGN_COLUMNS),
                connection=conn,
            )
            if updated == 1:
                await execute_query(
                    "DELETE FROM campaign_mailboxes WHERE campaign_id = %s", (campaign.id,), connection=conn
                )
                await self._write_memberships(campaign, conn)
        await self._check_cas(updated, "campaigns", "campaign", campaign)
        return replace(campaign, version=campaign.version + 1)

    async def _memberships(self, campaign_ids: list[str]) -> dict[str, list[str]]:
        if not campaign_ids:
            return {}
        rows = await fetch_all(
            """
            SELECT campaign_id, mailbox_id
            FROM campaign_mailboxes
            WHERE campaign_id = ANY(%s)
            ORDER BY campaign_id, position
            """,
            (campaign_ids,),
        )
        result: dict[str, list[str]] = {}
        for row in rows:
            result.setdefault(row["campaign_id"], []).append(row["mailbox_id"])
        return result

    @staticmethod
    async def _write_memberships(campaign: Campaign, conn) -> None:
        for position, mailbox_id in enumerate(campaign.mailbox_ids):
            await execute_query(
                "INSERT INTO campaign_mailboxes (campaign_id, mailbox_id, position) VALUES (%s, %s, %s)",
                (campaign.id, mailbox_id, position),
                connection=conn,
            )

    # Append-only records ------------------------------------------------

    async def append_transition(self, transition: StateTransition) -> None:
        await execute_query(
            _insert_sql(
                "state_transitions",
                ["id", "tenant_id", "entity_type", "entity_id", "from_state", "to_state", "reason",
                 "triggered_by", "created_at"],
            ),
            (
                transition.id,
                transition.tenant_id,
                transition.entity_type.value,
                transition.entity_id,
                transition.from_state,
                transition.to_state,
                transition.reason,
                transition.triggered_by.value,
                transition.created_at,
            ),
        )

    async def list_transitions(self, tenant_id: str, entity_id: str | None = None) -> list[StateTransition]:
        query = """
            SELECT id, tenant_id, entity_type, entity_id, from_state, to_state, reason, triggered_by, created_at
            FROM state_transitions
            WHERE tenant_id = %s
        """
        params: tuple = (tenant_id,)
        if entity_id is not None:
            query += " AND entity_id = %s"
            params = (tenant_id, entity_id)
        rows = await fetch_all(query + " ORDER BY created_at", params)
        return [
            StateTransition(
                **{
                    **row,
                    "entity_type": EntityType(row["entity_type"]),
                    "triggered_by": TriggeredBy(row["triggered_by"]),
                }
            )
            for row in rows
        ]

    async def append_audit(self, entry: AuditEntry) -> None:
        await execute_query(
            _insert_sql(
                "audit_logs",
                ["id", "tenant_id", "entity_type", "entity_id", "trigger", "action", "details", "created_at"],
            ),
            (
                entry.id,
                entry.tenant_id,
                entry.entity_type,
                entry.entity_id,
                entry.trigger,
                entry.action,
                Jsonb(entry.details),
                entry.created_at,
            ),
        )

    async def count_audit_entries(
        self,
        tenant_id: str,
        actions: tuple[str, ...],
        since: datetime,
        entity_id: str | None = None,
    ) -> int:
        query = """
            SELECT COUNT(*) FROM audit_logs
            WHERE tenant_id = %s AND action = ANY(%s) AND created_at >= %s
        """
        params: tuple = (tenant_id, list(actions), since)
        if entity_id is not None:
            query += " AND entity_id = %s"
            params = (*params, entity_id)
        return int(await fetch_val(query, params) or 0)

    async def create_report(self, report: InfrastructureReport) -> InfrastructureReport:
        await execute_query(
            _insert_sql(
                "infrastructure_reports",
                ["id", "tenant_id", "report_type", "assessment_version", "overall_score", "summary",
                 "findings", "recommendations", "created_at"],
            ),
            (
                report.id,
                report.tenant_id,
                report.report_type.value,
                report.assessment_version,
                report.overall_score,
                Jsonb(asdict(report.summary)),
                Jsonb([{k: _plain(v) for k, v in asdict(f).items()} for f in report.findings]),
                Jsonb([asdict(r) for r in report.recommendations]),
                report.created_at,
            ),
        )
        logger.info("Infrastructure report stored", tenant_id=report.tenant_id, report_id=report.id)
        return report

    async def get_latest_report(self, tenant_id: str) -> InfrastructureReport | None:
        reports = await self.list_reports(tenant_id, limit=1)
        return reports[0] if reports else None

    async def list_reports(self, tenant_id: str, limit: int = 10) -> list[InfrastructureReport]:
        rows = await fetch_all(
            """
            SELECT id, tenant_id, report_type, assessment_version, overall_score,
                   summary, findings, recommendations, created_at
            FROM infrastructure_reports
            WHERE tenant_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (tenant_id, limit),
        )
        return [_row_to_report(row) for row in rows]

    # Assessment lock ----------------------------------------------------

    @asynccontextmanager
    async def tenant_assessment_lock(self, tenant_id: str) -> AsyncIterator[None]:
        # session-level advisory lock, so it stays on this connection for the whole run
        key = _assessment_lock_key(tenant_id)
        async with db_pool.connection() as conn:
            await conn.execute("SELECT pg_advisory_lock(hashtext(%s))", (key,))
            logger.debug("Assessment lock acquired", tenant_id=tenant_id)
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))

    async def assessment_locked(self, tenant_id: str) -> bool:
        key = _assessment_lock_key(tenant_id)
        async with db_pool.connection() as conn:
            acquired = await fetch_val("SELECT pg_try_advisory_lock(hashtext(%s))", (key,), connection=conn)
            if acquired:
                await conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
        return not acquired

    # Internals ----------------------------------------------------------

    @staticmethod
    async def _check_cas(updated: int, table: str, entity_type: str, entity) -> None:
        if updated == 1:
            return
        exists = await fetch_val(f"SELECT 1 FROM {table} WHERE id = %s", (entity.id,))
        if not exists:
            raise EntityNotFoundError(entity_type, entity.id)
        raise StaleEntityError(entity_type, entity.id, entity.version)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
