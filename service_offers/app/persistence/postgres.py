"""
PostgreSQL persistence layer for the Offers Service.
"""

from typing import Any, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import ConfigurationConflict, ServiceError
from ..rules.models import Coupon, Organization, RecordModel, RuleSnapshot, normalize_coupon_code, utcnow
from ..rules.repository import RECORD_TYPES, RecordKind, Redemption, RedemptionOutcome, RuleRepository, record_key


class PostgresRuleRepository(RuleRepository):
    """Rule records as validated JSONB payloads; coupon counters as real columns."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("offers.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError(f"PostgreSQL unavailable: {e}", {"component": "postgres"})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS organizations (
                    id VARCHAR(255) PRIMARY KEY,
                    payload JSONB NOT NULL,
                    generation BIGINT NOT NULL DEFAULT 0
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS offer_records (
                    organization_id VARCHAR(255) NOT NULL REFERENCES organizations(id),
                    kind VARCHAR(50) NOT NULL,
                    record_key VARCHAR(255) NOT NULL,
                    payload JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (organization_id, kind, record_key)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS coupons (
                    id VARCHAR(255) PRIMARY KEY,
                    organization_id VARCHAR(255) NOT NULL REFERENCES organizations(id),
                    code VARCHAR(100) NOT NULL,
                    payload JSONB NOT NULL,
                    used_count INTEGER NOT NULL DEFAULT 0,
                    usage_limit INTEGER,
                    UNIQUE (organization_id, code)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS coupon_redemptions (
                    coupon_id VARCHAR(255) NOT NULL REFERENCES coupons(id),
                    order_id VARCHAR(255) NOT NULL,
                    redeemed_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (coupon_id, order_id)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_offer_records_kind ON offer_records(organization_id, kind);
            """)

    @staticmethod
    def _row_to_coupon(row) -> Coupon:
        coupon = Coupon.model_validate_json(row["payload"])
        return coupon.model_copy(update={"used_count": row["used_count"]})

    @staticmethod
    def _row_to_record(kind: RecordKind, row) -> Any:
        model = RECORD_TYPES[kind][0]
        return model.model_validate_json(row["payload"])

    async def _bump(self, conn, organization_id: str) -> None:
        await conn.execute("UPDATE organizations SET generation = generation + 1 WHERE id = $1", organization_id)

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT payload FROM organizations WHERE id = $1", organization_id)
        return Organization.model_validate_json(row["payload"]) if row else None

    async def save_organization(self, organization: Organization) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO organizations (id, payload) VALUES ($1, $2::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    generation = organizations.generation + 1
            """, organization.id, organization.model_dump_json(by_alias=True))
        self.logger.info("Organization saved", organization_id=organization.id)

    async def list_records(self, organization_id: str, kind: RecordKind) -> List[Any]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT payload FROM offer_records
                WHERE organization_id = $1 AND kind = $2
                ORDER BY record_key
            """, organization_id, kind.value)
        return [self._row_to_record(kind, row) for row in rows]

    async def put_record(self, organization_id: str, kind: RecordKind, record: RecordModel) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO offer_records (organization_id, kind, record_key, payload)
                    VALUES ($1, $2, $3, $4::jsonb)
                    ON CONFLICT (organization_id, kind, record_key) DO UPDATE SET
                        payload = EXCLUDED.payload,
                        updated_at = NOW()
                """, organization_id, kind.value, record_key(kind, record), record.model_dump_json(by_alias=True))
                await self._bump(conn, organization_id)
        self.logger.info("Record saved", organization_id=organization_id, kind=kind.value,
                         record_key=record_key(kind, record))

    async def list_coupons(self, organization_id: str) -> List[Coupon]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT payload, used_count FROM coupons WHERE organization_id = $1 ORDER BY code
            """, organization_id)
        return [self._row_to_coupon(row) for row in rows]

    async def insert_coupon(self, coupon: Coupon) -> None:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("""
                        INSERT INTO coupons (id, organization_id, code, payload, used_count, usage_limit)
                        VALUES ($1, $2, $3, $4::jsonb, $5, $6)
                    """, coupon.id, coupon.organization_id, coupon.code,
                        coupon.model_dump_json(by_alias=True), coupon.used_count, coupon.usage_limit)
                    await self._bump(conn, coupon.organization_id)
        except asyncpg.UniqueViolationError:
            raise ConfigurationConflict("DUPLICATE_COUPON_CODE", f'Coupon "{coupon.code}" already exists',
                                        {"code": coupon.code})

    async def get_coupon(self, organization_id: str, code: str) -> Optional[Coupon]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT payload, used_count FROM coupons WHERE organization_id = $1 AND code = $2
            """, organization_id, normalize_coupon_code(code))
        return self._row_to_coupon(row) if row else None

    async def has_redemption(self, coupon_id: str, order_id: str) -> bool:
        async with self.pool.acquire() as conn:
            found = await conn.fetchval("""
                SELECT 1 FROM coupon_redemptions WHERE coupon_id = $1 AND order_id = $2
            """, coupon_id, order_id)
        return found is not None

    async def redeem_coupon(self, coupon_id: str, order_id: str) -> Redemption:
        async with self.pool.acquire() as conn:
            transaction = conn.transaction()
            await transaction.start()
            try:
                inserted = await conn.fetchval("""
                    INSERT INTO coupon_redemptions (coupon_id, order_id) VALUES ($1, $2)
                    ON CONFLICT DO NOTHING
                    RETURNING coupon_id
                """, coupon_id, order_id)
                if inserted is None:
                    await transaction.rollback()
                    return Redemption(RedemptionOutcome.ALREADY_COMMITTED)

                # Only the usage limit can refuse the increment
                updated = await conn.fetchrow("""
                    UPDATE coupons SET used_count = used_count + 1
                    WHERE id = $1 AND (usage_limit IS NULL OR used_count < usage_limit)
                    RETURNING organization_id, used_count
                """, coupon_id)
                if updated is None:
                    await transaction.rollback()
                    return Redemption(RedemptionOutcome.EXHAUSTED)

                await self._bump(conn, updated["organization_id"])
                await transaction.commit()
                return Redemption(RedemptionOutcome.COMMITTED, updated["used_count"])
            except BaseException:
                await transaction.rollback()
                raise

    async def generation(self, organization_id: str) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval("SELECT generation FROM organizations WHERE id = $1", organization_id)
        return value or 0

    async def load_snapshot(self, organization_id: str) -> RuleSnapshot:
        """Read the organization in one repeatable-read transaction."""
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    org_row = await conn.fetchrow(
                        "SELECT payload, generation FROM organizations WHERE id = $1", organization_id
                    )
                    record_rows = await conn.fetch("""
                        SELECT kind, payload FROM offer_records
                        WHERE organization_id = $1 ORDER BY kind, record_key
                    """, organization_id)
                    coupon_rows = await conn.fetch("""
                        SELECT payload, used_count FROM coupons WHERE organization_id = $1 ORDER BY code
                    """, organization_id)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Error loading snapshot", organization_id=organization_id, error=str(e))
            raise ServiceError(f"Rule snapshot unavailable: {e}", {"organizationId": organization_id})

        fields = {field_name: [] for _, field_name, _ in RECORD_TYPES.values()}
        for row in record_rows:
            kind = RecordKind(row["kind"])
            fields[RECORD_TYPES[kind][1]].append(self._row_to_record(kind, row))

        return RuleSnapshot(
            organization=Organization.model_validate_json(org_row["payload"]) if org_row else None,
            organization_id=organization_id,
            generation=org_row["generation"] if org_row else 0,
            loaded_at=utcnow(),
            coupons=[self._row_to_coupon(row) for row in coupon_rows],
            **fields,
        )

    async def health_check(self) -> bool:
        """Check PostgreSQL health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False
