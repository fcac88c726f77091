from __future__ import annotations

import asyncio
import sys

from tenantguard.core.logging import configure_logging
from tenantguard.domain.context import ROLE_OWNER, ROLE_VIEWER, TenantContext
from tenantguard.persistence.adapters.sql import SqlAlchemyDataAccess
from tenantguard.persistence.db import dispose_engine, get_session
from tenantguard.services.isolation import ScopedClient
from tenantguard.services.plans import TIER_STARTER


# Fixed IDs keep the seed idempotent and easy to reference from curl examples.
DEMO_TENANT_ID = "tn_0123456789abcdef0123456789abcdef"
DEMO_TENANT_NAME = "Demo Tenant"
DEMO_OWNER_ID = "user_demo_owner"
DEMO_VIEWER_ID = "user_demo_viewer"
DEMO_COMPANY_ID = "cdemo0company0seed0000001"


async def seed_demo() -> int:
    async with get_session() as session:
        db = SqlAlchemyDataAccess(session)
        if await db.find_one("tenants", where={"id": DEMO_TENANT_ID}) is not None:
            print("Demo tenant already seeded; skipping.")
            return 0
        await db.create("tenants", {"id": DEMO_TENANT_ID, "name": DEMO_TENANT_NAME, "is_active": True})

        context = TenantContext(
            tenant_id=DEMO_TENANT_ID,
            user_id="system:seed",
            request_id="seed-demo",
            correlation_id="seed-demo",
            is_service_account=True,
        )
        scoped = ScopedClient(db, context)
        async with scoped.transaction() as tx:
            await tx.create_many(
                "tenant_memberships",
                [
                    {"id": f"mem_{DEMO_OWNER_ID}", "user_id": DEMO_OWNER_ID, "role": ROLE_OWNER},
                    {"id": f"mem_{DEMO_VIEWER_ID}", "user_id": DEMO_VIEWER_ID, "role": ROLE_VIEWER},
                ],
            )
            await tx.create("subscriptions", {"id": "sub_demo", "plan_tier": TIER_STARTER, "status": "active"})
            await tx.create("companies", {"id": DEMO_COMPANY_ID, "name": "Demo Company"})
    print(f"Seeded demo tenant {DEMO_TENANT_ID} on {TIER_STARTER}.")
    return 0


async def _run() -> int:
    try:
        return await seed_demo()
    finally:
        await dispose_engine()


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
