"""
Mark accepted partner requests whose relationship has ended as 'superseded'.

Breakups now supersede the originating request in the same transaction.
Requests accepted before that change stay 'accepted' forever; this one-off
backfill finds every accepted request with no active partnership for its
pair and moves it to 'superseded'.

Usage:
    python -m scripts.supersede_stale_requests [--dry-run]

Options:
    --dry-run : Preview what will change without writing
"""
import asyncio
import sys
import argparse
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.db.models import Partner, PartnerRequest
from bondmate.db.models.partner import PARTNER_ACTIVE, REQUEST_ACCEPTED, REQUEST_SUPERSEDED
from bondmate.services.store import utcnow


async def find_stale_requests(db: AsyncSession) -> list[PartnerRequest]:
    active_pairs = select(Partner.pair_key).where(Partner.status == PARTNER_ACTIVE)
    result = await db.execute(
        select(PartnerRequest)
        .where(
            PartnerRequest.status == REQUEST_ACCEPTED,
            PartnerRequest.pair_key.not_in(active_pairs),
        )
        .order_by(PartnerRequest.created_at)
    )
    return list(result.scalars().all())


async def supersede_stale_requests(db: AsyncSession, dry_run: bool = False) -> int:
    stale = await find_stale_requests(db)
    if not stale:
        print("✅ No stale accepted requests found")
        return 0

    print(f"📊 Found {len(stale):,} accepted requests without an active partnership\n")
    for request in stale:
        print(f"  {request.id}  {request.from_user_id} -> {request.to_user_id}  created {request.created_at}")

    if dry_run:
        print("\n🔍 DRY RUN - nothing written")
        return len(stale)

    await db.execute(
        update(PartnerRequest)
        .where(PartnerRequest.id.in_([r.id for r in stale]))
        .values(status=REQUEST_SUPERSEDED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    print(f"\n✅ Marked {len(stale):,} requests as superseded")
    return len(stale)


async def main(dry_run: bool):
    from bondmate.db.session import SessionLocal

    print(f"Mode: {'DRY RUN' if dry_run else 'LIVE UPDATE'}\n")
    async with SessionLocal() as db:
        await supersede_stale_requests(db, dry_run=dry_run)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Supersede accepted requests of ended relationships")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing")
    args = parser.parse_args()
    asyncio.run(main(args.dry_run))
