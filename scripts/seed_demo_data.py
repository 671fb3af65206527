from sqlalchemy import select

from src.application.compliance_service import ComplianceService
from src.application.request_service import RequestService
from src.domain.actors import Actor
from src.domain.state_machine import ActorRole
from src.infrastructure.db.models import Base, Listing, ServiceRequest
from src.infrastructure.db.session import SessionLocal, engine


SEED_ADMIN = Actor(actor_id="seed-admin", role=ActorRole.ADMIN)

VENDOR_DEFS = [
    {
        "vendor_id": "vendor-alpine-hall",
        "listings": [
            {
                "category": "venue",
                "title": "Alpine Hall, Main Room",
                "base_price_cents": 250000,
                "description": "Hall for up to 180 guests with stage and dance floor.",
            },
        ],
    },
    {
        "vendor_id": "vendor-golden-fork",
        "listings": [
            {
                "category": "catering",
                "title": "Golden Fork Buffet",
                "base_price_cents": 4500,
                "description": "Per-guest buffet with three courses.",
            },
        ],
    },
    {
        "vendor_id": "vendor-night-owls",
        "listings": [
            {
                "category": "dj",
                "title": "Night Owls DJ Set",
                "base_price_cents": 90000,
                "description": "Six hour DJ set including sound system and lights.",
            },
        ],
    },
]

DEMO_CUSTOMER = Actor(
    actor_id="customer-demo",
    role=ActorRole.CUSTOMER,
    email="demo.customer@example.org",
)


def seed_vendors(db) -> None:
    compliance = ComplianceService(db)
    for vendor in VENDOR_DEFS:
        vendor_id = vendor["vendor_id"]
        compliance.record_admin_approval(vendor_id, SEED_ADMIN)
        compliance.record_contract_acceptance(vendor_id, SEED_ADMIN, contract_version="2024-01")
        compliance.record_training_completion(vendor_id, SEED_ADMIN)
        compliance.apply_payout_account_status(
            vendor_id,
            charges_enabled=True,
            payouts_enabled=True,
            pending_requirements=[],
        )

        for item in vendor["listings"]:
            existing = db.execute(
                select(Listing)
                .where(Listing.vendor_id == vendor_id)
                .where(Listing.title == item["title"])
            ).scalar_one_or_none()
            if existing:
                existing.category = item["category"]
                existing.base_price_cents = item["base_price_cents"]
                existing.description = item["description"]
                existing.is_published = True
                continue

            db.add(
                Listing(
                    vendor_id=vendor_id,
                    category=item["category"],
                    title=item["title"],
                    base_price_cents=item["base_price_cents"],
                    description=item["description"],
                    is_published=True,
                )
            )


def seed_request(db) -> None:
    existing = db.execute(
        select(ServiceRequest).where(ServiceRequest.customer_email == DEMO_CUSTOMER.email)
    ).scalars().first()
    if existing:
        return

    RequestService(db).create_request(
        customer=DEMO_CUSTOMER,
        categories=["catering", "dj"],
        budget_cents=500000,
        response_hours=72,
    )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_vendors(db)
        db.flush()
        seed_request(db)
        db.commit()
        print("Seed complete: 3 compliant vendors with published listings and one open request added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
