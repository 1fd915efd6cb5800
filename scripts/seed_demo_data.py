"""
Seed the local database with a demo organization, its collectors, a reporter
and a couple of pending collections, then print bearer tokens for each actor.

Usage:
  python scripts/seed_demo_data.py

Idempotent: records are upserted on the organization slug and user emails.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables before the settings object is built
from dotenv import load_dotenv
load_dotenv()

from collectdispatch.db import Base, engine, session_scope
from collectdispatch.models.models import Organization, User, Collection
from collectdispatch.auth.security import create_access_token
from collectdispatch.services.time_rules import utcnow


def ensure_organization(session, slug: str, name: str, **kwargs) -> Organization:
    org = session.query(Organization).filter(Organization.slug == slug).first()
    if org is None:
        org = Organization(slug=slug, name=name, webhooks=[])
        session.add(org)
    for k, v in kwargs.items():
        setattr(org, k, v)
    session.flush()
    return org


def ensure_user(session, email: str, name: str, role: str, organization_id=None, **kwargs) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email, name=name, role=role, is_active=True, active_mission_count=0)
        session.add(user)
    user.role = role
    user.organization_id = organization_id
    for k, v in kwargs.items():
        setattr(user, k, v)
    session.flush()
    return user


def ensure_collection(session, organization: Organization, reporter: User, address: str, lng: float, lat: float, **kwargs) -> Collection:
    row = (
        session.query(Collection)
        .filter(Collection.organization_id == organization.id, Collection.address == address)
        .first()
    )
    if row is None:
        row = Collection(
            organization_id=organization.id,
            reporter_id=reporter.id,
            address=address,
            lng=lng,
            lat=lat,
            status="pending",
            waste_type=kwargs.pop("waste_type", "household"),
        )
        session.add(row)
    for k, v in kwargs.items():
        setattr(row, k, v)
    session.flush()
    return row


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    if engine.url.drivername.startswith("sqlite"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    with session_scope() as session:
        now = utcnow()
        org = ensure_organization(
            session,
            slug="demo-waste",
            name="Demo Waste Services",
            auto_assign_enabled=True,
            auto_assign_radius_m=10000,
            max_active_missions=5,
        )
        admin = ensure_user(session, "admin@demo-waste.example", "Olga Admin", "org_admin", org.id)
        collectors = [
            ensure_user(
                session,
                f"collector{i}@demo-waste.example",
                f"Collector {i}",
                "collector",
                org.id,
                on_duty=True,
                last_lng=lng,
                last_lat=lat,
                last_seen_at=now,
            )
            for i, (lng, lat) in enumerate([(-79.3832, 43.6532), (-79.4000, 43.6600), (-79.3500, 43.6400)], start=1)
        ]
        reporter = ensure_user(session, "reporter@demo-waste.example", "Rita Reporter", "reporter")

        ensure_collection(session, org, reporter, "12 King St W", -79.3790, 43.6487, urgency="high", estimated_weight_kg=20)
        ensure_collection(session, org, reporter, "300 Queen St E", -79.3650, 43.6540, urgency="medium", estimated_weight_kg=45)

        print(f"Organization {org.name}: {org.id}")
        print(f"org_admin  {admin.email}: {create_access_token(admin.id, admin.role, org.id)}")
        for c in collectors:
            print(f"collector  {c.email}: {create_access_token(c.id, c.role, org.id)}")
        print(f"reporter   {reporter.email}: {create_access_token(reporter.id, reporter.role)}")


if __name__ == "__main__":
    main()
