import argparse
import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pharmaqa.constants import PERM_REVIEWS_DECIDE, PERM_REVIEWS_VIEW  # noqa: E402
from app.pharmaqa.models import Base, Permission, Role, User  # noqa: E402
from app.pharmaqa.modules.compliance_review.models import (  # noqa: E402
    MasterStandard,
    Order,
    Product,
    VendorDocument,
)


@contextmanager
def _session_scope(database_url: str, *, create_tables: bool = False):
    engine = create_engine(database_url, future=True)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def _seed_demo_evidence(s: Session) -> None:
    """Sample product/order/standard/documents for a local walkthrough. Idempotent."""
    if s.get(Product, "P1"):
        return
    s.add(Product(id="P1", name="Atenolol", strength="50mg"))
    s.flush()
    s.add(
        Order(
            id="O1",
            product_id="P1",
            order_number="PO-2024-001",
            quantity=500,
            batch_number="B-998-X",
            packaging_requirement="Sealed Cartons",
            min_purity_pct=99.0,
        )
    )
    s.add(
        MasterStandard(
            id="MS1",
            product_id="P1",
            doc_type="Quality Certificate",
            status="APPROVED",
            title="Atenolol Quality Spec Sheet v2.1",
            requirement="Purity > 99.0%",
            min_purity_pct=99.0,
        )
    )
    s.add_all(
        [
            VendorDocument(
                id="D1",
                order_id="O1",
                product_id="P1",
                vendor_id="V1",
                doc_type="Quality Certificate",
                file_name="coa-b998x.pdf",
                file_path="vendor-docs/V1/coa-b998x.pdf",
                priority="HIGH",
                ai_quality_score=96,
                extracted_json='{"batch_number": "B-998-X", "purity_pct": "99.8%"}',
            ),
            VendorDocument(
                id="D3",
                order_id="O1",
                product_id="P1",
                vendor_id="V1",
                doc_type="Packing List",
                file_name="packing-b998x.pdf",
                file_path="vendor-docs/V1/packing-b998x.pdf",
                priority="MEDIUM",
                ai_quality_score=78,
                ai_flag="Carton count partially illegible on page 2",
                extracted_json='{"quantity": "500 Units", "packaging": "Sealed Cartons"}',
            ),
        ]
    )


def seed_only(*, database_url: str | None = None, create_tables: bool = False, demo: bool = False) -> None:
    """
    Seed permissions/roles/reviewer user in an idempotent way.
    Does NOT overwrite an existing reviewer's password.
    """
    reviewer_email = (os.environ.get("REVIEWER_EMAIL") or "qa@pharmaqa.local").strip().lower()
    reviewer_password = os.environ.get("REVIEWER_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pharmaqa.db").strip()

    with _session_scope(db_url, create_tables=create_tables) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        p_view = ensure_perm(PERM_REVIEWS_VIEW, "Reviews: view queue and evidence")
        p_decide = ensure_perm(PERM_REVIEWS_DECIDE, "Reviews: approve/reject (e-signature)")

        role = s.query(Role).filter(Role.key == "qa_reviewer").one_or_none()
        if not role:
            role = Role(key="qa_reviewer", name="QA Reviewer")
            s.add(role)
        for p in (p_view, p_decide):
            if p not in role.permissions:
                role.permissions.append(p)

        user = s.query(User).filter(User.email == reviewer_email).one_or_none()
        if not user:
            user = User(email=reviewer_email, password_hash=generate_password_hash(reviewer_password), is_active=True)
            s.add(user)
        if role not in user.roles:
            user.roles.append(role)

        if demo:
            _seed_demo_evidence(s)

    print("Initialized database (seed_only).")
    print(f"Reviewer email: {reviewer_email}")
    print("Reviewer password: (from REVIEWER_PASSWORD)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed reviewer permissions and account.")
    parser.add_argument("--create-tables", action="store_true", help="create tables directly (local dev, no alembic)")
    parser.add_argument("--demo", action="store_true", help="also load sample evidence records")
    args = parser.parse_args()
    seed_only(database_url=None, create_tables=args.create_tables, demo=args.demo)


if __name__ == "__main__":
    main()
