from __future__ import annotations

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.pharmaqa.constants import (
    PRIORITIES,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    STATUS_PENDING_REVIEW,
    normalize_priority,
)
from app.pharmaqa.modules.compliance_review.models import MasterStandard, Order, Product, VendorDocument

_PRIORITY_RANK = case(
    (VendorDocument.priority == PRIORITY_HIGH, 0),
    (VendorDocument.priority == PRIORITY_MEDIUM, 1),
    (VendorDocument.priority == PRIORITY_LOW, 2),
    else_=1,
)


class EvidenceStore:
    """
    Read-only query surface over documents, orders, products and master standards.
    Lookups return the record or None; nothing here writes.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_document_by_id(self, document_id: str) -> VendorDocument | None:
        if not document_id:
            return None
        return self.session.get(VendorDocument, document_id)

    def get_order_by_id(self, order_id: str) -> Order | None:
        if not order_id:
            return None
        return self.session.get(Order, order_id)

    def get_product_by_id(self, product_id: str) -> Product | None:
        if not product_id:
            return None
        return self.session.get(Product, product_id)

    def list_master_standards(self) -> list[MasterStandard]:
        stmt = select(MasterStandard).order_by(MasterStandard.product_id, MasterStandard.doc_type, MasterStandard.created_at)
        return list(self.session.scalars(stmt))

    def list_master_standards_for(self, product_id: str) -> list[MasterStandard]:
        stmt = select(MasterStandard).where(MasterStandard.product_id == product_id)
        return list(self.session.scalars(stmt))

    def list_pending_documents(self) -> list[VendorDocument]:
        """Review queue: HIGH before MEDIUM before LOW, oldest first within a priority."""
        stmt = (
            select(VendorDocument)
            .where(VendorDocument.status == STATUS_PENDING_REVIEW)
            .order_by(_PRIORITY_RANK, VendorDocument.created_at.asc(), VendorDocument.id.asc())
        )
        return list(self.session.scalars(stmt))

    def pending_counts_by_priority(self) -> dict[str, int]:
        counts = {p: 0 for p in PRIORITIES}
        stmt = (
            select(VendorDocument.priority, func.count(VendorDocument.id))
            .where(VendorDocument.status == STATUS_PENDING_REVIEW)
            .group_by(VendorDocument.priority)
        )
        for priority, n in self.session.execute(stmt):
            counts[normalize_priority(priority)] += int(n)
        counts["TOTAL"] = sum(counts[p] for p in PRIORITIES)
        return counts
