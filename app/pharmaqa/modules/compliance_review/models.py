from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.pharmaqa.constants import DEFAULT_PRIORITY, STATUS_PENDING_REVIEW
from app.pharmaqa.models import Base


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    strength: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "50mg"


class Order(Base):
    """Purchase order reference data. Read-only to the review workflow."""

    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    packaging_requirement: Mapped[str | None] = mapped_column(String(255), nullable=True)  # e.g. "Sealed Cartons"
    min_purity_pct: Mapped[float | None] = mapped_column(Float, nullable=True)


class MasterStandard(Base):
    """
    Master SOP for a (product, doc type) pair.
    Only rows with status APPROVED are authoritative.
    """

    __tablename__ = "master_standards"
    __table_args__ = (
        Index("idx_master_standards_product_type", "product_id", "doc_type"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT")

    title: Mapped[str] = mapped_column(String(255), nullable=False)  # e.g. "Atenolol Quality Spec Sheet v2.1"
    requirement: Mapped[str] = mapped_column(String(512), nullable=False, default="")  # e.g. "Purity > 99.0%"
    packaging: Mapped[str | None] = mapped_column(String(255), nullable=True)
    min_purity_pct: Mapped[float | None] = mapped_column(Float, nullable=True)

    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class VendorDocument(Base):
    """
    A vendor-submitted compliance document awaiting QA sign-off.

    Created by the upload collaborator in PENDING_REVIEW and moved exactly once
    to APPROVED or REJECTED by the review workflow. Never deleted.
    """

    __tablename__ = "vendor_documents"
    __table_args__ = (
        Index("idx_vendor_documents_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "Packing List", "Quality Certificate"
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)  # storage key

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING_REVIEW)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_PRIORITY)

    # Extraction collaborator output (read-only here)
    ai_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_flag: Mapped[str | None] = mapped_column(String(512), nullable=True)
    extracted_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Set once by the decision commit
    blockchain_tx: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signature_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def extracted(self) -> dict[str, Any]:
        if not self.extracted_json:
            return {}
        try:
            value = json.loads(self.extracted_json)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class LedgerAnchor(Base):
    """Append-only hash chain backing the local ledger."""

    __tablename__ = "ledger_anchors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    previous_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
