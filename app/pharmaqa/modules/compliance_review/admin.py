from __future__ import annotations

import json
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import select

from app.pharmaqa.constants import ENTITY_DOCUMENT, PERM_REVIEWS_DECIDE, PERM_REVIEWS_VIEW, normalize_priority
from app.pharmaqa.db import db_session
from app.pharmaqa.models import AuditEvent
from app.pharmaqa.modules.compliance_review.errors import DocumentNotFound, ReviewError
from app.pharmaqa.modules.compliance_review.evidence import EvidenceStore
from app.pharmaqa.modules.compliance_review.matching import compute_match_summary, select_master_standard
from app.pharmaqa.modules.compliance_review.models import MasterStandard, VendorDocument
from app.pharmaqa.modules.compliance_review.workflow import build_state_machine, document_locks, progress_board
from app.pharmaqa.rbac import current_reviewer, require_permission

bp = Blueprint("compliance_review", __name__)


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _document_json(d: VendorDocument) -> dict[str, Any]:
    return {
        "id": d.id,
        "orderId": d.order_id,
        "productId": d.product_id,
        "vendorId": d.vendor_id,
        "docType": d.doc_type,
        "fileName": d.file_name,
        "filePath": d.file_path,
        "status": d.status,
        "priority": normalize_priority(d.priority),
        "aiInsights": {"qualityScore": d.ai_quality_score, "flag": d.ai_flag},
        "createdAt": d.created_at.isoformat() if d.created_at else None,
        "blockchainTx": d.blockchain_tx,
        "reviewedBy": d.reviewed_by,
        "reviewedAt": d.reviewed_at.isoformat() if d.reviewed_at else None,
        "reviewComments": d.review_comments,
    }


def _standard_json(m: MasterStandard) -> dict[str, Any]:
    return {
        "id": m.id,
        "title": m.title,
        "status": m.status,
        "requirement": m.requirement,
        "fileName": m.file_name,
        "filePath": m.file_path,
    }


def _audit_json(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "action": ev.action,
        "entityType": ev.entity_type,
        "entityId": ev.entity_id,
        "actorIdentity": ev.actor_identity,
        "details": ev.details,
        "reason": ev.reason,
        "changes": json.loads(ev.changes_json) if ev.changes_json else {},
        "timestamp": ev.created_at.isoformat(),
        "requestId": ev.request_id,
    }


@bp.errorhandler(ReviewError)
def _review_error(e: ReviewError):
    current_app.logger.info(
        "Review decision failed code=%s doc=%s request_id=%s: %s",
        e.code,
        e.document_id,
        getattr(g, "request_id", None),
        e.message,
    )
    return jsonify(e.to_dict()), e.http_status


@bp.get("/queue")
@require_permission(PERM_REVIEWS_VIEW)
def review_queue():
    store = EvidenceStore(db_session())
    docs = store.list_pending_documents()
    return jsonify(
        {
            "counts": store.pending_counts_by_priority(),
            "documents": [_document_json(d) for d in docs],
        }
    )


@bp.get("/<doc_id>")
@require_permission(PERM_REVIEWS_VIEW)
def document_detail(doc_id: str):
    store = EvidenceStore(db_session())
    d = store.get_document_by_id(doc_id)
    if d is None:
        raise DocumentNotFound(f"Document {doc_id} not found.", document_id=doc_id)
    order = store.get_order_by_id(d.order_id)
    product = store.get_product_by_id(d.product_id)
    standard, warnings = select_master_standard(store.list_master_standards_for(d.product_id), d.product_id, d.doc_type)
    summary = compute_match_summary(d, order, standard, warnings=warnings)
    return jsonify(
        {
            "document": _document_json(d),
            "order": {"id": order.id, "orderNumber": order.order_number} if order else None,
            "product": {"id": product.id, "name": product.name, "strength": product.strength} if product else None,
            "masterStandard": _standard_json(standard) if standard else None,
            "matchSummary": summary.to_dict(),
        }
    )


@bp.post("/<doc_id>/approve")
@require_permission(PERM_REVIEWS_DECIDE)
def approve(doc_id: str):
    u = current_reviewer()
    data = _payload()
    machine = build_state_machine(current_app, db_session())
    result = machine.submit_approval(
        doc_id,
        u.email,
        str(data.get("credential") or ""),
        data.get("comments"),
    )
    return jsonify(result.to_dict())


@bp.post("/<doc_id>/reject")
@require_permission(PERM_REVIEWS_DECIDE)
def reject(doc_id: str):
    u = current_reviewer()
    data = _payload()
    machine = build_state_machine(current_app, db_session())
    result = machine.submit_rejection(doc_id, u.email, data.get("comments"))
    return jsonify(result.to_dict())


@bp.get("/<doc_id>/progress")
@require_permission(PERM_REVIEWS_VIEW)
def decision_progress(doc_id: str):
    stage = progress_board.current(doc_id)
    return jsonify({"documentId": doc_id, "inProgress": document_locks.is_held(doc_id), "stage": stage})


@bp.get("/<doc_id>/audit")
@require_permission(PERM_REVIEWS_VIEW)
def audit_trail(doc_id: str):
    s = db_session()
    events = s.scalars(
        select(AuditEvent)
        .where(AuditEvent.entity_type == ENTITY_DOCUMENT, AuditEvent.entity_id == doc_id)
        .order_by(AuditEvent.id.asc())
    ).all()
    return jsonify({"documentId": doc_id, "events": [_audit_json(ev) for ev in events]})
