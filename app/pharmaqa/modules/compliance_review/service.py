from __future__ import annotations

import hashlib
import json
from datetime import datetime

from app.pharmaqa.modules.compliance_review.models import VendorDocument
from app.pharmaqa.storage import Storage


def normalize_comments(comments: str | None) -> str:
    return (comments or "").strip()


def canonical_reference(doc: VendorDocument) -> bytes:
    """
    Stable byte form of the document's identity fields.
    Key order and separators are fixed so the same record always hashes the same.
    """
    created = doc.created_at.isoformat() if isinstance(doc.created_at, datetime) else None
    payload = {
        "id": doc.id,
        "order_id": doc.order_id,
        "product_id": doc.product_id,
        "vendor_id": doc.vendor_id,
        "doc_type": doc.doc_type,
        "file_name": doc.file_name,
        "file_path": doc.file_path,
        "created_at": created,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def file_digest(file_bytes: bytes) -> str:
    return hashlib.sha256(file_bytes).hexdigest()


def compute_fingerprint(doc: VendorDocument, storage: Storage | None = None) -> str:
    """
    SHA-256 over the canonical reference followed by the stored blob (when one exists).

    Binding the reference means two documents with identical scans still get distinct
    fingerprints; binding the blob means a re-uploaded scan changes the fingerprint.
    """
    h = hashlib.sha256()
    h.update(canonical_reference(doc))
    if storage is not None and doc.file_path:
        blob = storage.read_bytes(doc.file_path)
        if blob is not None:
            h.update(b"\n")
            h.update(file_digest(blob).encode("ascii"))
    return h.hexdigest()
