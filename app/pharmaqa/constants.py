"""
Central constants for the compliance review service.
"""
from __future__ import annotations

# Vendor document lifecycle: PENDING_REVIEW -> APPROVED | REJECTED (both terminal)
STATUS_PENDING_REVIEW = "PENDING_REVIEW"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"

# Master standards are only authoritative once approved
STANDARD_STATUS_APPROVED = "APPROVED"

PRIORITY_HIGH = "HIGH"
PRIORITY_MEDIUM = "MEDIUM"
PRIORITY_LOW = "LOW"
PRIORITIES = (PRIORITY_HIGH, PRIORITY_MEDIUM, PRIORITY_LOW)
DEFAULT_PRIORITY = PRIORITY_MEDIUM

# AI confidence buckets (quality score 0-100)
RISK_LOW = "LOW_RISK"
RISK_MEDIUM = "MEDIUM_RISK"
RISK_HIGH = "HIGH_RISK"
LOW_RISK_MIN_SCORE = 90
MEDIUM_RISK_MIN_SCORE = 70

# Audit vocabulary
ENTITY_DOCUMENT = "DOCUMENT"
ACTION_DOCUMENT_APPROVED = "DOCUMENT_APPROVED"
ACTION_DOCUMENT_REJECTED = "DOCUMENT_REJECTED"

# Permission keys
PERM_REVIEWS_VIEW = "reviews.view"
PERM_REVIEWS_DECIDE = "reviews.decide"


def normalize_priority(value: str | None) -> str:
    p = (value or "").strip().upper()
    return p if p in PRIORITIES else DEFAULT_PRIORITY
