"""
Three-way match engine.

Compares a vendor document's extracted evidence against:
  1. the purchase order (Order-vs-Evidence)
  2. the APPROVED master standard for (product, doc type) (Standard-vs-Evidence)
  3. the extraction collaborator's own confidence (AI-Confidence)

Pure functions only: no session, no storage, no clock. The same inputs always
produce the same MatchSummary.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.pharmaqa.constants import (
    LOW_RISK_MIN_SCORE,
    MEDIUM_RISK_MIN_SCORE,
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    STANDARD_STATUS_APPROVED,
)

# Comparison outcomes
PASS = "PASS"
FAIL = "FAIL"
NO_STANDARD = "NO_STANDARD"
NO_ORDER = "NO_ORDER"
MANUAL_REVIEW = "MANUAL_REVIEW"

# Field check outcomes
MISSING = "MISSING"

# "1,000" and "12,500.5" are thousands-grouped; a lone comma is a decimal comma ("99,5").
_NUMBER_RE = re.compile(r"-?\d{1,3}(?:,\d{3})+(?:\.\d+)?|-?\d+(?:[.,]\d+)?")
_GROUPED_RE = re.compile(r"-?\d{1,3}(?:,\d{3})+(?:\.\d+)?")


@dataclass(frozen=True)
class FieldCheck:
    field: str
    expected: Any
    observed: Any
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "expected": self.expected, "observed": self.observed, "status": self.status}


@dataclass(frozen=True)
class Comparison:
    label: str
    status: str
    checks: tuple[FieldCheck, ...] = ()
    source: str | None = None  # order number / standard title
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "status": self.status,
            "source": self.source,
            "note": self.note,
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass(frozen=True)
class AIConfidence:
    quality_score: float | None
    risk: str
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"qualityScore": self.quality_score, "risk": self.risk, "warnings": list(self.warnings)}


@dataclass(frozen=True)
class MatchSummary:
    document_id: str
    doc_type: str
    is_packing_list: bool
    order_vs_evidence: Comparison
    standard_vs_evidence: Comparison
    ai_confidence: AIConfidence
    warnings: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "docType": self.doc_type,
            "isPackingList": self.is_packing_list,
            "orderVsEvidence": self.order_vs_evidence.to_dict(),
            "standardVsEvidence": self.standard_vs_evidence.to_dict(),
            "aiConfidence": self.ai_confidence.to_dict(),
            "warnings": list(self.warnings),
        }


def is_packing_list(doc_type: str | None) -> bool:
    return "packing" in (doc_type or "").lower()


def _normalize_doc_type(doc_type: str | None) -> str:
    return " ".join((doc_type or "").split()).lower()


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            f = float(value)
        except OverflowError:
            return None
    else:
        m = _NUMBER_RE.search(str(value))
        if not m:
            return None
        text = m.group(0)
        f = float(text.replace(",", "") if _GROUPED_RE.fullmatch(text) else text.replace(",", "."))
    # json.loads accepts NaN and Infinity.
    return f if math.isfinite(f) else None


def _as_int(value: Any) -> int | None:
    f = _as_float(value)
    if f is None or f != int(f):
        return None
    return int(f)


def _norm_text(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


def _check_equal_text(name: str, expected: Any, observed: Any) -> FieldCheck:
    if observed is None or _norm_text(observed) == "":
        return FieldCheck(name, expected, observed, MISSING)
    return FieldCheck(name, expected, observed, PASS if _norm_text(expected) == _norm_text(observed) else FAIL)


def _check_quantity(expected: Any, observed: Any) -> FieldCheck:
    obs = _as_int(observed)
    if obs is None:
        return FieldCheck("quantity", expected, observed, MISSING)
    return FieldCheck("quantity", expected, obs, PASS if obs == _as_int(expected) else FAIL)


def _check_min_purity(minimum: Any, observed: Any, *, strict: bool = False) -> FieldCheck:
    obs = _as_float(observed)
    if obs is None:
        return FieldCheck("purity_pct", minimum, observed, MISSING)
    ok = obs > float(minimum) if strict else obs >= float(minimum)
    return FieldCheck("purity_pct", minimum, obs, PASS if ok else FAIL)


def _rollup(checks: Sequence[FieldCheck]) -> str:
    return PASS if checks and all(c.status == PASS for c in checks) else FAIL


def select_master_standard(
    standards: Iterable[Any],
    product_id: str,
    doc_type: str,
) -> tuple[Any | None, tuple[str, ...]]:
    """
    Pick the authoritative (APPROVED) standard for a product/doc-type pair.

    Returns (standard or None, warnings). Non-approved rows are never considered.
    If more than one approved row exists the newest wins and a warning is returned.
    """
    wanted = _normalize_doc_type(doc_type)
    approved = [
        m
        for m in standards
        if getattr(m, "product_id", None) == product_id
        and _normalize_doc_type(getattr(m, "doc_type", None)) == wanted
        and (getattr(m, "status", "") or "").upper() == STANDARD_STATUS_APPROVED
    ]
    if not approved:
        return None, ()
    approved.sort(key=lambda m: (getattr(m, "created_at", None) is not None, getattr(m, "created_at", None) or 0, m.id))
    warnings: tuple[str, ...] = ()
    if len(approved) > 1:
        warnings = (
            f"{len(approved)} APPROVED master standards exist for product {product_id} / {doc_type}; "
            f"using the newest ({approved[-1].id}).",
        )
    return approved[-1], warnings


def compare_order(document: Any, order: Any | None) -> Comparison:
    label = "Order-vs-Evidence"
    if order is None:
        return Comparison(label, NO_ORDER, note=f"Order {document.order_id} was not found.")

    extracted = document.extracted
    checks: list[FieldCheck] = []
    if is_packing_list(document.doc_type):
        checks.append(_check_quantity(order.quantity, extracted.get("quantity")))
        if order.packaging_requirement:
            checks.append(_check_equal_text("packaging", order.packaging_requirement, extracted.get("packaging")))
    else:
        checks.append(_check_equal_text("batch_number", order.batch_number, extracted.get("batch_number")))
        if order.min_purity_pct is not None:
            checks.append(_check_min_purity(order.min_purity_pct, extracted.get("purity_pct")))
        else:
            # Order only asks for a purity test; its presence is the requirement.
            purity = _as_float(extracted.get("purity_pct"))
            checks.append(FieldCheck("purity_pct", "reported", purity, PASS if purity is not None else MISSING))
    return Comparison(label, _rollup(checks), tuple(checks), source=order.order_number)


def compare_standard(document: Any, order: Any | None, standard: Any | None) -> Comparison:
    label = "Standard-vs-Evidence"
    if standard is None:
        return Comparison(
            label,
            NO_STANDARD,
            note=f"No APPROVED master standard exists for product {document.product_id} / {document.doc_type}.",
        )

    extracted = document.extracted
    checks: list[FieldCheck] = []
    if is_packing_list(document.doc_type):
        if standard.packaging:
            checks.append(_check_equal_text("packaging", standard.packaging, extracted.get("packaging")))
        if order is not None and order.quantity is not None:
            checks.append(_check_quantity(order.quantity, extracted.get("quantity")))
    elif standard.min_purity_pct is not None:
        # Standards state "Purity > N%": the reading must exceed the figure.
        checks.append(_check_min_purity(standard.min_purity_pct, extracted.get("purity_pct"), strict=True))

    if not checks:
        return Comparison(
            label,
            MANUAL_REVIEW,
            source=standard.title,
            note=f"Standard states no machine-checkable criteria: {standard.requirement or '(blank)'}",
        )
    return Comparison(label, _rollup(checks), tuple(checks), source=standard.title, note=standard.requirement or None)


def classify_quality_score(score: float | None) -> str:
    if score is None:
        return RISK_HIGH
    if score >= LOW_RISK_MIN_SCORE:
        return RISK_LOW
    if score >= MEDIUM_RISK_MIN_SCORE:
        return RISK_MEDIUM
    return RISK_HIGH


def assess_ai_confidence(document: Any) -> AIConfidence:
    score = document.ai_quality_score
    warnings: list[str] = []
    if score is None:
        warnings.append("Extraction reported no quality score.")
    if document.ai_flag:
        warnings.append(document.ai_flag)
    return AIConfidence(quality_score=score, risk=classify_quality_score(score), warnings=tuple(warnings))


def compute_match_summary(
    document: Any,
    order: Any | None,
    standard: Any | None,
    *,
    warnings: Sequence[str] = (),
) -> MatchSummary:
    return MatchSummary(
        document_id=document.id,
        doc_type=document.doc_type,
        is_packing_list=is_packing_list(document.doc_type),
        order_vs_evidence=compare_order(document, order),
        standard_vs_evidence=compare_standard(document, order, standard),
        ai_confidence=assess_ai_confidence(document),
        warnings=tuple(warnings),
    )


def summarize_document(document: Any, order: Any | None, standards: Iterable[Any]) -> MatchSummary:
    standard, warnings = select_master_standard(standards, document.product_id, document.doc_type)
    return compute_match_summary(document, order, standard, warnings=warnings)
