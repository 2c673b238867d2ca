"""
Review state machine for vendor documents.

    PENDING_REVIEW --approve--> APPROVED   (terminal)
    PENDING_REVIEW --reject---> REJECTED   (terminal)

An approval is a pipeline of stages, each able to fail on its own:
authenticate -> fingerprint -> sign -> anchor (bounded retry) -> commit -> audit.
Nothing is written to the document until the commit stage, and the commit is a
compare-and-swap on status, so at most one terminal status is ever stored.
The audit stage runs after the commit and can never undo it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import Flask
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.pharmaqa.audit import AuditLogEntry, AuditLogger, operator_log
from app.pharmaqa.constants import (
    ACTION_DOCUMENT_APPROVED,
    ACTION_DOCUMENT_REJECTED,
    ENTITY_DOCUMENT,
    STATUS_APPROVED,
    STATUS_PENDING_REVIEW,
    STATUS_REJECTED,
)
from app.pharmaqa.db import get_sessionmaker
from app.pharmaqa.modules.compliance_review.errors import (
    AuthenticationError,
    DecisionInProgress,
    DecisionTimeout,
    DocumentNotFound,
    InvalidTransition,
    MissingJustification,
    TransactionError,
    TransientError,
    ValidationError,
)
from app.pharmaqa.modules.compliance_review.ledger import LedgerClient, ledger_from_config
from app.pharmaqa.modules.compliance_review.models import VendorDocument
from app.pharmaqa.modules.compliance_review.service import compute_fingerprint, normalize_comments
from app.pharmaqa.modules.compliance_review.signature import (
    SignatureProof,
    SignatureVerifier,
    UserCredentialStore,
    normalize_identity,
)
from app.pharmaqa.storage import Storage, StorageError, storage_from_config

logger = logging.getLogger(__name__)

STAGE_AUTHENTICATING = "authenticating"
STAGE_FINGERPRINTING = "fingerprinting"
STAGE_SIGNING = "signing"
STAGE_ANCHORING = "anchoring"
STAGE_COMMITTING = "committing"
STAGE_AUDITING = "auditing"

ProgressCallback = Callable[[str, str], None]


class ProgressBoard:
    """Process-wide view of which stage each in-flight decision has reached."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stages: dict[str, str] = {}

    def publish(self, document_id: str, stage: str) -> None:
        with self._lock:
            self._stages[document_id] = stage

    def clear(self, document_id: str) -> None:
        with self._lock:
            self._stages.pop(document_id, None)

    def current(self, document_id: str) -> str | None:
        with self._lock:
            return self._stages.get(document_id)


class DocumentLocks:
    """
    Per-document exclusivity. Held for the whole multi-stage decision; a second
    decision on the same document fails fast instead of queueing behind the first.
    Different documents never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, document_id: str) -> Iterator[None]:
        with self._guard:
            if document_id in self._held:
                raise DecisionInProgress(
                    f"A decision on document {document_id} is already in progress.",
                    document_id=document_id,
                )
            self._held.add(document_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(document_id)

    def is_held(self, document_id: str) -> bool:
        with self._guard:
            return document_id in self._held


document_locks = DocumentLocks()
progress_board = ProgressBoard()


@dataclass(frozen=True)
class ReviewDecision:
    document_id: str
    outcome: str
    reviewer_identity: str
    comments: str
    decided_at: datetime
    signature_proof: SignatureProof | None = None


@dataclass(frozen=True)
class DecisionResult:
    document_id: str
    new_status: str
    decided_at: datetime
    audit_delivered: bool
    anchor_ref: str | None = None
    fingerprint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "documentId": self.document_id,
            "newStatus": self.new_status,
            "decidedAt": self.decided_at.isoformat(),
            "auditDelivered": self.audit_delivered,
        }
        if self.anchor_ref is not None:
            d["anchorRef"] = self.anchor_ref
            d["fingerprint"] = self.fingerprint
        return d


class ReviewStateMachine:
    def __init__(
        self,
        session: Session,
        *,
        verifier: SignatureVerifier,
        ledger: LedgerClient,
        audit: AuditLogger,
        storage: Storage | None = None,
        ledger_max_attempts: int = 3,
        ledger_retry_backoff_seconds: float = 0.5,
        deadline_seconds: float | None = 30.0,
        locks: DocumentLocks = document_locks,
        board: ProgressBoard = progress_board,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.session = session
        self.verifier = verifier
        self.ledger = ledger
        self.audit = audit
        self.storage = storage
        self.ledger_max_attempts = max(1, int(ledger_max_attempts))
        self.ledger_retry_backoff_seconds = ledger_retry_backoff_seconds
        self.deadline_seconds = deadline_seconds
        self.locks = locks
        self.board = board
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock

    # -- decisions -------------------------------------------------------

    def submit_approval(
        self,
        document_id: str,
        reviewer_identity: str,
        credential: str,
        comments: str | None = None,
        *,
        progress: ProgressCallback | None = None,
    ) -> DecisionResult:
        comments = normalize_comments(comments)
        with self.locks.hold(document_id):
            started = self._monotonic()
            try:
                doc = self._load_pending(document_id)
                if not credential:
                    raise ValidationError(
                        "Signature password is required for 21 CFR Part 11 approval.",
                        document_id=document_id,
                    )

                self._stage(document_id, STAGE_AUTHENTICATING, progress)
                try:
                    identity = self.verifier.authenticate(reviewer_identity, credential)
                except AuthenticationError as e:
                    e.document_id = document_id
                    logger.warning(
                        "Signature rejected doc=%s reviewer=%s reason=%s",
                        document_id,
                        normalize_identity(reviewer_identity),
                        e.reason,
                    )
                    raise

                self._stage(document_id, STAGE_FINGERPRINTING, progress)
                fingerprint = self._fingerprint(doc)

                self._stage(document_id, STAGE_SIGNING, progress)
                proof = self.verifier.sign(identity, document_id=document_id, fingerprint=fingerprint)

                self._stage(document_id, STAGE_ANCHORING, progress)
                anchor_ref = self._anchor_with_retry(document_id, fingerprint, started)

                self._check_deadline(document_id, started)
                self._stage(document_id, STAGE_COMMITTING, progress)
                decided_at = self._clock()
                self._commit(
                    doc,
                    new_status=STATUS_APPROVED,
                    blockchain_tx=anchor_ref,
                    content_fingerprint=fingerprint,
                    signature_json=proof.to_json(),
                    reviewed_by=identity,
                    reviewed_at=decided_at,
                    review_comments=comments or None,
                )
                logger.info("Document approved doc=%s reviewer=%s anchor=%s", document_id, identity, anchor_ref)

                decision = ReviewDecision(
                    document_id=document_id,
                    outcome=STATUS_APPROVED,
                    reviewer_identity=identity,
                    comments=comments,
                    decided_at=decided_at,
                    signature_proof=proof,
                )
                self._stage(document_id, STAGE_AUDITING, progress, committed=True)
                delivered = self._emit_audit(
                    decision,
                    details=f"QA approved document {doc.file_name}",
                    changes={
                        "status": {"from": STATUS_PENDING_REVIEW, "to": STATUS_APPROVED},
                        "comments": comments,
                        "fingerprint": fingerprint,
                        "anchorRef": anchor_ref,
                        "signature": proof.to_dict(),
                    },
                )
            finally:
                self.board.clear(document_id)

        return DecisionResult(
            document_id=document_id,
            new_status=STATUS_APPROVED,
            decided_at=decided_at,
            audit_delivered=delivered,
            anchor_ref=anchor_ref,
            fingerprint=fingerprint,
        )

    def submit_rejection(
        self,
        document_id: str,
        reviewer_identity: str,
        comments: str | None,
        *,
        progress: ProgressCallback | None = None,
    ) -> DecisionResult:
        comments = normalize_comments(comments)
        identity = normalize_identity(reviewer_identity)
        with self.locks.hold(document_id):
            try:
                doc = self._load_pending(document_id)
                if not comments:
                    raise MissingJustification(
                        "Reason for rejection is mandatory for the audit trail.",
                        document_id=document_id,
                    )
                if not identity:
                    raise ValidationError("Reviewer identity is required.", document_id=document_id)

                self._stage(document_id, STAGE_COMMITTING, progress)
                decided_at = self._clock()
                self._commit(
                    doc,
                    new_status=STATUS_REJECTED,
                    reviewed_by=identity,
                    reviewed_at=decided_at,
                    review_comments=comments,
                )
                logger.info("Document rejected doc=%s reviewer=%s", document_id, identity)

                decision = ReviewDecision(
                    document_id=document_id,
                    outcome=STATUS_REJECTED,
                    reviewer_identity=identity,
                    comments=comments,
                    decided_at=decided_at,
                )
                self._stage(document_id, STAGE_AUDITING, progress, committed=True)
                delivered = self._emit_audit(
                    decision,
                    details=f"QA rejected document {doc.file_name}",
                    changes={
                        "status": {"from": STATUS_PENDING_REVIEW, "to": STATUS_REJECTED},
                        "reason": comments,
                    },
                )
            finally:
                self.board.clear(document_id)

        return DecisionResult(
            document_id=document_id,
            new_status=STATUS_REJECTED,
            decided_at=decided_at,
            audit_delivered=delivered,
        )

    # -- stages ----------------------------------------------------------

    def _load_pending(self, document_id: str) -> VendorDocument:
        doc = self.session.get(VendorDocument, document_id, populate_existing=True)
        if doc is None:
            raise DocumentNotFound(f"Document {document_id} not found.", document_id=document_id)
        if doc.status != STATUS_PENDING_REVIEW:
            raise InvalidTransition(
                f"Document {document_id} is {doc.status}; only PENDING_REVIEW documents can be decided.",
                document_id=document_id,
            )
        return doc

    def _fingerprint(self, doc: VendorDocument) -> str:
        try:
            return compute_fingerprint(doc, self.storage)
        except StorageError as e:
            raise TransientError(
                f"Cannot read document content for fingerprinting: {e}",
                retryable=False,
                document_id=doc.id,
            ) from e

    def _anchor_with_retry(self, document_id: str, fingerprint: str, started: float) -> str:
        last_err: TransientError | None = None
        for attempt in range(1, self.ledger_max_attempts + 1):
            try:
                return self.ledger.anchor(fingerprint)
            except TransientError as e:
                last_err = e
                logger.warning(
                    "Ledger anchor attempt %d/%d failed doc=%s: %s",
                    attempt,
                    self.ledger_max_attempts,
                    document_id,
                    e,
                )
                if not e.retryable:
                    break
                if attempt < self.ledger_max_attempts:
                    self._check_deadline(document_id, started)
                    self._sleep(min(self.ledger_retry_backoff_seconds * attempt, 5))

        operator_log.error("LEDGER ANCHOR FAILED doc=%s fingerprint=%s err=%s", document_id, fingerprint, last_err)
        raise TransientError(
            f"Ledger anchoring failed after {attempt} attempt(s): {last_err}",
            document_id=document_id,
        ) from last_err

    def _check_deadline(self, document_id: str, started: float) -> None:
        if not self.deadline_seconds:
            return
        elapsed = self._monotonic() - started
        if elapsed > self.deadline_seconds:
            raise DecisionTimeout(
                f"Approval of document {document_id} exceeded {self.deadline_seconds:g}s and was abandoned; "
                "the document remains PENDING_REVIEW.",
                document_id=document_id,
            )

    def _commit(self, doc: VendorDocument, *, new_status: str, **values: Any) -> None:
        stmt = (
            update(VendorDocument)
            .where(VendorDocument.id == doc.id, VendorDocument.status == STATUS_PENDING_REVIEW)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            if result.rowcount != 1:
                self.session.rollback()
                raise InvalidTransition(
                    f"Document {doc.id} was decided concurrently; no change made.",
                    document_id=doc.id,
                )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception("Decision commit failed doc=%s status=%s", doc.id, new_status)
            raise TransactionError(
                f"Could not record the decision for document {doc.id}; it remains PENDING_REVIEW.",
                document_id=doc.id,
            ) from e
        self.session.expire(doc)

    def _emit_audit(self, decision: ReviewDecision, *, details: str, changes: dict[str, Any]) -> bool:
        entry = AuditLogEntry(
            action=ACTION_DOCUMENT_APPROVED if decision.outcome == STATUS_APPROVED else ACTION_DOCUMENT_REJECTED,
            entity_type=ENTITY_DOCUMENT,
            entity_id=decision.document_id,
            actor_identity=decision.reviewer_identity,
            details=details,
            changes=changes,
            timestamp=decision.decided_at,
            reason=decision.comments or None,
        )
        try:
            return self.audit.log_action(entry)
        except Exception as e:
            # The decision is already committed; report, never raise.
            self.audit.report_failure(entry, e)
            return False

    def _stage(
        self,
        document_id: str,
        stage: str,
        progress: ProgressCallback | None,
        *,
        committed: bool = False,
    ) -> None:
        self.board.publish(document_id, stage)
        if progress is None:
            return
        if not committed:
            # A callback that raises before the commit abandons the decision.
            progress(document_id, stage)
            return
        try:
            progress(document_id, stage)
        except Exception:
            logger.exception("Progress callback failed after commit doc=%s stage=%s", document_id, stage)


def init_review(app: Flask) -> None:
    """Register the app-wide collaborators the state machine is built from."""
    sm = get_sessionmaker(app)
    app.extensions["review_ledger"] = ledger_from_config(app.config, sm)
    app.extensions["review_audit_logger"] = AuditLogger(sm)
    app.extensions["review_storage"] = storage_from_config(app.config)


def build_state_machine(app: Flask, session: Session) -> ReviewStateMachine:
    verifier = SignatureVerifier(UserCredentialStore(session), app.config["SECRET_KEY"])
    return ReviewStateMachine(
        session,
        verifier=verifier,
        ledger=app.extensions["review_ledger"],
        audit=app.extensions["review_audit_logger"],
        storage=app.extensions.get("review_storage"),
        ledger_max_attempts=int(app.config.get("LEDGER_MAX_ATTEMPTS") or 3),
        ledger_retry_backoff_seconds=float(app.config.get("LEDGER_RETRY_BACKOFF_SECONDS") or 0),
        deadline_seconds=float(app.config.get("REVIEW_DEADLINE_SECONDS") or 0) or None,
    )
