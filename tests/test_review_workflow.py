"""Tests for the review state machine (approve/reject pipeline)."""
import json
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError
from werkzeug.security import generate_password_hash

from app.pharmaqa import create_app
from app.pharmaqa.audit import AuditDeliveryError, AuditLogger
from app.pharmaqa.constants import (
    ACTION_DOCUMENT_APPROVED,
    ACTION_DOCUMENT_REJECTED,
    STATUS_APPROVED,
    STATUS_PENDING_REVIEW,
    STATUS_REJECTED,
)
from app.pharmaqa.db import get_sessionmaker, session_scope
from app.pharmaqa.models import AuditEvent, Base, Permission, Role, User
from app.pharmaqa.modules.compliance_review.errors import (
    AuthenticationError,
    DecisionInProgress,
    DecisionTimeout,
    DocumentNotFound,
    InvalidTransition,
    LedgerTimeout,
    MissingJustification,
    TransactionError,
    TransientError,
    ValidationError,
)
from app.pharmaqa.modules.compliance_review.ledger import LedgerClient
from app.pharmaqa.modules.compliance_review.models import LedgerAnchor, MasterStandard, Order, Product, VendorDocument
from app.pharmaqa.modules.compliance_review.service import compute_fingerprint
from app.pharmaqa.modules.compliance_review.signature import SignatureProof, SignatureVerifier, UserCredentialStore
from app.pharmaqa.modules.compliance_review.workflow import (
    STAGE_ANCHORING,
    STAGE_AUDITING,
    STAGE_AUTHENTICATING,
    STAGE_COMMITTING,
    ReviewStateMachine,
    progress_board,
)

REVIEWER = "qa@example.com"
SIGN_PW = "sign-pw"


class CountingLedger(LedgerClient):
    """Fails the first `failures` calls with LedgerTimeout, then returns tokens."""

    def __init__(self, failures: int = 0, delay: float = 0.0) -> None:
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def anchor(self, fingerprint: str) -> str:
        with self._lock:
            self.calls += 1
            n = self.calls
        if self.delay:
            time.sleep(self.delay)
        if n <= self.failures:
            raise LedgerTimeout("simulated ledger timeout")
        return f"0xanchor{n:04d}{fingerprint[:8]}"


class BrokenAuditLogger(AuditLogger):
    def append(self, entry):
        raise AuditDeliveryError("audit sink offline")


def _seed(s):
    perms = [Permission(key="reviews.view", name="Reviews: view"), Permission(key="reviews.decide", name="Reviews: decide")]
    r = Role(key="qa_reviewer", name="QA Reviewer")
    r.permissions.extend(perms)
    u = User(email=REVIEWER, password_hash=generate_password_hash(SIGN_PW), is_active=True)
    u.roles.append(r)
    gone = User(email="former@example.com", password_hash=generate_password_hash(SIGN_PW), is_active=False)
    s.add_all(perms + [r, u, gone])

    s.add(Product(id="P1", name="Atenolol", strength="50mg"))
    s.flush()
    s.add(
        Order(
            id="O1",
            product_id="P1",
            order_number="PO-1001",
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
    common = dict(order_id="O1", product_id="P1", vendor_id="V1")
    s.add_all(
        [
            VendorDocument(
                id="D1",
                doc_type="Quality Certificate",
                file_name="coa.pdf",
                file_path="vendor/V1/coa.pdf",
                extracted_json=json.dumps({"batch_number": "B-998-X", "purity_pct": 99.8}),
                ai_quality_score=96,
                **common,
            ),
            VendorDocument(id="D2", doc_type="Quality Certificate", file_name="coa2.pdf", file_path="vendor/V1/coa2.pdf", **common),
            VendorDocument(id="D3", doc_type="Packing List", file_name="pl.pdf", file_path="vendor/V1/pl.pdf", **common),
            VendorDocument(
                id="D4",
                doc_type="Quality Certificate",
                file_name="old.pdf",
                file_path="vendor/V1/old.pdf",
                status=STATUS_APPROVED,
                blockchain_tx="0xexisting",
                **common,
            ),
        ]
    )


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("LEDGER_BACKEND", "local")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        _seed(s)
    return app


def _machine(app, s, *, ledger=None, audit=None, **kwargs) -> ReviewStateMachine:
    kwargs.setdefault("ledger_retry_backoff_seconds", 0)
    kwargs.setdefault("sleep", lambda _seconds: None)
    return ReviewStateMachine(
        s,
        verifier=SignatureVerifier(UserCredentialStore(s), "test-secret"),
        ledger=ledger or app.extensions["review_ledger"],
        audit=audit or app.extensions["review_audit_logger"],
        storage=app.extensions["review_storage"],
        **kwargs,
    )


def _status(app, doc_id):
    with session_scope(app) as s:
        return s.get(VendorDocument, doc_id).status


def _audit_actions(app, doc_id):
    with session_scope(app) as s:
        rows = s.query(AuditEvent).filter(AuditEvent.entity_id == doc_id).order_by(AuditEvent.id.asc()).all()
        return [e.action for e in rows]


def _anchor_count(app):
    with session_scope(app) as s:
        return s.query(LedgerAnchor).count()


def test_approval_signs_anchors_commits_and_then_refuses_a_second_approval(app):
    with session_scope(app) as s:
        m = _machine(app, s)
        result = m.submit_approval("D1", REVIEWER, SIGN_PW, "Looks good")
        assert result.new_status == STATUS_APPROVED
        assert result.anchor_ref and result.anchor_ref.startswith("0x")
        assert result.audit_delivered is True

        with pytest.raises(InvalidTransition):
            m.submit_approval("D1", REVIEWER, SIGN_PW, "Looks good")

    with session_scope(app) as s:
        d = s.get(VendorDocument, "D1")
        assert d.status == STATUS_APPROVED
        assert d.blockchain_tx == result.anchor_ref
        assert d.content_fingerprint == result.fingerprint
        assert d.reviewed_by == REVIEWER
        assert d.review_comments == "Looks good"

        proof = SignatureProof.from_dict(json.loads(d.signature_json))
        verifier = SignatureVerifier(UserCredentialStore(s), "test-secret")
        assert proof.reviewer_identity == REVIEWER
        assert proof.document_id == "D1"
        assert verifier.check_proof(proof, fingerprint=d.content_fingerprint)

        ev = s.query(AuditEvent).filter(AuditEvent.entity_id == "D1").one()
        assert ev.action == ACTION_DOCUMENT_APPROVED
        assert ev.actor_identity == REVIEWER
        changes = json.loads(ev.changes_json)
        assert changes["status"] == {"from": STATUS_PENDING_REVIEW, "to": STATUS_APPROVED}
        assert changes["anchorRef"] == result.anchor_ref

    assert _anchor_count(app) == 1


def test_rejection_without_comments_is_refused_and_leaves_document_pending(app):
    with session_scope(app) as s:
        m = _machine(app, s)
        with pytest.raises(ValidationError) as exc:
            m.submit_rejection("D2", REVIEWER, "")
        assert isinstance(exc.value, MissingJustification)
        with pytest.raises(MissingJustification):
            m.submit_rejection("D2", REVIEWER, "   ")

    assert _status(app, "D2") == STATUS_PENDING_REVIEW
    assert _audit_actions(app, "D2") == []


def test_rejection_records_reason_without_signature(app):
    ledger = CountingLedger()
    with session_scope(app) as s:
        result = _machine(app, s, ledger=ledger).submit_rejection("D2", REVIEWER, "Batch number does not match PO")
    assert result.new_status == STATUS_REJECTED
    assert result.anchor_ref is None
    assert ledger.calls == 0

    with session_scope(app) as s:
        d = s.get(VendorDocument, "D2")
        assert d.status == STATUS_REJECTED
        assert d.review_comments == "Batch number does not match PO"
        assert d.blockchain_tx is None
        assert d.signature_json is None
    assert _audit_actions(app, "D2") == [ACTION_DOCUMENT_REJECTED]


def test_ledger_exhausting_retries_fails_transiently_and_leaves_document_pending(app):
    ledger = CountingLedger(failures=100)
    with session_scope(app) as s:
        with pytest.raises(TransientError):
            _machine(app, s, ledger=ledger, ledger_max_attempts=3).submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    assert ledger.calls == 3

    with session_scope(app) as s:
        d = s.get(VendorDocument, "D1")
        assert d.status == STATUS_PENDING_REVIEW
        assert d.blockchain_tx is None
        assert d.content_fingerprint is None
    assert _audit_actions(app, "D1") == []


def test_ledger_recovers_within_retry_budget(app):
    ledger = CountingLedger(failures=2)
    with session_scope(app) as s:
        result = _machine(app, s, ledger=ledger, ledger_max_attempts=3).submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    assert ledger.calls == 3
    assert result.anchor_ref.startswith("0xanchor0003")
    assert _status(app, "D1") == STATUS_APPROVED


def test_non_retryable_ledger_error_is_not_retried(app):
    class RejectingLedger(CountingLedger):
        def anchor(self, fingerprint):
            self.calls += 1
            raise TransientError("ledger rejected payload", retryable=False)

    ledger = RejectingLedger()
    with session_scope(app) as s:
        with pytest.raises(TransientError):
            _machine(app, s, ledger=ledger, ledger_max_attempts=5).submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    assert ledger.calls == 1
    assert _status(app, "D1") == STATUS_PENDING_REVIEW


@pytest.mark.parametrize(
    "identity,credential,reason",
    [
        (REVIEWER, "wrong-password", AuthenticationError.INVALID_CREDENTIAL),
        ("nobody@example.com", SIGN_PW, AuthenticationError.UNKNOWN_IDENTITY),
        ("former@example.com", SIGN_PW, AuthenticationError.INACTIVE_IDENTITY),
    ],
)
def test_failed_signature_has_no_side_effects(app, identity, credential, reason):
    ledger = CountingLedger()
    with session_scope(app) as s:
        with pytest.raises(AuthenticationError) as exc:
            _machine(app, s, ledger=ledger).submit_approval("D1", identity, credential, "ok")
    assert exc.value.reason == reason
    assert exc.value.document_id == "D1"
    assert ledger.calls == 0
    assert _status(app, "D1") == STATUS_PENDING_REVIEW
    assert _audit_actions(app, "D1") == []


def test_missing_credential_is_a_validation_error(app):
    ledger = CountingLedger()
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            _machine(app, s, ledger=ledger).submit_approval("D1", REVIEWER, "", "ok")
    assert ledger.calls == 0
    assert _status(app, "D1") == STATUS_PENDING_REVIEW


def test_terminal_document_refuses_every_decision_without_side_effects(app):
    ledger = CountingLedger()
    with session_scope(app) as s:
        m = _machine(app, s, ledger=ledger)
        with pytest.raises(InvalidTransition):
            m.submit_approval("D4", REVIEWER, SIGN_PW, "again")
        with pytest.raises(InvalidTransition):
            m.submit_rejection("D4", REVIEWER, "changed my mind")
    assert ledger.calls == 0
    with session_scope(app) as s:
        d = s.get(VendorDocument, "D4")
        assert d.status == STATUS_APPROVED
        assert d.blockchain_tx == "0xexisting"
    assert _audit_actions(app, "D4") == []


def test_unknown_document_is_reported(app):
    with session_scope(app) as s:
        with pytest.raises(DocumentNotFound):
            _machine(app, s).submit_rejection("NOPE", REVIEWER, "reason")


def test_persistence_failure_is_transactional_and_leaves_document_pending(app, monkeypatch):
    s = get_sessionmaker(app)()
    try:
        def _boom():
            raise OperationalError("UPDATE vendor_documents", {}, Exception("disk I/O error"))

        monkeypatch.setattr(s, "commit", _boom)
        with pytest.raises(TransactionError):
            _machine(app, s).submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    finally:
        s.close()

    with session_scope(app) as s2:
        d = s2.get(VendorDocument, "D1")
        assert d.status == STATUS_PENDING_REVIEW
        assert d.blockchain_tx is None
    assert _audit_actions(app, "D1") == []


def test_audit_failure_does_not_roll_back_the_decision_and_alerts_operators(app, caplog):
    alerts = []
    audit = BrokenAuditLogger(get_sessionmaker(app), operator_sinks=[lambda entry, exc: alerts.append((entry, exc))])
    with caplog.at_level("ERROR", logger="pharmaqa.operator"):
        with session_scope(app) as s:
            result = _machine(app, s, audit=audit).submit_approval("D1", REVIEWER, SIGN_PW, "ok")

    assert result.new_status == STATUS_APPROVED
    assert result.audit_delivered is False
    assert _status(app, "D1") == STATUS_APPROVED
    assert len(alerts) == 1
    assert alerts[0][0].action == ACTION_DOCUMENT_APPROVED
    assert alerts[0][0].entity_id == "D1"
    assert any("AUDIT DELIVERY FAILED" in r.getMessage() for r in caplog.records)


def test_concurrent_decisions_on_one_document_commit_exactly_once(app):
    sm = get_sessionmaker(app)
    ledger = CountingLedger(delay=0.05)
    n = 6
    barrier = threading.Barrier(n)
    outcomes: list[str] = []
    guard = threading.Lock()

    def worker(i: int) -> None:
        s = sm()
        try:
            m = _machine(app, s, ledger=ledger)
            barrier.wait()
            try:
                if i % 2 == 0:
                    res = m.submit_approval("D1", REVIEWER, SIGN_PW, f"approve {i}").new_status
                else:
                    res = m.submit_rejection("D1", REVIEWER, f"reject {i}").new_status
            except InvalidTransition:
                res = "lost"
            with guard:
                outcomes.append(res)
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == n
    winners = [o for o in outcomes if o != "lost"]
    assert len(winners) == 1
    assert _status(app, "D1") == winners[0]
    assert len(_audit_actions(app, "D1")) == 1


def test_lock_covers_the_whole_pipeline_and_other_documents_proceed(app):
    sm = get_sessionmaker(app)
    seen = {}

    def on_progress(doc_id, stage):
        if stage != STAGE_ANCHORING:
            return
        s2 = sm()
        try:
            other = _machine(app, s2)
            with pytest.raises(DecisionInProgress):
                other.submit_rejection("D1", REVIEWER, "too late")
            seen["D2"] = other.submit_rejection("D2", REVIEWER, "wrong batch").new_status
            seen["board"] = progress_board.current("D1")
        finally:
            s2.close()

    with session_scope(app) as s:
        result = _machine(app, s).submit_approval("D1", REVIEWER, SIGN_PW, "ok", progress=on_progress)

    assert result.new_status == STATUS_APPROVED
    assert seen == {"D2": STATUS_REJECTED, "board": STAGE_ANCHORING}
    assert progress_board.current("D1") is None


def test_progress_reports_each_stage_in_order(app):
    stages = []
    with session_scope(app) as s:
        _machine(app, s).submit_approval("D1", REVIEWER, SIGN_PW, "ok", progress=lambda _d, st: stages.append(st))
    assert stages[0] == STAGE_AUTHENTICATING
    assert stages.index(STAGE_ANCHORING) < stages.index(STAGE_COMMITTING) < stages.index(STAGE_AUDITING)


def test_abandoning_mid_flight_leaves_document_pending_and_unlocked(app):
    ledger = CountingLedger()

    def abandon(_doc_id, stage):
        if stage == STAGE_ANCHORING:
            raise TimeoutError("client went away")

    with session_scope(app) as s:
        with pytest.raises(TimeoutError):
            _machine(app, s, ledger=ledger).submit_approval("D1", REVIEWER, SIGN_PW, "ok", progress=abandon)
    assert ledger.calls == 0
    assert _status(app, "D1") == STATUS_PENDING_REVIEW

    with session_scope(app) as s:
        assert _machine(app, s, ledger=ledger).submit_approval("D1", REVIEWER, SIGN_PW, "ok").new_status == STATUS_APPROVED


def test_deadline_elapsed_before_commit_abandons_the_approval(app):
    ticks = iter([0.0, 120.0, 240.0])
    with session_scope(app) as s:
        m = _machine(app, s, deadline_seconds=30, monotonic=lambda: next(ticks))
        with pytest.raises(DecisionTimeout):
            m.submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    assert _status(app, "D1") == STATUS_PENDING_REVIEW
    assert _audit_actions(app, "D1") == []


def test_fingerprint_binds_stored_document_bytes(app):
    storage = app.extensions["review_storage"]
    storage.put_bytes("vendor/V1/coa.pdf", b"%PDF-1.7 certificate of analysis B-998-X")

    with session_scope(app) as s:
        doc = s.get(VendorDocument, "D1")
        expected = compute_fingerprint(doc, storage)
        assert expected != compute_fingerprint(doc, None)
        result = _machine(app, s).submit_approval("D1", REVIEWER, SIGN_PW, "ok")
    assert result.fingerprint == expected
