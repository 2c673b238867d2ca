from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash

from app.pharmaqa.models import User
from app.pharmaqa.modules.compliance_review.errors import AuthenticationError

SIGNATURE_MEANING_APPROVAL = "approval"


def normalize_identity(identity: str | None) -> str:
    return (identity or "").strip().lower()


class CredentialStore:
    """Checks a reviewer's credential. Raises AuthenticationError; returns nothing on success."""

    def verify(self, identity: str, credential: str) -> None:
        raise NotImplementedError


class UserCredentialStore(CredentialStore):
    def __init__(self, session: Session) -> None:
        self.session = session

    def verify(self, identity: str, credential: str) -> None:
        email = normalize_identity(identity)
        user = self.session.query(User).filter(User.email == email).one_or_none()
        if user is None:
            raise AuthenticationError("Unknown reviewer identity.", reason=AuthenticationError.UNKNOWN_IDENTITY)
        if not user.is_active:
            raise AuthenticationError("Reviewer account is inactive.", reason=AuthenticationError.INACTIVE_IDENTITY)
        if not check_password_hash(user.password_hash, credential):
            raise AuthenticationError("Invalid signature password.", reason=AuthenticationError.INVALID_CREDENTIAL)


@dataclass(frozen=True)
class SignatureProof:
    """Electronic signature: who approved which document version, when, and for what meaning."""

    reviewer_identity: str
    document_id: str
    fingerprint: str
    meaning: str
    signed_at: str  # ISO-8601, UTC
    signature: str  # hex HMAC-SHA256 over payload()

    def payload(self) -> bytes:
        return _canonical_payload(
            reviewer_identity=self.reviewer_identity,
            document_id=self.document_id,
            fingerprint=self.fingerprint,
            meaning=self.meaning,
            signed_at=self.signed_at,
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SignatureProof":
        return cls(**{k: str(d[k]) for k in cls.__dataclass_fields__})


def _canonical_payload(**fields: str) -> bytes:
    return json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8")


class SignatureVerifier:
    """
    Authentication gate for approvals.

    Has no access to document state: it authenticates a reviewer and issues a
    SignatureProof bound to a specific document fingerprint.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        secret_key: str,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("SignatureVerifier requires a signing key.")
        self.credentials = credentials
        self._key = secret_key.encode("utf-8")
        self._clock = clock

    def authenticate(self, reviewer_identity: str, credential: str) -> str:
        if not credential:
            raise AuthenticationError("Signature password is required.", reason=AuthenticationError.EMPTY_CREDENTIAL)
        identity = normalize_identity(reviewer_identity)
        if not identity:
            raise AuthenticationError("Reviewer identity is required.", reason=AuthenticationError.UNKNOWN_IDENTITY)
        self.credentials.verify(identity, credential)
        return identity

    def sign(self, reviewer_identity: str, *, document_id: str, fingerprint: str) -> SignatureProof:
        identity = normalize_identity(reviewer_identity)
        signed_at = self._clock().replace(microsecond=0).isoformat() + "Z"
        payload = _canonical_payload(
            reviewer_identity=identity,
            document_id=document_id,
            fingerprint=fingerprint,
            meaning=SIGNATURE_MEANING_APPROVAL,
            signed_at=signed_at,
        )
        return SignatureProof(
            reviewer_identity=identity,
            document_id=document_id,
            fingerprint=fingerprint,
            meaning=SIGNATURE_MEANING_APPROVAL,
            signed_at=signed_at,
            signature=hmac.new(self._key, payload, hashlib.sha256).hexdigest(),
        )

    def verify(self, reviewer_identity: str, credential: str, *, document_id: str, fingerprint: str) -> SignatureProof:
        identity = self.authenticate(reviewer_identity, credential)
        return self.sign(identity, document_id=document_id, fingerprint=fingerprint)

    def check_proof(self, proof: SignatureProof, *, fingerprint: str | None = None) -> bool:
        if fingerprint is not None and proof.fingerprint != fingerprint:
            return False
        expected = hmac.new(self._key, proof.payload(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, proof.signature)
