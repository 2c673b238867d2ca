from __future__ import annotations

import hashlib
import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.pharmaqa.modules.compliance_review.errors import LedgerTimeout, TransientError
from app.pharmaqa.modules.compliance_review.models import LedgerAnchor

logger = logging.getLogger(__name__)


class LedgerClient:
    """Anchors a fingerprint and returns an opaque, tamper-evident reference token."""

    def anchor(self, fingerprint: str) -> str:
        raise NotImplementedError


class LocalLedger(LedgerClient):
    """
    Hash-chained anchor table in the service database.

    token = "0x" + sha256(previous_token | fingerprint | timestamp). Rows are written in
    their own session; an anchor survives even if the decision that requested it is
    later abandoned.
    """

    _chain_lock = threading.Lock()

    def __init__(self, sm: sessionmaker, *, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self._sm = sm
        self._clock = clock

    def anchor(self, fingerprint: str) -> str:
        with self._chain_lock:
            s: Session = self._sm()
            try:
                prev = s.scalars(select(LedgerAnchor.token).order_by(LedgerAnchor.id.desc()).limit(1)).first()
                now = self._clock()
                raw = f"{prev or ''}|{fingerprint}|{now.isoformat()}".encode("utf-8")
                token = "0x" + hashlib.sha256(raw).hexdigest()
                s.add(LedgerAnchor(token=token, previous_token=prev, fingerprint=fingerprint, created_at=now))
                s.commit()
            except SQLAlchemyError as e:
                s.rollback()
                raise LedgerTimeout(f"Local ledger unavailable: {e}") from e
            finally:
                s.close()
        return token

    def verify_chain(self) -> bool:
        s: Session = self._sm()
        try:
            prev: str | None = None
            for row in s.scalars(select(LedgerAnchor).order_by(LedgerAnchor.id.asc())):
                raw = f"{prev or ''}|{row.fingerprint}|{row.created_at.isoformat()}".encode("utf-8")
                if row.previous_token != prev or row.token != "0x" + hashlib.sha256(raw).hexdigest():
                    return False
                prev = row.token
            return True
        finally:
            s.close()


@dataclass(frozen=True)
class HttpLedgerClient(LedgerClient):
    url: str
    api_key: str = ""
    timeout_seconds: float = 10.0

    def anchor(self, fingerprint: str) -> str:
        body = json.dumps({"fingerprint": fingerprint}).encode("utf-8")
        req = urllib.request.Request(self.url, data=body, method="POST")
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        if self.api_key:
            req.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            if e.code == 429 or e.code >= 500:
                raise LedgerTimeout(f"Ledger returned HTTP {e.code}") from e
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except OSError:
                detail = ""
            raise TransientError(f"Ledger rejected anchor (HTTP {e.code}): {detail[:300]}", retryable=False) from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise LedgerTimeout(f"Ledger unreachable: {e}") from e

        try:
            token = json.loads(raw.decode("utf-8")).get("token")
        except (ValueError, AttributeError) as e:
            raise TransientError("Invalid JSON from ledger", retryable=False) from e
        if not token:
            raise TransientError("Ledger response carried no token", retryable=False)
        return str(token)


def ledger_from_config(config: dict, sm: sessionmaker) -> LedgerClient:
    backend = (config.get("LEDGER_BACKEND") or "local").strip().lower()
    if backend == "http":
        return HttpLedgerClient(
            url=(config.get("LEDGER_URL") or "").strip(),
            api_key=(config.get("LEDGER_API_KEY") or "").strip(),
            timeout_seconds=float(config.get("LEDGER_TIMEOUT_SECONDS") or 10),
        )
    if backend != "local":
        logger.warning("Unknown LEDGER_BACKEND=%r; falling back to local ledger", backend)
    return LocalLedger(sm)
