"""Completion certificates: issuance, PDF rendering and public verification.

Issuance is idempotent per (user, course). A complete stored certificate is
returned unchanged; otherwise a token and number are generated, the PDF is
rendered and uploaded, and the row is written with a conditional insert so
concurrent callers all read back the same stored token.
"""

from __future__ import annotations

import base64
import io
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from blob_store import BlobStore, BlobStoreError
from engines.base import log_event, utcnow
from engines.completion import is_course_complete, modules_by_course
from errors import NotEligible, NotFound, StorageFailure

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repositories import Repository

_LOGGER = logging.getLogger(__name__)

TOKEN_BYTES = 20
_TOKEN_PATTERN = re.compile(r"[0-9a-fA-F]{%d}" % (TOKEN_BYTES * 2))
PDF_CONTENT_TYPE = "application/pdf"


def _log_json(event: str, payload: Dict[str, Any], level: int = logging.INFO) -> None:
    log_event(_LOGGER, event, payload, level)


@dataclass
class Certificate:
    user_id: str
    course_id: str
    issued_at: Optional[datetime]
    verification_token: Optional[str]
    certificate_number: Optional[str]
    certificate_url: Optional[str]
    completion_rate: int = 100
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return bool(self.verification_token and self.certificate_url)

    @property
    def verification_url(self) -> Optional[str]:
        return self.metadata.get("verification_url")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "certificate_url": self.certificate_url,
            "verification_url": self.verification_url,
            "certificate_number": self.certificate_number,
        }


@dataclass(frozen=True)
class CertificateVerification:
    valid: bool
    issued_at: Optional[datetime] = None
    completion_rate: Optional[int] = None
    certificate_url: Optional[str] = None
    certificate_number: Optional[str] = None
    recipient_name: Optional[str] = None
    course_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False}
        return {
            "valid": True,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "completion_rate": self.completion_rate,
            "certificate_url": self.certificate_url,
            "certificate_number": self.certificate_number,
            "recipient_name": self.recipient_name,
            "course_title": self.course_title,
        }


def generate_verification_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def render_certificate_pdf(
    *,
    recipient_name: str,
    course_title: str,
    issued_at: datetime,
    certificate_number: str,
    verification_url: str,
) -> bytes:
    buf = io.BytesIO()
    page_size = landscape(A4)
    c = canvas.Canvas(buf, pagesize=page_size)
    w, h = page_size
    c.setTitle(f"Certificate {certificate_number}")

    # frame
    c.setLineWidth(2)
    c.rect(12 * mm, 12 * mm, w - 24 * mm, h - 24 * mm, stroke=1, fill=0)

    c.setFont("Helvetica-Bold", 30)
    c.drawCentredString(w / 2, h - 50 * mm, "Certificate of Completion")

    c.setFont("Helvetica", 14)
    c.drawCentredString(w / 2, h - 70 * mm, "This certifies that")
    c.setFont("Helvetica-Bold", 24)
    c.drawCentredString(w / 2, h - 85 * mm, recipient_name or "Learner")

    c.setFont("Helvetica", 14)
    c.drawCentredString(w / 2, h - 100 * mm, "has successfully completed")
    c.setFont("Helvetica-Bold", 20)
    c.drawCentredString(w / 2, h - 114 * mm, course_title)

    c.setFont("Helvetica", 11)
    c.drawString(25 * mm, 35 * mm, f"Issued: {issued_at:%Y-%m-%d}")
    c.drawString(25 * mm, 28 * mm, f"Certificate no.: {certificate_number}")
    c.drawString(25 * mm, 21 * mm, f"Verify at: {verification_url}")

    c.showPage()
    c.save()
    return buf.getvalue()


class CertificateIssuer:
    def __init__(
        self,
        repository: "Repository",
        blob_store: BlobStore,
        *,
        app_url: Optional[str] = None,
        number_prefix: str = "FAV",
        token_factory: Callable[[], str] = generate_verification_token,
        inline_fallback: bool = True,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.app_url = app_url.rstrip("/") if app_url else None
        self.number_prefix = number_prefix
        self.token_factory = token_factory
        self.inline_fallback = inline_fallback

    def verification_url(self, token: str) -> str:
        path = f"/certificates/{token}"
        return f"{self.app_url}{path}" if self.app_url else path

    def certificate_number(self, issued_at: datetime) -> str:
        return f"{self.number_prefix}-{issued_at:%Y%m%d}-{secrets.token_hex(2).upper()}"

    def issue(self, user_id: str, course_id: str, *, now: Optional[datetime] = None) -> Certificate:
        course = self.repository.get_course(course_id)
        if course is None:
            raise NotFound(f"Unknown course: {course_id}")
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFound(f"Unknown user: {user_id}")

        by_course = modules_by_course(self.repository.list_modules([course_id]))
        module_ids = by_course.get(course_id, [])
        if not module_ids:
            raise NotEligible("Course has no modules", details={"course_id": course_id})
        completed_ids = self.repository.completed_module_ids(user_id)
        if not is_course_complete(course_id, by_course, completed_ids):
            done = sum(1 for module_id in module_ids if module_id in completed_ids)
            raise NotEligible(
                "Course is not complete",
                details={"course_id": course_id, "completed_modules": done, "module_count": len(module_ids)},
            )

        existing = self.repository.get_certificate(user_id, course_id)
        if existing is not None and existing.is_complete:
            return existing

        issued_at = now or utcnow()
        token = self.token_factory()
        number = (
            existing.certificate_number
            if existing is not None and existing.certificate_number
            else self.certificate_number(issued_at)
        )
        verification_url = self.verification_url(token)
        recipient_name = user.display_name or user.email or user.id

        pdf = render_certificate_pdf(
            recipient_name=recipient_name,
            course_title=course.title,
            issued_at=issued_at,
            certificate_number=number,
            verification_url=verification_url,
        )
        key = f"{user_id}/{course_id}/{token}.pdf"
        try:
            certificate_url = self.blob_store.put_object(key, pdf, PDF_CONTENT_TYPE)
        except BlobStoreError as exc:
            if not self.inline_fallback:
                raise StorageFailure(f"Could not store certificate document {key}") from exc
            certificate_url = f"data:{PDF_CONTENT_TYPE};base64," + base64.b64encode(pdf).decode("ascii")
            _log_json(
                "certificate.degraded_storage",
                {"user_id": user_id, "course_id": course_id, "key": key, "error": str(exc)},
                logging.WARNING,
            )

        candidate = Certificate(
            user_id=user_id,
            course_id=course_id,
            issued_at=issued_at,
            verification_token=token,
            certificate_number=number,
            certificate_url=certificate_url,
            completion_rate=100,
            metadata={
                "recipient_name": recipient_name,
                "course_title": course.title,
                "verification_url": verification_url,
                "issued_at": issued_at.isoformat(),
                "module_count": len(module_ids),
            },
        )
        stored = self.repository.insert_certificate_if_absent(candidate)
        if stored.verification_token == token:
            _log_json(
                "certificate.issued",
                {"user_id": user_id, "course_id": course_id, "certificate_number": stored.certificate_number},
            )
            return stored

        # Another request stored its certificate first; our uploaded document is unreferenced.
        _log_json(
            "certificate.issue_converged",
            {
                "user_id": user_id,
                "course_id": course_id,
                "certificate_number": stored.certificate_number,
                "orphaned_key": None if certificate_url.startswith("data:") else key,
            },
            logging.WARNING,
        )
        return stored

    def verify(self, token: Any) -> CertificateVerification:
        if not isinstance(token, str) or not _TOKEN_PATTERN.fullmatch(token):
            return CertificateVerification(valid=False)
        certificate = self.repository.get_certificate_by_token(token.lower())
        if certificate is None or not certificate.is_complete:
            return CertificateVerification(valid=False)
        return CertificateVerification(
            valid=True,
            issued_at=certificate.issued_at,
            completion_rate=certificate.completion_rate,
            certificate_url=certificate.certificate_url,
            certificate_number=certificate.certificate_number,
            recipient_name=certificate.metadata.get("recipient_name"),
            course_title=certificate.metadata.get("course_title"),
        )
