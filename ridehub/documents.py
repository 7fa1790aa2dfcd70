from __future__ import annotations

import logging
from typing import List, Optional

from sqlmodel import Session, select

from .database import Store, cas_update
from .errors import InvalidState, NotFound, Unauthorized
from .identity import Identity, require, require_admin
from .models import DocStatus, DriverDocument, DriverStatus, UserRole, utcnow
from .promotion import TwoPhaseWriter, prepare_image
from .wallet import load_user

logger = logging.getLogger(__name__)

# documents need to stay legible, so they get more pixels than chat images
DOC_IMAGE_MAX_SIDE = 1024
DOC_IMAGE_QUALITY = 60


class DocumentDesk:
    """Driver document submission and the admin review around it."""

    def __init__(self, store: Store, writer: TwoPhaseWriter) -> None:
        self.store = store
        self.writer = writer

    def submit(
        self,
        identity: Optional[Identity],
        doc_type: str,
        attachment: Optional[bytes] = None,
        number: Optional[str] = None,
        expiry_date: Optional[str] = None,
    ) -> DriverDocument:
        identity = require(identity)
        if identity.role != UserRole.DRIVER:
            raise Unauthorized("only drivers submit documents")
        doc_type = doc_type.strip()
        if not doc_type:
            raise InvalidState("document type is required")
        asset = prepare_image(attachment, DOC_IMAGE_MAX_SIDE, DOC_IMAGE_QUALITY) if attachment else None

        def durable(session: Session) -> DriverDocument:
            doc = session.exec(select(DriverDocument).where(
                DriverDocument.user_id == identity.user_id,
                DriverDocument.doc_type == doc_type,
            ).with_for_update()).first()
            if doc is None:
                doc = DriverDocument(user_id=identity.user_id, doc_type=doc_type)
            if asset is not None:
                doc.url = asset.preview
                doc.upload_error = False
            if number:
                doc.number = number
            if expiry_date:
                doc.expiry_date = expiry_date
            doc.status = DocStatus.PENDING
            doc.reject_reason = None
            doc.updated_at = utcnow()
            session.add(doc)

            user = load_user(session, identity.user_id)
            if user.driver_status in (None, DriverStatus.PENDING_DOCS, DriverStatus.REJECTED):
                cas_update(session, user, driver_status=DriverStatus.UNDER_REVIEW, updated_at=utcnow())
            return doc

        preview = asset.preview if asset else None

        def promoted(session: Session, doc: DriverDocument, url: str) -> None:
            row = session.get(DriverDocument, doc.id)
            # a newer submission owns the row now
            if row is None or row.url != preview:
                return
            row.url = url
            session.add(row)

        def failed(session: Session, doc: DriverDocument) -> None:
            row = session.get(DriverDocument, doc.id)
            if row is None or row.url != preview:
                return
            row.upload_error = True
            session.add(row)

        doc = self.writer.write(
            durable,
            asset,
            lambda d: f"docs/{d.user_id}/{d.doc_type}.jpg",
            promoted,
            failed,
        )
        logger.info("driver %s submitted %s", identity.user_id, doc_type)
        return doc

    def list_for(self, identity: Optional[Identity], user_id: str) -> List[DriverDocument]:
        identity = require(identity)
        if identity.user_id != user_id and not identity.is_admin:
            raise Unauthorized("not your documents")
        return self.store.read(lambda s: list(s.exec(
            select(DriverDocument).where(DriverDocument.user_id == user_id).order_by(DriverDocument.doc_type)
        ).all()))

    def review(
        self,
        identity: Optional[Identity],
        user_id: str,
        doc_type: str,
        status: DocStatus,
        reason: Optional[str] = None,
    ) -> DriverDocument:
        require_admin(identity)
        if status not in (DocStatus.APPROVED, DocStatus.REJECTED):
            raise InvalidState("a review either approves or rejects")

        def unit(session: Session) -> DriverDocument:
            doc = session.exec(select(DriverDocument).where(
                DriverDocument.user_id == user_id,
                DriverDocument.doc_type == doc_type,
            ).with_for_update()).first()
            if doc is None:
                raise NotFound("Document not found")
            doc.status = status
            doc.reject_reason = reason if status == DocStatus.REJECTED else None
            doc.reviewed_at = utcnow()
            session.add(doc)
            return doc

        return self.store.run_transaction(unit)

    def approve_driver(self, identity: Optional[Identity], user_id: str):
        return self._set_driver_status(identity, user_id, DriverStatus.APPROVED, None)

    def reject_driver(self, identity: Optional[Identity], user_id: str, reason: str):
        return self._set_driver_status(identity, user_id, DriverStatus.REJECTED, reason)

    def _set_driver_status(self, identity, user_id, status, reason):
        require_admin(identity)

        def unit(session: Session):
            user = load_user(session, user_id)
            if user.role != UserRole.DRIVER:
                raise InvalidState("user is not a driver")
            cas_update(session, user, driver_status=status, rejection_reason=reason, updated_at=utcnow())
            return user

        user = self.store.run_transaction(unit)
        logger.info("driver %s -> %s", user_id, status.value)
        return user
