"""
Conversations, messages, broadcasts and support tickets.

A message with an image is visible the moment ``send`` returns: its
``image_url`` holds an inline preview until the background upload swaps in
the permanent url (or flags ``upload_error``).
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, or_, select

from .database import Store, cas_update
from .errors import InvalidState, NotFound, Unauthorized, UserNotFound
from .identity import Identity, require, require_admin, require_role
from .models import (
    BROADCAST_RECEIVER_ID,
    SYSTEM_ADMIN_ID,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
    Ticket,
    TicketStatus,
    User,
    UserRole,
    utcnow,
)
from .promotion import PreparedAsset, TwoPhaseWriter, prepare_image

logger = logging.getLogger(__name__)

CHAT_IMAGE_MAX_SIDE = 800
CHAT_IMAGE_QUALITY = 50


def participant_pair(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def _summary(content: str, asset: Optional[PreparedAsset]) -> str:
    if content:
        return content[:200]
    return "[Image]" if asset is not None else ""


class MessagePipeline:
    def __init__(self, store: Store, writer: TwoPhaseWriter) -> None:
        self.store = store
        self.writer = writer

    # --- conversations ---------------------------------------------------

    def _find_or_create(
        self, session: Session, a: str, b: str, order_id: Optional[str], kind: str
    ) -> Conversation:
        first, second = participant_pair(a, b)
        conv = session.exec(
            select(Conversation).where(
                Conversation.participant_a == first, Conversation.participant_b == second
            )
        ).first()
        if conv is None:
            conv = Conversation(participant_a=first, participant_b=second, order_id=order_id, type=kind)
            session.add(conv)
            session.flush()
        elif order_id and conv.order_id != order_id:
            conv.order_id = order_id
            session.add(conv)
        return conv

    def _pair_unit(self, fn):
        # two callers opening the same pair at once: the loser reads the winner's row
        try:
            return self.store.run_transaction(fn)
        except IntegrityError:
            logger.info("conversation created concurrently, re-reading")
            return self.store.run_transaction(fn)

    def open_conversation(
        self, identity: Optional[Identity], partner_id: str, order_id: Optional[str] = None
    ) -> Conversation:
        identity = require(identity)
        speaker = identity.speaker_id
        if partner_id == speaker:
            raise InvalidState("cannot open a conversation with yourself")

        def unit(session: Session) -> Conversation:
            if partner_id != SYSTEM_ADMIN_ID and session.get(User, partner_id) is None:
                raise UserNotFound(f"user {partner_id} not found")
            return self._find_or_create(session, speaker, partner_id, order_id, "order" if order_id else "direct")

        return self._pair_unit(unit)

    def list_conversations(self, identity: Optional[Identity]) -> List[Conversation]:
        identity = require(identity)
        speaker = identity.speaker_id
        return self.store.read(lambda s: list(s.exec(
            select(Conversation)
            .where(or_(Conversation.participant_a == speaker, Conversation.participant_b == speaker))
            .order_by(Conversation.updated_at.desc())
        ).all()))

    # --- messages --------------------------------------------------------

    def send(
        self,
        identity: Optional[Identity],
        conversation_id: str,
        content: str = "",
        attachment: Optional[bytes] = None,
        ticket_id: Optional[str] = None,
    ) -> Message:
        identity = require(identity)
        content = (content or "").strip()
        if not content and not attachment:
            raise InvalidState("message is empty")
        asset = prepare_image(attachment, CHAT_IMAGE_MAX_SIDE, CHAT_IMAGE_QUALITY) if attachment else None

        def durable(session: Session) -> Message:
            conv = session.exec(
                select(Conversation).where(Conversation.id == conversation_id).with_for_update()
            ).first()
            if conv is None:
                raise NotFound("Conversation not found")
            speaker = identity.speaker_id
            if speaker not in (conv.participant_a, conv.participant_b):
                raise Unauthorized("not a participant of this conversation")
            receiver = conv.participant_b if speaker == conv.participant_a else conv.participant_a
            now = utcnow()
            msg = Message(
                conversation_id=conv.id,
                sender_id=speaker,
                real_sender_id=identity.user_id,
                receiver_id=receiver,
                type=MessageType.IMAGE if asset else MessageType.TEXT,
                content=content,
                image_url=asset.preview if asset else "",
                order_id=conv.order_id,
                ticket_id=ticket_id,
                status=MessageStatus.UPLOADING if asset else MessageStatus.SENT,
                is_synced=asset is None,
                is_admin_reply=identity.is_admin,
                created_at=now,
            )
            session.add(msg)
            conv.last_message = _summary(content, asset)
            conv.last_sender_id = speaker
            conv.updated_at = now
            session.add(conv)
            return msg

        msg = self.writer.write(
            durable,
            asset,
            lambda m: f"chat/{m.id}.jpg",
            self._promoted,
            self._failed,
        )
        logger.info("message %s sent in %s (%s)", msg.id, conversation_id, msg.status.value)
        return msg

    @staticmethod
    def _promoted(session: Session, msg: Message, url: str) -> None:
        row = session.get(Message, msg.id)
        if row is None:
            return
        row.image_url = url
        row.status = MessageStatus.SENT
        row.is_synced = True
        session.add(row)

    @staticmethod
    def _failed(session: Session, msg: Message) -> None:
        row = session.get(Message, msg.id)
        if row is None:
            return
        row.status = MessageStatus.SENT
        row.upload_error = True
        session.add(row)

    def broadcast(self, identity: Optional[Identity], content: str, title: Optional[str] = None) -> Message:
        identity = require_role(identity, UserRole.ADMIN_SUPER, UserRole.ADMIN_CS)
        body = f"【{title}】\n{content}" if title else content

        def unit(session: Session) -> Message:
            conv = self._find_or_create(session, SYSTEM_ADMIN_ID, BROADCAST_RECEIVER_ID, None, "broadcast")
            now = utcnow()
            msg = Message(
                conversation_id=conv.id,
                sender_id=SYSTEM_ADMIN_ID,
                real_sender_id=identity.user_id,
                receiver_id=BROADCAST_RECEIVER_ID,
                type=MessageType.SYSTEM,
                content=body,
                is_admin_reply=True,
                created_at=now,
            )
            session.add(msg)
            conv.last_message = body[:200]
            conv.last_sender_id = SYSTEM_ADMIN_ID
            conv.updated_at = now
            session.add(conv)
            return msg

        msg = self._pair_unit(unit)
        logger.info("broadcast %s by %s", msg.id, identity.user_id)
        return msg

    def mark_read(self, identity: Optional[Identity], conversation_id: str) -> int:
        """Mark every unread message addressed to the caller as read."""
        identity = require(identity)

        def unit(session: Session) -> int:
            unread = session.exec(select(Message).where(
                Message.conversation_id == conversation_id,
                Message.receiver_id == identity.speaker_id,
                Message.is_read == False,  # noqa: E712
            )).all()
            for msg in unread:
                msg.is_read = True
                session.add(msg)
            return len(unread)

        return self.store.run_transaction(unit)

    def list_messages(self, identity: Optional[Identity], conversation_id: str, limit: int = 200) -> List[Message]:
        identity = require(identity)

        def query(session: Session) -> List[Message]:
            conv = session.get(Conversation, conversation_id)
            if conv is None:
                raise NotFound("Conversation not found")
            public = conv.participant_b == BROADCAST_RECEIVER_ID or conv.participant_a == BROADCAST_RECEIVER_ID
            if not public and identity.speaker_id not in (conv.participant_a, conv.participant_b):
                raise Unauthorized("not a participant of this conversation")
            return list(session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
                .limit(limit)
            ).all())

        return self.store.read(query)

    # --- tickets ---------------------------------------------------------

    def create_ticket(
        self, identity: Optional[Identity], subject: str, category: str, order_id: Optional[str] = None
    ) -> Ticket:
        identity = require(identity)

        def unit(session: Session) -> Ticket:
            ticket = Ticket(
                creator_id=identity.user_id,
                creator_name=identity.name,
                creator_role=identity.role,
                category=category,
                subject=subject,
                order_id=order_id,
            )
            session.add(ticket)
            return ticket

        ticket = self.store.run_transaction(unit)
        logger.info("ticket %s opened by %s", ticket.id, identity.user_id)
        return ticket

    def _load_ticket(self, session: Session, ticket_id: str) -> Ticket:
        ticket = session.exec(select(Ticket).where(Ticket.id == ticket_id).with_for_update()).first()
        if ticket is None:
            raise NotFound("Ticket not found")
        return ticket

    def claim_ticket(self, identity: Optional[Identity], ticket_id: str) -> Ticket:
        identity = require_admin(identity)

        def unit(session: Session) -> Ticket:
            ticket = self._load_ticket(session, ticket_id)
            if ticket.status != TicketStatus.OPEN:
                raise InvalidState(f"ticket is {ticket.status.value}")
            cas_update(
                session, ticket,
                status=TicketStatus.ASSIGNED,
                assignee_id=identity.user_id,
                assignee_name=identity.name,
                updated_at=utcnow(),
            )
            return ticket

        return self.store.run_transaction(unit)

    def resolve_ticket(self, identity: Optional[Identity], ticket_id: str) -> Ticket:
        identity = require(identity)

        def unit(session: Session) -> Ticket:
            ticket = self._load_ticket(session, ticket_id)
            if not identity.is_admin and ticket.creator_id != identity.user_id:
                raise Unauthorized("not your ticket")
            if ticket.status == TicketStatus.RESOLVED:
                return ticket
            cas_update(session, ticket, status=TicketStatus.RESOLVED, updated_at=utcnow())
            return ticket

        return self.store.run_transaction(unit)

    def list_tickets(self, identity: Optional[Identity]) -> List[Ticket]:
        identity = require(identity)

        def query(session: Session) -> List[Ticket]:
            stmt = select(Ticket)
            if not identity.is_admin:
                stmt = stmt.where(Ticket.creator_id == identity.user_id)
            return list(session.exec(stmt.order_by(Ticket.updated_at.desc())).all())

        return self.store.read(query)
