import pytest

from ridehub.errors import InvalidAttachment, InvalidState, Unauthorized, UserNotFound
from ridehub.messaging import MessagePipeline
from ridehub.models import (
    SYSTEM_ADMIN_ID,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
    TicketStatus,
    UserRole,
)
from ridehub.promotion import TwoPhaseWriter


@pytest.fixture
def pipeline(store, blobs, scheduler):
    return MessagePipeline(store, TwoPhaseWriter(store, blobs, scheduler))


@pytest.fixture
def pair(add_user):
    return add_user(name="alice"), add_user(UserRole.DRIVER, name="dave")


def _message(store, message_id):
    return store.read(lambda s: s.get(Message, message_id))


def test_open_conversation_is_stable_for_a_pair(pipeline, pair):
    alice, dave = pair
    first = pipeline.open_conversation(alice, dave.user_id)
    second = pipeline.open_conversation(dave, alice.user_id)
    assert first.id == second.id
    assert (first.participant_a, first.participant_b) == tuple(sorted([alice.user_id, dave.user_id]))


def test_open_conversation_checks_partner(pipeline, pair):
    alice, _ = pair
    with pytest.raises(UserNotFound):
        pipeline.open_conversation(alice, "nobody")
    with pytest.raises(InvalidState):
        pipeline.open_conversation(alice, alice.user_id)


def test_text_message_is_sent_and_summarised(pipeline, store, pair):
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    msg = pipeline.send(alice, conv.id, "on my way")

    assert msg.status == MessageStatus.SENT
    assert msg.is_synced is True
    assert msg.receiver_id == dave.user_id
    summary = store.read(lambda s: s.get(Conversation, conv.id))
    assert summary.last_message == "on my way"
    assert summary.last_sender_id == alice.user_id


def test_image_visible_before_upload_then_promoted(pipeline, store, pair, photo, scheduler, blobs):
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    msg = pipeline.send(alice, conv.id, "", attachment=photo)

    stored = _message(store, msg.id)
    assert stored.type == MessageType.IMAGE
    assert stored.status == MessageStatus.UPLOADING
    assert stored.image_url.startswith("data:image/jpeg;base64,")
    assert stored.is_synced is False
    assert store.read(lambda s: s.get(Conversation, conv.id)).last_message == "[Image]"

    scheduler.run_all()

    promoted = _message(store, msg.id)
    assert promoted.image_url == f"https://blobs.test/chat/{msg.id}.jpg"
    assert promoted.status == MessageStatus.SENT
    assert promoted.is_synced is True
    assert promoted.upload_error is False
    assert f"chat/{msg.id}.jpg" in blobs.blobs


def test_uploaded_image_is_reduced(pipeline, pair, make_image, scheduler, blobs):
    from io import BytesIO
    from PIL import Image

    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    msg = pipeline.send(alice, conv.id, "", attachment=make_image(2400, 1200))
    scheduler.run_all()

    with Image.open(BytesIO(blobs.blobs[f"chat/{msg.id}.jpg"])) as img:
        assert img.format == "JPEG"
        assert max(img.size) == 800


def test_failed_upload_keeps_preview(store, broken_blobs, scheduler, pair, photo):
    pipeline = MessagePipeline(store, TwoPhaseWriter(store, broken_blobs, scheduler))
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    msg = pipeline.send(alice, conv.id, "receipt", attachment=photo)
    preview = _message(store, msg.id).image_url

    scheduler.run_all()

    failed = _message(store, msg.id)
    assert failed.status == MessageStatus.SENT
    assert failed.upload_error is True
    assert failed.image_url == preview


def test_bad_attachment_writes_nothing(pipeline, store, pair):
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    with pytest.raises(InvalidAttachment):
        pipeline.send(alice, conv.id, "", attachment=b"not an image")
    assert pipeline.list_messages(alice, conv.id) == []


def test_messages_ordered_and_private(pipeline, pair, add_user):
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    for text in ("one", "two", "three"):
        pipeline.send(alice, conv.id, text)

    assert [m.content for m in pipeline.list_messages(dave, conv.id)] == ["one", "two", "three"]
    outsider = add_user(name="eve")
    with pytest.raises(Unauthorized):
        pipeline.list_messages(outsider, conv.id)
    with pytest.raises(Unauthorized):
        pipeline.send(outsider, conv.id, "hi")


def test_admins_speak_as_support(pipeline, pair, add_user):
    alice, _ = pair
    cs = add_user(UserRole.ADMIN_CS, name="helper")
    conv = pipeline.open_conversation(cs, alice.user_id)
    assert SYSTEM_ADMIN_ID in (conv.participant_a, conv.participant_b)

    reply = pipeline.send(cs, conv.id, "how can we help?")
    assert reply.sender_id == SYSTEM_ADMIN_ID
    assert reply.real_sender_id == cs.user_id
    assert reply.is_admin_reply is True
    assert pipeline.open_conversation(alice, SYSTEM_ADMIN_ID).id == conv.id


def test_mark_read(pipeline, pair):
    alice, dave = pair
    conv = pipeline.open_conversation(alice, dave.user_id)
    pipeline.send(alice, conv.id, "a")
    pipeline.send(alice, conv.id, "b")
    pipeline.send(dave, conv.id, "c")

    assert pipeline.mark_read(dave, conv.id) == 2
    assert pipeline.mark_read(dave, conv.id) == 0
    read = {m.content: m.is_read for m in pipeline.list_messages(dave, conv.id)}
    assert read == {"a": True, "b": True, "c": False}


def test_broadcast(pipeline, pair, super_admin):
    alice, _ = pair
    msg = pipeline.broadcast(super_admin, "Typhoon signal 8", title="Notice")
    assert msg.type == MessageType.SYSTEM
    assert msg.receiver_id == "ALL"
    assert msg.content == "【Notice】\nTyphoon signal 8"
    assert [m.id for m in pipeline.list_messages(alice, msg.conversation_id)] == [msg.id]
    with pytest.raises(Unauthorized):
        pipeline.broadcast(alice, "spam")


def test_ticket_flow(pipeline, pair, add_user):
    alice, _ = pair
    cs = add_user(UserRole.ADMIN_CS, name="helper")
    ticket = pipeline.create_ticket(alice, "Driver was late", "complaint")
    assert ticket.status == TicketStatus.OPEN
    assert ticket.creator_role == UserRole.PASSENGER

    with pytest.raises(Unauthorized):
        pipeline.claim_ticket(alice, ticket.id)
    claimed = pipeline.claim_ticket(cs, ticket.id)
    assert claimed.status == TicketStatus.ASSIGNED
    assert claimed.assignee_id == cs.user_id
    with pytest.raises(InvalidState):
        pipeline.claim_ticket(cs, ticket.id)

    assert pipeline.resolve_ticket(alice, ticket.id).status == TicketStatus.RESOLVED
    assert [t.id for t in pipeline.list_tickets(alice)] == [ticket.id]
