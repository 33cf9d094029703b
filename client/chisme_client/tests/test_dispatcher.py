"""
Event dispatcher / reconciler tests.

Covers:
  - optimistic send confirmed by its echo (nonce and content matching)
  - idempotent replay of inbound frames
  - reaction toggle symmetry, pin idempotence, delete of unknown ids
  - history pages merged by id without duplicates
  - typing cleared by a new message, signal frames handed over untouched
  - malformed frames dropped without raising
"""

from datetime import timedelta

import pytest

from chisme_client.core.errors import StaleReferenceError
from chisme_client.schemas.message import MessageStatus
from chisme_client.schemas.mutation import (
    DeleteMessage,
    DiscardPending,
    EditMessage,
    PinMessage,
    RestoreMessage,
    SendMessage,
    ToggleReaction,
)
from chisme_client.tests.conftest import BASE_TIME, SELF_ID, make_message, new_message_frame
from chisme_client.websocket.dispatcher import merge_message


def _send(nonce: str = "n1", content: str = "hello", channel_id: str = "c1") -> SendMessage:
    return SendMessage(
        nonce=nonce,
        channel_id=channel_id,
        user_id=SELF_ID,
        user_name="me",
        content=content,
        created_at=BASE_TIME,
    )


def _snapshot(store, channel_id: str = "c1"):
    return [m.model_dump() for m in store.messages(channel_id)]


# ---------------------------------------------------------------------------
# Optimistic send and reconciliation
# ---------------------------------------------------------------------------


def test_optimistic_send_is_pending(dispatcher, store):
    message = dispatcher.apply_optimistic(_send())
    assert message.status is MessageStatus.PENDING
    assert store.messages("c1") == [message]


def test_echo_with_nonce_confirms_pending(dispatcher, store):
    dispatcher.apply_optimistic(_send())
    dispatcher.apply_inbound(new_message_frame(id="srv-1", user_id=SELF_ID, content="hello", nonce="n1"))

    (message,) = store.messages("c1")
    assert message.id == "srv-1"
    assert message.status is MessageStatus.CONFIRMED
    assert store.get_message("pending:n1") is None


def test_echo_without_nonce_matches_author_and_content(dispatcher, store):
    dispatcher.apply_optimistic(_send(nonce="n1", content="first"))
    dispatcher.apply_optimistic(_send(nonce="n2", content="second"))
    dispatcher.apply_inbound(new_message_frame(id="srv-2", user_id=SELF_ID, content="second", minutes=1))

    ids = [m.id for m in store.messages("c1")]
    assert ids == ["pending:n1", "srv-2"]


def test_echo_takes_server_timestamp(dispatcher, store):
    dispatcher.apply_optimistic(_send())
    dispatcher.apply_inbound(new_message_frame(id="srv-1", user_id=SELF_ID, content="hello", minutes=3, nonce="n1"))
    assert store.get_message("srv-1").created_at == BASE_TIME + timedelta(minutes=3)


def test_replaying_new_message_is_idempotent(dispatcher, store):
    frame = new_message_frame(id="m1")
    dispatcher.apply_inbound(frame)
    before = _snapshot(store)
    dispatcher.apply_inbound(dict(frame))
    assert _snapshot(store) == before


def test_others_messages_do_not_confirm_our_pending(dispatcher, store):
    dispatcher.apply_optimistic(_send(content="hello"))
    dispatcher.apply_inbound(new_message_frame(id="m9", user_id="user-2", content="hello"))
    assert {m.id for m in store.messages("c1")} == {"pending:n1", "m9"}


def test_messages_stay_in_created_order(dispatcher, store):
    dispatcher.apply_inbound(new_message_frame(id="late", minutes=5))
    dispatcher.apply_inbound(new_message_frame(id="early", minutes=1))
    assert [m.id for m in store.messages("c1")] == ["early", "late"]


def test_discard_pending_by_nonce(dispatcher, store):
    dispatcher.apply_optimistic(_send(nonce="n1"))
    dispatcher.apply_optimistic(_send(nonce="n2", content="again"))
    assert dispatcher.apply_optimistic(DiscardPending(channel_id="c1", nonce="n1")) == 1
    assert [m.nonce for m in store.messages("c1")] == ["n2"]


def test_merge_keeps_local_reactions_when_payload_has_none():
    existing = make_message(reactions={"👍": {"a"}}, pinned_by="mod")
    incoming = make_message(content="edited elsewhere")
    merged = merge_message(existing, incoming)
    assert merged.content == "edited elsewhere"
    assert merged.reactions == {"👍": {"a"}}
    assert merged.pinned_by == "mod"


def test_merge_prefers_server_reactions_when_present():
    existing = make_message(reactions={"👍": {"a"}})
    incoming = make_message(reactions=[{"emoji": "🎉", "count": 1, "user_ids": ["b"]}])
    assert merge_message(existing, incoming).reactions == {"🎉": {"b"}}


# ---------------------------------------------------------------------------
# Edits, deletes, restores
# ---------------------------------------------------------------------------


def test_edit_applies_and_returns_previous(dispatcher, store):
    store.put_message(make_message(content="old"))
    previous = dispatcher.apply_optimistic(EditMessage(message_id="m1", content="new", edited_at=BASE_TIME))
    assert previous.content == "old"
    assert store.get_message("m1").content == "new"


def test_edit_unknown_message_raises_stale(dispatcher):
    with pytest.raises(StaleReferenceError):
        dispatcher.apply_optimistic(EditMessage(message_id="nope", content="x", edited_at=None))


def test_inbound_edit_of_unknown_message_is_ignored(dispatcher, store):
    dispatcher.apply_inbound({"type": "message_edited", "id": "ghost", "content": "x"})
    assert store.channels == {}


def test_delete_unknown_id_is_a_silent_noop(dispatcher, store):
    store.put_message(make_message())
    before = _snapshot(store)
    assert dispatcher.apply_optimistic(DeleteMessage(message_id="ghost")) is None
    dispatcher.apply_inbound({"type": "message_deleted", "id": "ghost"})
    assert _snapshot(store) == before


def test_delete_then_restore(dispatcher, store):
    store.put_message(make_message("m1", minutes=0))
    store.put_message(make_message("m2", minutes=1))
    removed = dispatcher.apply_optimistic(DeleteMessage(message_id="m1"))
    dispatcher.apply_optimistic(RestoreMessage(message=removed))
    assert [m.id for m in store.messages("c1")] == ["m1", "m2"]


# ---------------------------------------------------------------------------
# Reactions and pins
# ---------------------------------------------------------------------------


def test_reaction_toggle_twice_restores_prior_state(dispatcher, store):
    store.put_message(make_message(reactions={"👍": {"a", "b"}}))
    before = store.get_message("m1").model_copy(deep=True)

    toggle = ToggleReaction(message_id="m1", emoji="👍", user_id=SELF_ID)
    assert dispatcher.apply_optimistic(toggle) is True
    assert store.get_message("m1").reaction_count("👍") == 3
    assert dispatcher.apply_optimistic(toggle) is False

    after = store.get_message("m1")
    assert after.reactions == before.reactions
    assert after.reaction_count("👍") == 2


def test_toggling_a_new_emoji_twice_leaves_no_empty_group(dispatcher, store):
    store.put_message(make_message())
    toggle = ToggleReaction(message_id="m1", emoji="🎉", user_id=SELF_ID)
    dispatcher.apply_optimistic(toggle)
    dispatcher.apply_optimistic(toggle)
    assert store.get_message("m1").reactions == {}


def test_inbound_reaction_add_is_idempotent(dispatcher, store):
    store.put_message(make_message())
    frame = {"type": "reaction_add", "message_id": "m1", "emoji": "👍", "user_id": "u2"}
    dispatcher.apply_inbound(frame)
    dispatcher.apply_inbound(frame)
    assert store.get_message("m1").reaction_count("👍") == 1

    dispatcher.apply_inbound({"type": "reaction_remove", "message_id": "m1", "emoji": "👍", "user_id": "u2"})
    assert store.get_message("m1").reactions == {}


def test_pinning_a_pinned_message_changes_nothing(dispatcher, store):
    store.put_message(make_message())
    first = PinMessage(message_id="m1", pinned=True, pinned_at=BASE_TIME, pinned_by=SELF_ID)
    assert dispatcher.apply_optimistic(first) is True

    again = PinMessage(message_id="m1", pinned=True, pinned_at=BASE_TIME + timedelta(hours=1), pinned_by="other")
    assert dispatcher.apply_optimistic(again) is False
    assert store.get_message("m1").pinned_at == BASE_TIME
    assert store.get_message("m1").pinned_by == SELF_ID


def test_inbound_unpin(dispatcher, store):
    store.put_message(make_message(pinned_at=BASE_TIME, pinned_by="mod"))
    dispatcher.apply_inbound({"type": "message_pinned", "message_id": "m1", "pinned": False})
    assert store.get_message("m1").pinned_at is None


# ---------------------------------------------------------------------------
# History pages
# ---------------------------------------------------------------------------


def test_history_page_dedupes_by_id(dispatcher, store):
    dispatcher.apply_inbound(new_message_frame(id="m1", minutes=0))
    dispatcher.apply_inbound(new_message_frame(id="m2", minutes=1))

    page = [make_message("m1", minutes=0), make_message("m2", minutes=1), make_message("m3", minutes=2)]
    dispatcher.apply_inbound({"type": "history_page", "channel_id": "c1", "messages": page, "has_more": False})
    dispatcher.apply_inbound({"type": "history_page", "channel_id": "c1", "messages": page})

    assert [m.id for m in store.messages("c1")] == ["m1", "m2", "m3"]
    history = store.history("c1")
    assert history.loaded and not history.has_more


def test_history_page_confirms_pending_send(dispatcher, store):
    dispatcher.apply_optimistic(_send(content="hello"))
    page = [make_message("srv-1", user_id=SELF_ID, content="hello")]
    dispatcher.apply_inbound({"type": "history_page", "channel_id": "c1", "messages": page})
    assert [m.id for m in store.messages("c1")] == ["srv-1"]


def test_older_lookalike_in_page_leaves_pending_send_alone(dispatcher, store):
    pending = dispatcher.apply_optimistic(_send(content="hello"))
    older = make_message("srv-old", user_id=SELF_ID, content="hello", minutes=-30)
    dispatcher.apply_inbound({"type": "history_page", "channel_id": "c1", "messages": [older]})

    assert [m.id for m in store.messages("c1")] == ["srv-old", pending.id]
    assert store.get_message(pending.id).is_pending

    dispatcher.apply_inbound(new_message_frame(id="srv-new", user_id=SELF_ID, content="hello"))
    assert [m.id for m in store.messages("c1")] == ["srv-old", "srv-new"]


# ---------------------------------------------------------------------------
# Presence, timeouts and misc frames
# ---------------------------------------------------------------------------


def test_new_message_clears_senders_typing(dispatcher, presence):
    dispatcher.apply_inbound({"type": "typing_start", "channel_id": "c1", "user_id": "user-2", "user_name": "alice"})
    assert presence.is_typing("c1", "user-2")
    dispatcher.apply_inbound(new_message_frame(user_id="user-2"))
    assert not presence.is_typing("c1", "user-2")


def test_own_typing_echo_is_ignored(dispatcher, presence):
    dispatcher.apply_inbound({"type": "typing_start", "channel_id": "c1", "user_id": SELF_ID, "user_name": "me"})
    assert presence.typing_in("c1") == {}


def test_voice_frames_update_roster(dispatcher, presence):
    dispatcher.apply_inbound({"type": "voice_members", "channel_id": "v1", "members": [{"user_id": "a", "user_name": "A"}]})
    dispatcher.apply_inbound({"type": "voice_peer_joined", "channel_id": "v1", "user_id": "b", "user_name": "B"})
    dispatcher.apply_inbound({"type": "voice_talking", "channel_id": "v1", "user_id": "b", "talking": True})
    assert {p.user_id for p in presence.voice_members("v1")} == {"a", "b"}
    assert presence.talking_in("v1") == {"b"}

    dispatcher.apply_inbound({"type": "voice_peer_left", "channel_id": "v1", "user_id": "b"})
    assert [p.user_id for p in presence.voice_members("v1")] == ["a"]
    assert presence.talking_in("v1") == set()


def test_connection_lost_clears_our_voice_channel(dispatcher, presence):
    dispatcher.apply_inbound({"type": "voice_members", "channel_id": "v1", "members": [{"user_id": SELF_ID}, {"user_id": "a"}]})
    dispatcher.apply_inbound({"type": "connection_lost"})
    assert presence.voice_members("v1") == []


def test_own_timeout_starts_countdown(dispatcher, store, wall_clock):
    dispatcher.apply_inbound({"type": "user_timedout", "user_id": "someone-else", "duration_seconds": 60})
    assert not store.timeout.is_active()

    dispatcher.apply_inbound({"type": "user_timedout", "user_id": SELF_ID, "duration_seconds": 60, "reason": "spam"})
    assert store.timeout.is_active()
    assert store.timeout.reason == "spam"
    wall_clock.advance(61)
    assert not store.timeout.is_active()


def test_online_roster(dispatcher, store):
    dispatcher.apply_inbound({"type": "user_joined", "channel_id": "c1", "user_id": "a", "user_name": "A"})
    dispatcher.apply_inbound({"type": "user_joined", "channel_id": "c1", "user_id": "b", "user_name": "B"})
    dispatcher.apply_inbound({"type": "user_left", "channel_id": "c1", "user_id": "a", "user_name": "A"})
    assert store.online["c1"] == {"b": "B"}


def test_signal_frames_are_passed_through_untouched(dispatcher, store):
    received = []
    dispatcher.add_signal_listener(received.append)
    frame = {"type": "voice_offer", "channel_id": "v1", "from_user_id": "a", "sdp": "v=0\r\n..."}
    dispatcher.apply_inbound(frame)
    assert received == [frame]
    assert received[0] is frame
    assert store.channels == {}


def test_error_frame_is_recorded(dispatcher, store):
    seen = []
    store.subscribe(lambda kind, channel_id: seen.append(kind))
    dispatcher.apply_inbound({"type": "error", "message": "Insufficient permissions"})
    assert store.last_error == "Insufficient permissions"
    assert seen == ["error"]


def test_malformed_frames_are_dropped(dispatcher, store):
    dispatcher.apply_inbound({"type": "new_message", "id": "m1"})
    dispatcher.apply_inbound({"type": "reaction_add"})
    dispatcher.apply_inbound({"type": "no_such_event"})
    dispatcher.apply_inbound({})
    assert store.channels == {}


def test_unsubscribe_stops_notifications(dispatcher, store):
    seen = []
    unsubscribe = store.subscribe(lambda kind, channel_id: seen.append((kind, channel_id)))
    dispatcher.apply_inbound(new_message_frame(id="m1"))
    unsubscribe()
    dispatcher.apply_inbound(new_message_frame(id="m2"))
    assert seen == [("new_message", "c1")]
