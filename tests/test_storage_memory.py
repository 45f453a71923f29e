import uuid
from datetime import datetime, timedelta

import pytest

from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import Message, UsageRecord


def _message(chat_id, role="user", text="hi", **kwargs):
    return Message(
        id=str(uuid.uuid4()),
        chat_id=chat_id,
        role=role,
        parts=[{"type": "text", "text": text}],
        **kwargs,
    )


def _store_with_chat():
    store = MemoryStore()
    user = store.create_user("owner@example.com")
    chat = store.save_chat(str(uuid.uuid4()), user.id, "A chat")
    return store, user, chat


def test_save_messages_is_all_or_nothing():
    store, _, chat = _store_with_chat()
    good = _message(chat.id)
    orphan = _message(str(uuid.uuid4()))

    with pytest.raises(ConstraintViolation):
        store.save_messages([good, orphan])
    assert store.list_messages_by_chat_id(chat.id) == []

    store.save_messages([good])
    with pytest.raises(ConstraintViolation):
        store.save_messages([_message(chat.id), good])
    assert len(store.list_messages_by_chat_id(chat.id)) == 1


def test_duplicate_chat_and_email_are_rejected():
    store, user, chat = _store_with_chat()
    with pytest.raises(ConstraintViolation):
        store.save_chat(chat.id, user.id, "again")
    with pytest.raises(ConstraintViolation):
        store.create_user("owner@example.com")
    with pytest.raises(ConstraintViolation):
        store.save_chat(str(uuid.uuid4()), "ghost", "orphan chat")


def test_counts_use_trailing_window_and_user_role():
    store, user, chat = _store_with_chat()
    old = datetime.utcnow() - timedelta(hours=30)
    store.save_messages(
        [
            _message(chat.id),
            _message(chat.id, created_at=old),
            _message(chat.id, role="assistant"),
        ]
    )
    assert store.count_messages_by_user(user.id) == 1
    assert store.count_messages_by_user(user.id, window_hours=48) == 2

    store.save_usage_log(UsageRecord(user_id=user.id, model="grok-4"))
    store.save_usage_log(UsageRecord(user_id=user.id, model="grok-4", created_at=old))
    assert store.count_usage_by_user(user.id) == 1
    assert [row.id for row in store.usage_logs if row.user_id == user.id] == [1, 2]


def test_delete_chat_removes_messages_and_streams():
    store, _, chat = _store_with_chat()
    store.save_messages([_message(chat.id)])
    store.create_stream_id(str(uuid.uuid4()), chat.id)

    deleted = store.delete_chat_by_id(chat.id)

    assert deleted.id == chat.id
    assert store.get_chat_by_id(chat.id) is None
    assert store.list_messages_by_chat_id(chat.id) == []
    assert store.list_stream_ids_by_chat_id(chat.id) == []
    assert store.delete_chat_by_id(chat.id) is None


def test_stream_ids_are_scoped_to_existing_chats():
    store, _, chat = _store_with_chat()
    first = store.create_stream_id(str(uuid.uuid4()), chat.id)
    second = store.create_stream_id(str(uuid.uuid4()), chat.id)
    assert set(store.list_stream_ids_by_chat_id(chat.id)) == {first.id, second.id}
    with pytest.raises(ConstraintViolation):
        store.create_stream_id(str(uuid.uuid4()), "missing-chat")


def test_document_versions_return_latest():
    store, user, _ = _store_with_chat()
    store.save_document("doc-1", user.id, "Essay", "text", "v1")
    store.save_document("doc-1", user.id, "Essay", "text", "v2")
    assert store.get_document_by_id("doc-1").content == "v2"
    assert store.get_document_by_id("missing") is None


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    chat = store.save_chat(str(uuid.uuid4()), user.id, "Persisted")
    store.save_messages([_message(chat.id, text="remember me")])
    session = store.create_session(user.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_email("persist@example.com").id == user.id
    assert reloaded.get_chat_by_id(chat.id).title == "Persisted"
    messages = reloaded.list_messages_by_chat_id(chat.id)
    assert messages[0].parts == [{"type": "text", "text": "remember me"}]
    assert reloaded.get_session(session.id).user_id == user.id
