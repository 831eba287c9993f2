from kalina.context import MemoryStorage, Storage
from kalina.models import CodeSnippet, Conversation, Message
from kalina.state import AppState


def test_corrupt_storage_loads_empty():
    storage = MemoryStorage({
        "conversations": [{"title": "no messages list", "messages": "oops"}],
        "ltm": {"not": "a list"},
        "code_memory": [{"language": "py"}],
    })
    state = AppState(storage)
    assert state.conversations == []
    assert state.ltm == []
    assert state.code_memory == []
    assert state.generated_images == []


def test_unknown_keys_in_stored_records_are_ignored():
    storage = MemoryStorage({"conversations": [{"id": "c1", "title": "Old", "legacy": True, "messages": [{"role": "user", "content": "hi", "audio": 1}]}]})
    state = AppState(storage)
    assert state.conversations[0].messages[0].content == "hi"


def test_mutations_are_persisted(storage):
    state = AppState(storage)
    conv = state.add_conversation(Conversation(title="Plans"))
    state.update_messages(conv.id, lambda msgs: msgs + [Message(role="user", content="hello")])
    state.extend_ltm(["Name is Ana"])
    state.append_snippet(CodeSnippet(language="sh", code="ls", description="Lists files."))
    state.add_generated_images(["aW1n"])

    reloaded = AppState(storage)
    assert reloaded.conversations[0].title == "Plans"
    assert reloaded.conversations[0].messages[0].content == "hello"
    assert reloaded.ltm == ["Name is Ana"]
    assert reloaded.code_memory[0].code == "ls"
    assert reloaded.generated_images == ["aW1n"]


def test_file_storage_round_trip(tmp_path):
    state = AppState(Storage(tmp_path))
    state.add_conversation(Conversation(title="On disk"))
    assert (tmp_path / "conversations.json").exists()
    assert AppState(Storage(tmp_path)).conversations[0].title == "On disk"


def test_unreadable_file_loads_empty(tmp_path):
    (tmp_path / "ltm.json").write_text("{not json", encoding="utf-8")
    assert AppState(Storage(tmp_path)).ltm == []


def test_update_unknown_conversation_is_noop(state):
    assert state.update_conversation("missing", lambda c: c.update(title="x")) is None


def test_extend_ltm_dedups_verbatim(state):
    assert state.extend_ltm(["a", "b", "a"]) == ["a", "b"]
    assert state.extend_ltm(["b", "c"]) == ["c"]
    assert state.ltm == ["a", "b", "c"]


def test_sorted_conversations_pinned_first_then_newest(state):
    old = state.add_conversation(Conversation(title="old", created_at=1))
    new = state.add_conversation(Conversation(title="new", created_at=2))
    pinned = state.add_conversation(Conversation(title="pinned", created_at=0))
    state.toggle_pin(pinned.id)
    assert [c.title for c in state.sorted_conversations()] == ["pinned", "new", "old"]


def test_delete_active_conversation_clears_selection(state):
    conv = state.add_conversation(Conversation())
    assert state.delete_conversation(conv.id) is True
    assert state.active_conversation_id is None
    assert state.delete_conversation(conv.id) is False


def test_rename_ignores_blank_title(state):
    conv = state.add_conversation(Conversation(title="Keep"))
    assert state.rename_conversation(conv.id, "   ").title == "Keep"
    assert state.rename_conversation(conv.id, " New ").title == "New"
