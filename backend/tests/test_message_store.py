"""Unit tests for the DuckDB message store."""
import pytest

from app.chat.errors import PersistenceError
from app.chat.schemas import IdentityKind
from app.chat.store import MAX_PAGE_SIZE, MessageStore


@pytest.fixture
def store():
    """Create a message store backed by an in-memory database."""
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


class TestAppend:
    def test_assigns_id_and_timestamp(self, store):
        message = store.append("B1", "V1", "Vera", "Hello")
        assert len(message.id) == 32
        assert message.createdAt > 0
        assert message.businessId == "B1"
        assert message.visitorId == "V1"
        assert message.from_ == "Vera"
        assert message.senderKind == IdentityKind.VISITOR

    def test_ids_are_unique(self, store):
        ids = {store.append("B1", "V1", "Vera", f"m{i}").id for i in range(20)}
        assert len(ids) == 20

    def test_created_at_increases_per_business(self, store):
        stamps = [
            store.append("B1", f"V{i % 3}", "Vera", "tick").createdAt
            for i in range(50)
        ]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_created_at_continues_after_reopen(self, tmp_path):
        path = str(tmp_path / "messages.duckdb")
        first = MessageStore(db_path=path)
        last = first.append("B1", "V1", "Vera", "before restart").createdAt
        first.close()

        second = MessageStore(db_path=path)
        assert second.append("B1", "V1", "Vera", "after restart").createdAt > last
        assert [m.text for m in second.list_by_room("B1", "V1")] == [
            "before restart", "after restart"
        ]
        second.close()

    def test_write_failure_raises_persistence_error(self, store):
        store.close()
        store._connection = None
        store._db_path = "/nonexistent-dir/for/sure/messages.duckdb"
        with pytest.raises(PersistenceError):
            store.append("B1", "V1", "Vera", "nowhere to go")


class TestListByRoom:
    def test_only_that_room_in_order(self, store):
        store.append("B1", "V1", "Vera", "one")
        store.append("B1", "V2", "Victor", "other thread")
        store.append("B2", "V1", "Vera", "other business")
        store.append("B1", "V1", "Olga", "two", IdentityKind.OWNER)

        messages = store.list_by_room("B1", "V1")
        assert [m.text for m in messages] == ["one", "two"]
        assert messages[1].senderKind == IdentityKind.OWNER

    def test_empty_room(self, store):
        assert store.list_by_room("B1", "V1") == []


class TestGetPage:
    def test_latest_page_and_cursor(self, store):
        for i in range(5):
            store.append("B1", "V1", "Vera", f"m{i}")

        latest = store.get_page("B1", "V1", limit=2)
        assert [m.text for m in latest] == ["m3", "m4"]

        older = store.get_page("B1", "V1", before=latest[0].createdAt, limit=2)
        assert [m.text for m in older] == ["m1", "m2"]

        oldest = store.get_page("B1", "V1", before=older[0].createdAt, limit=2)
        assert [m.text for m in oldest] == ["m0"]

    def test_limit_is_capped(self, store):
        for i in range(MAX_PAGE_SIZE + 5):
            store.append("B1", "V1", "Vera", f"m{i}")
        assert len(store.get_page("B1", "V1", limit=10_000)) == MAX_PAGE_SIZE


class TestListConversations:
    @pytest.fixture
    def seeded(self, store):
        store.append("B1", "V1", "Vera", "first from vera")
        store.append("B1", "V2", "Victor", "hi from victor")
        store.append("B1", "V1", "Olga", "reply to vera", IdentityKind.OWNER)
        store.append("B1", "V3", "Ann", "ann here")
        store.append("B2", "V1", "Vera", "elsewhere")
        return store

    def test_grouped_by_visitor(self, seeded):
        conversations = seeded.list_conversations("B1")
        by_visitor = {c.visitorId: c for c in conversations}
        assert set(by_visitor) == {"V1", "V2", "V3"}
        vera = by_visitor["V1"]
        assert vera.visitorName == "Vera"
        assert vera.messageCount == 2
        assert [m.text for m in vera.messages] == ["first from vera", "reply to vera"]
        assert vera.lastMessageAt == vera.messages[-1].createdAt

    def test_sort_new_is_most_recent_activity_first(self, seeded):
        assert [c.visitorId for c in seeded.list_conversations("B1", sort="new")] == ["V3", "V1", "V2"]

    def test_sort_old_is_earliest_thread_first(self, seeded):
        assert [c.visitorId for c in seeded.list_conversations("B1", sort="old")] == ["V1", "V2", "V3"]

    def test_sort_by_name(self, seeded):
        assert [c.visitorName for c in seeded.list_conversations("B1", sort="atoz")] == ["Ann", "Vera", "Victor"]
        assert [c.visitorName for c in seeded.list_conversations("B1", sort="ztoa")] == ["Victor", "Vera", "Ann"]

    def test_search_is_case_insensitive(self, seeded):
        assert [c.visitorId for c in seeded.list_conversations("B1", search="VIC")] == ["V2"]

    def test_owner_only_thread_falls_back_to_visitor_id(self, store):
        store.append("B1", "V9", "Olga", "are you still interested?", IdentityKind.OWNER)
        assert store.list_conversations("B1")[0].visitorName == "V9"


class TestClientToken:
    def test_stored_and_read_back(self, store):
        store.append("B1", "V1", "Vera", "optimistic", client_token="local-1")
        store.append("B1", "V1", "Vera", "plain")
        messages = store.list_by_room("B1", "V1")
        assert [m.clientToken for m in messages] == ["local-1", None]
        assert messages[0].to_wire()["clientToken"] == "local-1"
        assert "clientToken" not in messages[1].to_wire()


class TestConfiguredPageSize:
    def test_default_and_cap(self):
        store = MessageStore(db_path=":memory:", default_page_size=2, max_page_size=3)
        for i in range(5):
            store.append("B1", "V1", "Vera", f"m{i}")
        assert [m.text for m in store.get_page("B1", "V1")] == ["m3", "m4"]
        assert len(store.get_page("B1", "V1", limit=50)) == 3
        store.close()
