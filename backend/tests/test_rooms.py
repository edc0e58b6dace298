"""Tests for room key routing and the session registry."""
import pytest

from app.chat.errors import ValidationError
from app.chat.rooms import parse_room_key, room_key, validate_identifier
from app.chat.schemas import Identity, IdentityKind
from app.chat.session import SessionRegistry, SessionState


VERA = Identity(kind=IdentityKind.VISITOR, id="V1", displayName="Vera")


class TestRoomKey:
    def test_concatenates_with_separator(self):
        assert room_key("B1", "V1") == "B1:V1"

    def test_object_ids(self):
        key = room_key("65f0c1a2b3c4d5e6f7a8b9c0", "65f0c1a2b3c4d5e6f7a8b9c1")
        assert parse_room_key(key) == ("65f0c1a2b3c4d5e6f7a8b9c0", "65f0c1a2b3c4d5e6f7a8b9c1")

    @pytest.mark.parametrize("bad", ["", "a:b", "has space", "x" * 65, None, 42])
    def test_rejects_bad_identifiers(self, bad):
        with pytest.raises(ValidationError):
            validate_identifier(bad, "businessId")
        with pytest.raises(ValidationError):
            room_key("B1", bad)

    def test_parse_rejects_keys_without_separator(self):
        with pytest.raises(ValidationError):
            parse_room_key("B1V1")


class TestSessionRegistry:
    def test_open_starts_unjoined(self):
        registry = SessionRegistry()
        session = registry.open("c1", VERA, connection=object())
        assert session.state == SessionState.UNJOINED
        assert session.room_key is None
        assert len(registry) == 1

    def test_open_twice_is_an_error(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        with pytest.raises(KeyError):
            registry.open("c1", VERA, connection=object())

    def test_assign_moves_between_rooms(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())

        assert registry.assign("c1", "B1:V1", "B1", "V1") is None
        assert registry.member_ids("B1:V1") == {"c1"}

        assert registry.assign("c1", "B2:V1", "B2", "V1") == "B1:V1"
        assert registry.member_ids("B1:V1") == set()
        assert registry.member_ids("B2:V1") == {"c1"}
        assert "B1:V1" not in registry.rooms()

        session = registry.get("c1")
        assert session.state == SessionState.JOINED
        assert (session.business_id, session.visitor_id) == ("B2", "V1")
        assert session.joined_at is not None

    def test_reassign_same_room_reports_no_previous(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        registry.assign("c1", "B1:V1", "B1", "V1")
        assert registry.assign("c1", "B1:V1", "B1", "V1") is None
        assert registry.room_size("B1:V1") == 1

    def test_release_keeps_session(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        registry.assign("c1", "B1:V1", "B1", "V1")
        assert registry.release("c1") == "B1:V1"
        assert registry.get("c1").state == SessionState.UNJOINED
        assert registry.room_size("B1:V1") == 0

    def test_mark_pending_records_business_only(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        registry.assign("c1", "B1:V1", "B1", "V1")
        assert registry.mark_pending("c1", "B2") == "B1:V1"
        session = registry.get("c1")
        assert session.business_id == "B2"
        assert session.room_key is None
        assert session.state == SessionState.UNJOINED

    def test_close_terminates_and_unindexes(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        registry.open("c2", VERA, connection=object())
        registry.assign("c1", "B1:V1", "B1", "V1")
        registry.assign("c2", "B1:V1", "B1", "V1")

        closed = registry.close("c1")
        assert closed.state == SessionState.TERMINATED
        assert registry.get("c1") is None
        assert registry.member_ids("B1:V1") == {"c2"}
        assert registry.close("c1") is None

    def test_member_ids_is_a_copy(self):
        registry = SessionRegistry()
        registry.open("c1", VERA, connection=object())
        registry.assign("c1", "B1:V1", "B1", "V1")
        registry.member_ids("B1:V1").add("intruder")
        assert registry.member_ids("B1:V1") == {"c1"}

    def test_touch_updates_activity(self):
        registry = SessionRegistry()
        session = registry.open("c1", VERA, connection=object())
        session.last_activity_at = 0.0
        registry.touch("c1")
        assert session.last_activity_at > 0.0
