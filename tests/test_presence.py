"""
Unit tests for the presence stores
"""
import json
import random
from unittest.mock import MagicMock

from conftest import FakeClock
from services.presence import InMemoryPresenceStore, Participant, RedisPresenceStore


class TestInMemoryPresenceStore:

    def test_join_creates_participant(self, presence):
        """Scenario A: a single join is listed with its display name"""
        presence.upsert("R", "X", "Alice", "peer-x")

        participants = presence.list("R")

        assert [(p.user_id, p.display_name) for p in participants] == [("X", "Alice")]
        assert participants[0].peer_id == "peer-x"

    def test_join_join_leave(self, presence):
        """Scenario B: X joins, Y joins, X leaves -> only Y remains"""
        presence.upsert("R", "X", "Alice")
        presence.upsert("R", "Y", "Bob")
        presence.remove("R", "X")

        assert [p.user_id for p in presence.list("R")] == ["Y"]

    def test_upsert_updates_without_changing_identity(self, presence, clock):
        first = presence.upsert("R", "X", "Alice", "peer-1")
        joined_at = first.joined_at
        clock.advance(500)

        updated = presence.upsert("R", "X", "Alice B", "peer-2")

        assert updated.user_id == "X"
        assert updated.joined_at == joined_at
        assert updated.display_name == "Alice B"
        assert updated.peer_id == "peer-2"
        assert updated.last_seen_at > joined_at
        assert len(presence.list("R")) == 1

    def test_touch_keeps_name_and_peer_when_absent(self, presence):
        presence.upsert("R", "X", "Alice", "peer-1")

        touched = presence.upsert("R", "X")

        assert touched.display_name == "Alice"
        assert touched.peer_id == "peer-1"

    def test_remove_is_idempotent(self, presence):
        presence.upsert("R", "X", "Alice")
        presence.upsert("R", "Y", "Bob")

        presence.remove("R", "X")
        once = [p.user_id for p in presence.list("R")]
        presence.remove("R", "X")
        twice = [p.user_id for p in presence.list("R")]

        assert once == twice == ["Y"]

    def test_remove_from_unknown_room_is_noop(self, presence):
        presence.remove("nowhere", "X")

        assert presence.list("nowhere") == []

    def test_empty_room_is_dropped(self, presence):
        presence.upsert("R", "X")
        presence.remove("R", "X")

        assert "R" not in presence.rooms

    def test_rooms_are_independent(self, presence):
        presence.upsert("R1", "X")
        presence.upsert("R2", "Y")

        assert [p.user_id for p in presence.list("R1")] == ["X"]
        assert [p.user_id for p in presence.list("R2")] == ["Y"]

    def test_list_matches_latest_event_per_user(self):
        """Random join/leave sequences: listed users are those whose last event was a join, in first-join order"""
        rng = random.Random(7)
        users = ["u1", "u2", "u3", "u4", "u5"]
        for _ in range(50):
            store = InMemoryPresenceStore(clock=FakeClock())
            expected = {}
            for _ in range(30):
                user = rng.choice(users)
                if rng.random() < 0.6:
                    store.upsert("R", user, user.upper())
                    expected.setdefault(user, None)
                else:
                    store.remove("R", user)
                    expected.pop(user, None)
            assert [p.user_id for p in store.list("R")] == list(expected)

    def test_stale_participants_are_evicted(self):
        clock = FakeClock(step=0)
        store = InMemoryPresenceStore(stale_after_ms=1000, clock=clock)
        store.upsert("R", "X")
        clock.advance(600)
        store.upsert("R", "Y")
        clock.advance(600)

        assert [p.user_id for p in store.list("R")] == ["Y"]

        clock.advance(2000)
        assert store.list("R") == []
        assert "R" not in store.rooms

    def test_touch_refreshes_staleness(self):
        clock = FakeClock(step=0)
        store = InMemoryPresenceStore(stale_after_ms=1000, clock=clock)
        store.upsert("R", "X")
        clock.advance(900)
        store.upsert("R", "X")
        clock.advance(900)

        assert [p.user_id for p in store.list("R")] == ["X"]


class TestRedisPresenceStore:

    def make_store(self, records=None, stale_after_ms=0, now=10_000):
        backend = MagicMock()
        backend.get_participants.return_value = records or []
        backend.get_participant.return_value = None
        return RedisPresenceStore(backend, stale_after_ms=stale_after_ms, room_ttl=60, clock=lambda: now), backend

    def test_upsert_new_participant_saves_record(self):
        store, backend = self.make_store()

        participant = store.upsert("R", "X", "Alice", "peer-x")

        backend.save_participant.assert_called_once_with("R", "X", participant.to_dict(), ttl=60)
        assert participant.joined_at == 10_000

    def test_upsert_existing_keeps_joined_at(self):
        store, backend = self.make_store(now=20_000)
        backend.get_participant.return_value = Participant("X", "Alice", "peer-x", 5_000, 5_000).to_dict()

        participant = store.upsert("R", "X", None, "peer-y")

        assert participant.joined_at == 5_000
        assert participant.last_seen_at == 20_000
        assert participant.display_name == "Alice"
        assert participant.peer_id == "peer-y"

    def test_list_sorts_by_join_and_evicts_stale(self):
        records = [
            Participant("late", "L", None, 3_000, 9_500).to_dict(),
            Participant("early", "E", None, 1_000, 9_800).to_dict(),
            Participant("gone", "G", None, 2_000, 2_000).to_dict(),
        ]
        store, backend = self.make_store(records, stale_after_ms=1_000)

        participants = store.list("R")

        assert [p.user_id for p in participants] == ["early", "late"]
        backend.delete_participants.assert_called_once_with("R", "gone")

    def test_remove_delegates(self):
        store, backend = self.make_store()
        backend.delete_participants.return_value = 0

        store.remove("R", "X")
        store.remove("R", "X")

        assert backend.delete_participants.call_count == 2

    def test_participant_round_trips_through_json(self):
        participant = Participant("X", "Alice", None, 1, 2)

        assert Participant.from_dict(json.loads(json.dumps(participant.to_dict()))) == participant
