"""
Unit tests for the signal relay
"""
import pytest

from conftest import PROJECT_ID, RecordingChannel
from errors import AuthenticationError, AuthorizationError
from schemas.signals import SignalRequest
from services.broadcaster import DualTransportBroadcaster
from services.relay import SignalRelay


def signal(**body) -> SignalRequest:
    return SignalRequest.model_validate(body)


class TestAuthorization:

    def test_missing_identity_rejected(self, relay, buffer):
        with pytest.raises(AuthenticationError):
            relay.handle(PROJECT_ID, None, signal(type="user-joined", userId="alice"))

        assert buffer.since(PROJECT_ID) == []

    def test_non_member_rejected_without_side_effects(self, relay, buffer, presence, push_channel):
        with pytest.raises(AuthorizationError):
            relay.handle(PROJECT_ID, "mallory", signal(type="user-joined", userId="mallory"))

        assert buffer.since(PROJECT_ID) == []
        assert presence.list(PROJECT_ID) == []
        assert push_channel.triggered == []

    def test_membership_lookup_error_denies(self, presence, buffer, clock):
        class BrokenDirectory:
            def is_member(self, project_id, user_id):
                raise RuntimeError("database down")

        relay = SignalRelay(presence, DualTransportBroadcaster(buffer), BrokenDirectory(), clock=clock)

        with pytest.raises(AuthorizationError):
            relay.handle(PROJECT_ID, "alice", signal(type="user-joined", userId="alice"))


class TestPresenceUpdates:

    def test_join_adds_participant_and_resyncs_roster(self, relay, push_channel):
        relay.handle(PROJECT_ID, "X", signal(type="user-joined", userId="X", userName="Alice", peerId="p-x"))

        roster = relay.roster(PROJECT_ID)
        assert [(p.user_id, p.display_name) for p in roster] == [("X", "Alice")]

        events = [event for _, event, _ in push_channel.triggered]
        assert events == ["user-joined", "participants-update"]
        update = push_channel.triggered[1][2]["data"]
        assert update["participants"][0]["userId"] == "X"
        assert update["participants"][0]["userName"] == "Alice"
        assert update["participants"][0]["peerId"] == "p-x"

    def test_join_join_leave(self, relay):
        relay.handle(PROJECT_ID, "X", signal(type="user-joined", userId="X"))
        relay.handle(PROJECT_ID, "Y", signal(type="user-joined", userId="Y"))
        relay.handle(PROJECT_ID, "X", signal(type="user-left", userId="X"))

        assert [p.user_id for p in relay.roster(PROJECT_ID)] == ["Y"]

    def test_leave_roster_snapshot_excludes_leaver(self, relay, push_channel):
        relay.handle(PROJECT_ID, "X", signal(type="user-joined", userId="X"))
        relay.handle(PROJECT_ID, "Y", signal(type="user-joined", userId="Y"))
        relay.handle(PROJECT_ID, "X", signal(type="user-left", userId="X"))

        last_channel, last_event, last_payload = push_channel.triggered[-1]
        assert last_event == "participants-update"
        assert [p["userId"] for p in last_payload["data"]["participants"]] == ["Y"]

    def test_room_lock_released_when_room_empties(self, relay):
        relay.handle(PROJECT_ID, "X", signal(type="user-joined", userId="X"))
        relay.handle(PROJECT_ID, "Y", signal(type="user-joined", userId="Y"))
        relay.handle(PROJECT_ID, "X", signal(type="user-left", userId="X"))

        assert PROJECT_ID in relay._room_locks

        relay.handle(PROJECT_ID, "Y", signal(type="user-left", userId="Y"))

        assert PROJECT_ID not in relay._room_locks
        assert relay.roster(PROJECT_ID) == []

    def test_from_alias_resolves_actor(self, relay):
        relay.handle(PROJECT_ID, "bob", signal(type="user-joined", **{"from": "bob", "fromName": "Bobby"}))

        assert [(p.user_id, p.display_name) for p in relay.roster(PROJECT_ID)] == [("bob", "Bobby")]

    def test_user_id_wins_over_from(self, relay):
        event = relay.handle(PROJECT_ID, "alice", signal(type="user-joined", userId="alice", userName="A", **{"from": "bob"}))

        assert event.origin_user_id == "alice"

    def test_other_signal_touches_without_resync(self, relay, push_channel):
        relay.handle(PROJECT_ID, "X", signal(type="offer", userId="X", sdp="v=0"))

        assert [p.user_id for p in relay.roster(PROJECT_ID)] == ["X"]
        assert [event for _, event, _ in push_channel.triggered] == ["offer"]

    def test_signal_without_actor_is_buffered_only(self, relay, buffer):
        relay.handle(PROJECT_ID, "alice", signal(type="ice-candidate", candidate="c1"))

        assert relay.roster(PROJECT_ID) == []
        buffered = buffer.since(PROJECT_ID)
        assert [e.type for e in buffered] == ["ice-candidate"]
        assert buffered[0].payload == {"candidate": "c1"}
        assert buffered[0].origin_user_id is None


class TestDelivery:

    def test_passthrough_payload_unmodified(self, relay, buffer):
        relay.handle(PROJECT_ID, "X", signal(type="answer", userId="X", sdp="v=0", target="Y", extra={"k": [1, 2]}))

        event = buffer.since(PROJECT_ID)[0]
        assert event.payload == {"userId": "X", "sdp": "v=0", "target": "Y", "extra": {"k": [1, 2]}}

    def test_push_failure_is_swallowed(self, presence, buffer, membership, clock):
        relay = SignalRelay(presence, DualTransportBroadcaster(buffer, RecordingChannel(fail=True)), membership, clock=clock)

        relay.handle(PROJECT_ID, "X", signal(type="user-joined", userId="X"))

        assert [p.user_id for p in presence.list(PROJECT_ID)] == ["X"]
        assert [e.type for e in buffer.since(PROJECT_ID)] == ["user-joined", "participants-update"]

    def test_heartbeat_overflow_evicts_oldest(self, relay):
        """Scenario C: 101 heartbeats leave 100 buffered, starting from the second"""
        for seq in range(1, 102):
            relay.handle(PROJECT_ID, "X", signal(type="heartbeat", userId="X", seq=seq))

        events = relay.poll(PROJECT_ID, "X", 0)

        assert len(events) == 100
        assert events[0].payload["seq"] == 2
        assert events[-1].payload["seq"] == 101

    def test_poll_requires_membership(self, relay):
        with pytest.raises(AuthorizationError):
            relay.poll(PROJECT_ID, "mallory", 0)


class TestCallStartedNotice:

    def test_notice_goes_to_project_channel(self, relay, push_channel):
        assert relay.notify_call_started(PROJECT_ID, "alice", "alice", "Alice") is True

        assert push_channel.triggered == [
            (f"project:{PROJECT_ID}", "video-call-started", {"userName": "Alice", "userId": "alice"})
        ]

    def test_notice_without_push_channel(self, presence, buffer, membership, clock):
        relay = SignalRelay(presence, DualTransportBroadcaster(buffer), membership, clock=clock)

        assert relay.notify_call_started(PROJECT_ID, "alice", "alice", "Alice") is False
