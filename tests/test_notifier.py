"""Tests for change fan-out: scopes, ordering, slow subscribers and SSE framing."""

import asyncio
import json
from unittest.mock import MagicMock, patch

from conftest import MONDAY
from planner.domain.events.notifier import (
    ChangeEvent,
    ChangeType,
    InProcessChangeNotifier,
    Scope,
)
from planner.domain.events.redis_notifier import RedisChangeNotifier
from planner.domain.events.router import stream_changes


def event(team_id=1, employee_id=10, **data):
    return ChangeEvent.create(
        ChangeType.ASSIGNMENT_CREATED, employee_id=employee_id, team_id=team_id, day=MONDAY, slot="morning", **data
    )


class TestScope:
    def test_all_teams_sees_everything(self):
        assert Scope.everything().matches(event(team_id=7))

    def test_team_scope_filters_other_teams(self):
        scope = Scope.teams(1)
        assert scope.matches(event(team_id=1))
        assert not scope.matches(event(team_id=2))

    def test_cross_team_move_visible_from_source_team(self):
        moved = event(team_id=2, fromTeamId=1, fromEmployeeId=10)
        assert Scope.teams(1).matches(moved)

    def test_own_scope_without_team_follows_employee(self):
        scope = Scope.own(employee_id=10, team_id=None)
        assert scope.matches(event(team_id=None, employee_id=10))
        assert not scope.matches(event(team_id=None, employee_id=11))


class TestInProcessNotifier:
    def test_events_delivered_in_publish_order(self):
        notifier = InProcessChangeNotifier()
        subscription = notifier.subscribe(Scope.everything())
        published = [event(n=i) for i in range(5)]
        for e in published:
            notifier.publish(e)

        received = subscription.drain()
        assert [e.data["n"] for e in received] == [0, 1, 2, 3, 4]
        assert [e.sequence for e in received] == sorted(e.sequence for e in received)

    def test_only_matching_subscribers_receive(self):
        notifier = InProcessChangeNotifier()
        design = notifier.subscribe(Scope.teams(1))
        build = notifier.subscribe(Scope.teams(2))

        notifier.publish(event(team_id=1))

        assert len(design.drain()) == 1
        assert build.drain() == []

    def test_full_subscriber_is_dropped_without_failing_publish(self):
        notifier = InProcessChangeNotifier(queue_size=2)
        slow = notifier.subscribe(Scope.everything())
        healthy = notifier.subscribe(Scope.everything())

        notifier.publish(event())
        notifier.publish(event())
        healthy.drain()
        notifier.publish(event())

        assert slow.closed is True
        assert notifier.subscriber_count() == 1
        assert len(healthy.drain()) == 1

    def test_unsubscribe(self):
        notifier = InProcessChangeNotifier()
        subscription = notifier.subscribe(Scope.everything())
        notifier.unsubscribe(subscription)
        notifier.publish(event())
        assert subscription.drain() == []


class TestEventFormat:
    def test_sse_framing(self):
        e = event(assignmentId=3)
        lines = e.to_sse().strip().split("\n")
        assert lines[0] == f"id: {e.sequence}"
        assert lines[1] == "event: assignment_created"
        payload = json.loads(lines[2][len("data: "):])
        assert payload["data"]["assignmentId"] == 3
        assert payload["date"] == "2026-03-02"

    def test_json_round_trip_preserves_identity(self):
        e = event(assignmentId=3)
        assert ChangeEvent.from_json(e.to_json()) == e


class TestStream:
    def test_stream_starts_with_heartbeat_then_relays_events(self):
        notifier = InProcessChangeNotifier()
        subscription = notifier.subscribe(Scope.everything())
        notifier.publish(event(assignmentId=9))

        async def read_two():
            stream = stream_changes(subscription, notifier, heartbeat_seconds=30)
            first = await stream.__anext__()
            second = await stream.__anext__()
            await stream.aclose()
            return first, second

        first, second = asyncio.run(read_two())

        assert first.startswith("event: system_status")
        assert "event: assignment_created" in second
        assert notifier.subscriber_count() == 0


class TestRedisNotifier:
    def test_dispatcher_publishes_outbox_in_order(self):
        client = MagicMock()
        client.pubsub.return_value.get_message.return_value = None
        notifier = RedisChangeNotifier(client=client, channel="test:changes")
        first, second = event(n=1), event(n=2)

        notifier.start()
        notifier.publish(first)
        notifier.publish(second)
        notifier.stop()

        sent = [c.args for c in client.publish.call_args_list]
        assert sent == [("test:changes", first.to_json()), ("test:changes", second.to_json())]
        client.pubsub.return_value.subscribe.assert_called_once_with("test:changes")

    def test_channel_message_is_delivered_locally(self):
        notifier = RedisChangeNotifier(client=MagicMock())
        subscription = notifier.subscribe(Scope.teams(1))
        e = event(team_id=1)

        notifier.deliver(ChangeEvent.from_json(e.to_json()))

        assert subscription.drain() == [e]

    def test_stop_closes_shared_client_it_opened(self):
        shared = MagicMock()
        shared.pubsub.return_value.get_message.return_value = None
        with patch(
            "planner.domain.events.redis_notifier.get_redis_client", return_value=shared
        ), patch("planner.domain.events.redis_notifier.close_redis_client") as close:
            notifier = RedisChangeNotifier()
            notifier.start()
            notifier.stop()

        close.assert_called_once_with()

    def test_stop_leaves_injected_client_open(self):
        client = MagicMock()
        client.pubsub.return_value.get_message.return_value = None
        with patch("planner.domain.events.redis_notifier.close_redis_client") as close:
            notifier = RedisChangeNotifier(client=client)
            notifier.start()
            notifier.stop()

        close.assert_not_called()
