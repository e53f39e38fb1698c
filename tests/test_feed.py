import asyncio
from unittest import mock

import pytest

from conftest import ms
from feed import ExpenseFeed, FeedChannel, FeedRegistry, FeedStatus, decode_snapshot
from realtime import DatabaseError, Subscription, expenses_path


class FakeDatabase:
    """Subscribe-only stand-in that lets a test push snapshots and errors by hand."""

    def __init__(self):
        self.subscriptions = []

    def subscribe(self, path, on_snapshot, on_error, auth_uid):
        subscription = Subscription(None, path, on_snapshot, on_error)
        self.subscriptions.append(subscription)
        return subscription

    @property
    def current(self):
        return self.subscriptions[-1]

    def emit(self, snapshot):
        if self.current.active:
            self.current.on_snapshot(snapshot)

    def fail(self, code, message="boom"):
        if self.current.active:
            self.current.on_error(DatabaseError(code, message))


def test_decode_empty_snapshot():
    result = decode_snapshot(None)
    assert result.ok
    assert result.expenses == []


def test_decode_normalizes_and_sorts():
    result = decode_snapshot(
        {
            "a": {"description": "Lunch", "amount": "12.5", "date": ms(2024, 1, 1)},
            "b": {"description": "Taxi", "amount": "abc", "date": ms(2024, 1, 3)},
            "c": {"amount": 3, "createdAt": ms(2024, 1, 2), "userId": "alice"},
        }
    )

    assert result.ok
    assert [e.id for e in result.expenses] == ["b", "c", "a"]
    lunch, taxi, missing = result.expenses[2], result.expenses[0], result.expenses[1]
    assert lunch.amount == 12.5
    assert lunch.created_at == lunch.date
    assert taxi.amount == 0
    assert missing.description == ""
    assert missing.note == ""
    assert missing.user_id == "alice"
    assert lunch.user_id == ""


def test_date_falls_back_to_created_at_then_now():
    with mock.patch("feed.now_ms", return_value=ms(2030, 6, 1)):
        result = decode_snapshot(
            {
                "created": {"amount": 1, "date": "yesterday", "createdAt": ms(2024, 2, 2)},
                "neither": {"amount": 1},
                "dated": {"amount": 1, "date": ms(2024, 3, 3), "createdAt": ms(2024, 1, 1)},
            }
        )

    by_id = {e.id: e for e in result.expenses}
    assert by_id["created"].date == ms(2024, 2, 2)
    assert by_id["neither"].date == ms(2030, 6, 1)
    assert by_id["dated"].date == ms(2024, 3, 3)
    assert by_id["dated"].created_at == ms(2024, 1, 1)


def test_sorted_list_is_non_increasing_and_stable():
    snapshot = {
        f"k{i}": {"amount": i, "date": ms(2024, 1, 1 + (i * 7) % 5)} for i in range(10)
    }
    expenses = decode_snapshot(snapshot).expenses
    dates = [e.date for e in expenses]
    assert dates == sorted(dates, reverse=True)
    assert decode_snapshot(snapshot).expenses == expenses


def test_negative_amount_passes_unchanged():
    result = decode_snapshot({"x": {"amount": -4, "date": ms(2024, 1, 1)}})
    assert result.expenses[0].amount == -4


@pytest.mark.parametrize("snapshot", [["not", "a", "map"], {"x": "just a string"}])
def test_malformed_snapshot_is_a_processing_error(snapshot):
    result = decode_snapshot(snapshot)
    assert not result.ok
    assert result.error.message == "Failed to process expense data"


def test_feed_lifecycle():
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    assert feed.loading
    assert feed.status == FeedStatus.UNSUBSCRIBED

    feed.set_user("alice")
    assert feed.status == FeedStatus.SUBSCRIBING
    assert feed.loading

    database.emit({"a": {"amount": 5, "date": ms(2024, 1, 1)}})
    assert feed.status == FeedStatus.SYNCED
    assert not feed.loading
    assert [e.id for e in feed.expenses] == ["a"]
    assert feed.last_sync_time is not None


def test_processing_error_keeps_last_list():
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    feed.set_user("alice")
    database.emit({"a": {"amount": 5, "date": ms(2024, 1, 1)}})

    database.emit({"a": "garbage"})

    assert feed.status == FeedStatus.ERROR
    assert feed.error == "Failed to process expense data"
    assert [e.id for e in feed.expenses] == ["a"]

    database.emit({"b": {"amount": 1, "date": ms(2024, 1, 2)}})
    assert feed.error is None
    assert feed.status == FeedStatus.SYNCED


@pytest.mark.parametrize(
    "code, message",
    [
        (DatabaseError.PERMISSION_DENIED, "You don't have permission to access this data"),
        (
            DatabaseError.UNAVAILABLE,
            "Service is temporarily unavailable. Please try again later",
        ),
        (DatabaseError.NETWORK_ERROR, "Network error. Please check your connection"),
        ("SOMETHING_ELSE", "Database error: boom"),
    ],
)
def test_backend_errors_are_classified(code, message):
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    feed.set_user("alice")
    database.emit({"a": {"amount": 5, "date": ms(2024, 1, 1)}})

    database.fail(code)

    assert feed.error == message
    assert not feed.loading
    assert feed.status == FeedStatus.ERROR
    assert len(feed.expenses) == 1


def test_user_becoming_absent_tears_down():
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    feed.set_user("alice")
    database.emit({"a": {"amount": 5, "date": ms(2024, 1, 1)}})
    database.fail(DatabaseError.NETWORK_ERROR)
    subscription = database.current

    feed.set_user(None)

    assert not subscription.active
    assert feed.expenses == []
    assert not feed.loading
    assert feed.status == FeedStatus.UNSUBSCRIBED
    assert feed.error == "Network error. Please check your connection"


def test_switching_users_ignores_old_subscription():
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    feed.set_user("alice")
    alice = database.current
    feed.set_user("bob")

    alice.active = True  # a callback already in flight
    alice.on_snapshot({"a": {"amount": 5, "date": ms(2024, 1, 1)}})

    assert feed.expenses == []
    assert feed.loading


def test_no_callbacks_after_close(database):
    feed = ExpenseFeed(database)
    seen = []
    feed.watch(seen.append)
    feed.set_user("alice")
    assert database.subscriber_count(expenses_path("alice")) == 1

    feed.close()
    database.push(expenses_path("alice"), {"amount": 1, "date": 1}, auth_uid="alice")

    assert database.subscriber_count(expenses_path("alice")) == 0
    assert feed.expenses == []
    assert [state.status for state in seen] == ["subscribing", "synced"]


def test_feed_follows_real_store(database):
    feed = ExpenseFeed(database)
    feed.set_user("alice")
    assert feed.status == FeedStatus.SYNCED
    assert feed.expenses == []

    key = database.push(
        expenses_path("alice"),
        {"description": "Tea", "amount": 2, "date": ms(2024, 4, 1)},
        auth_uid="alice",
    )
    assert [e.id for e in feed.expenses] == [key]

    database.push(
        expenses_path("alice"),
        {"description": "Cake", "amount": 4, "date": ms(2024, 4, 2)},
        auth_uid="alice",
    )
    assert [e.description for e in feed.expenses] == ["Cake", "Tea"]


def test_watch_returns_unwatch_handle():
    database = FakeDatabase()
    feed = ExpenseFeed(database)
    seen = []
    unwatch = feed.watch(seen.append)
    feed.set_user("alice")
    unwatch()
    database.emit(None)

    assert [state.status for state in seen] == ["subscribing"]


def test_channel_delivers_states_to_coroutine():
    database = FakeDatabase()
    feed = ExpenseFeed(database)

    async def scenario():
        channel = FeedChannel(feed, asyncio.get_running_loop())
        feed.set_user("alice")
        database.emit({"a": {"amount": 5, "date": ms(2024, 1, 1)}})
        first = await asyncio.wait_for(channel.get(), 1)
        second = await asyncio.wait_for(channel.get(), 1)
        channel.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == "subscribing"
    assert second.status == "synced"
    assert second.expenses[0].amount == 5


def test_registry_shares_and_releases_feeds(database):
    registry = FeedRegistry(database)
    feed = registry.acquire("alice")
    assert registry.acquire("alice") is feed

    registry.release("alice")

    assert registry.get("alice") is None
    assert feed.status == FeedStatus.UNSUBSCRIBED
    assert database.subscriber_count(expenses_path("alice")) == 0


def test_out_of_range_dates_fall_back():
    with mock.patch("feed.now_ms", return_value=ms(2030, 6, 1)):
        result = decode_snapshot(
            {
                "far": {"amount": 1, "date": 10**18, "createdAt": ms(2024, 2, 2)},
                "both": {"amount": 1, "date": 10**18, "createdAt": -(10**18)},
            }
        )

    by_id = {e.id: e for e in result.expenses}
    assert by_id["far"].date == ms(2024, 2, 2)
    assert by_id["both"].date == ms(2030, 6, 1)
    assert by_id["both"].created_at == ms(2030, 6, 1)
    assert by_id["far"].local_datetime.year == 2024


def test_channel_ends_when_feed_is_released(database):
    registry = FeedRegistry(database)
    feed = registry.acquire("alice")

    async def scenario():
        channel = FeedChannel(feed, asyncio.get_running_loop())
        registry.release("alice")
        states = []
        while True:
            state = await asyncio.wait_for(channel.get(), 1)
            if state is None:
                break
            states.append(state.status)
        channel.close()
        return states

    assert asyncio.run(scenario()) == ["unsubscribed"]


def test_on_close_after_close_runs_immediately(database):
    feed = ExpenseFeed(database)
    feed.close()
    calls = []
    feed.on_close(lambda: calls.append("closed"))
    assert calls == ["closed"]
