"""Tests for ThreadIndex.

Covers:
- Thread metadata (null for lone messages, counts, participants)
- Cached results returned by reference without rescanning the timeline
- Recompute after invalidation
- Room thread directory ordering
- Reply filters and summaries
- send_thread_reply validation, payload and transport failures
"""

import pytest
from chatview.relations.cache import CacheKey, CacheState, RelationCache, ViewKind
from chatview.relations.models import ThreadOptions
from chatview.relations.threads import (
    EMPTY_CONTENT_ERROR,
    ThreadIndex,
    build_thread_reply_content,
)

ROOM_ID = "!room:server"
ALICE = "@alice:server"
BOB = "@bob:server"
CAROL = "@carol:server"


@pytest.fixture()
def index(fake_client, room):
    return ThreadIndex(fake_client, RelationCache(max_entries=100), summary_max_replies=2)


class TestThreadMetadata:
    """get_thread_metadata behaviour."""

    def test_lone_message_is_not_a_thread(self, index, room, events):
        room.timeline.events.append(events.message("$root"))

        assert index.get_thread_metadata(ROOM_ID, "$root") is None

    def test_unknown_room_returns_none(self, index):
        assert index.get_thread_metadata("!missing:server", "$root") is None

    def test_counts_and_latest_timestamp(self, index, room, events):
        room.timeline.events.extend(
            [
                events.message("$root", ts=1000),
                events.thread_reply("$r1", "$root", ts=2500),
                events.thread_reply("$r2", "$root", ts=2000),
                events.thread_reply("$r3", "$root", ts=2200),
                events.thread_reply("$other", "$elsewhere", ts=9000),
            ]
        )

        metadata = index.get_thread_metadata(ROOM_ID, "$root")

        assert metadata.reply_count == 3
        assert metadata.latest_reply_ts == 2500
        assert metadata.root_event_id == "$root"
        assert metadata.room_id == ROOM_ID

    def test_end_to_end_participants(self, index, room, events):
        room.timeline.events.extend(
            [
                events.message("$R1", sender=ALICE, ts=100),
                events.thread_reply("$b", "$R1", sender=BOB, ts=200, body="hi"),
                events.thread_reply("$a", "$R1", sender=ALICE, ts=300, body="hello"),
            ]
        )

        metadata = index.get_thread_metadata(ROOM_ID, "$R1")

        assert metadata.root_event_id == "$R1"
        assert metadata.reply_count == 2
        assert metadata.latest_reply_ts == 300
        assert metadata.participants == frozenset({ALICE, BOB})
        assert metadata.user_participated is True

    def test_root_author_not_a_participant_unless_replied(self, index, room, events):
        room.timeline.events.extend(
            [
                events.message("$root", sender=ALICE),
                events.thread_reply("$r1", "$root", sender=BOB),
            ]
        )

        metadata = index.get_thread_metadata(ROOM_ID, "$root")

        assert metadata.participants == frozenset({BOB})
        assert metadata.user_participated is False


class TestThreadCaching:
    """Cache hits, misses and invalidation."""

    def test_repeated_reads_return_same_object_without_rescan(self, index, room, events):
        room.timeline.events.extend(
            [events.message("$root"), events.thread_reply("$r1", "$root")]
        )

        first = index.get_thread_metadata(ROOM_ID, "$root")
        calls = room.timeline.get_events.call_count
        second = index.get_thread_metadata(ROOM_ID, "$root")

        assert second is first
        assert room.timeline.get_events.call_count == calls == 1

    def test_null_result_is_cached(self, index, room, events):
        room.timeline.events.append(events.message("$root"))

        assert index.get_thread_metadata(ROOM_ID, "$root") is None
        assert index.get_thread_metadata(ROOM_ID, "$root") is None
        assert room.timeline.get_events.call_count == 1

    def test_invalidate_forces_rescan_even_if_unchanged(self, index, room, events):
        room.timeline.events.extend(
            [events.message("$root"), events.thread_reply("$r1", "$root")]
        )
        first = index.get_thread_metadata(ROOM_ID, "$root")

        index.invalidate_thread_cache(ROOM_ID, "$root")
        key = CacheKey(ROOM_ID, "$root", ViewKind.THREAD_METADATA)
        assert index.cache.state(key) is CacheState.STALE

        second = index.get_thread_metadata(ROOM_ID, "$root")

        assert room.timeline.get_events.call_count == 2
        assert second == first
        assert index.cache.state(key) is CacheState.CACHED

    def test_invalidate_uncached_thread_is_safe(self, index):
        index.invalidate_thread_cache(ROOM_ID, "$never-read")

    def test_invalidate_thread_also_invalidates_room_directory(self, index, room, events):
        room.timeline.events.extend(
            [events.message("$root"), events.thread_reply("$r1", "$root")]
        )
        index.get_room_threads(ROOM_ID)

        index.invalidate_thread_cache(ROOM_ID, "$root")

        key = CacheKey(ROOM_ID, None, ViewKind.ROOM_THREADS)
        assert index.cache.state(key) is CacheState.STALE

    def test_clear_cache(self, index, room, events):
        room.timeline.events.extend(
            [events.message("$root"), events.thread_reply("$r1", "$root")]
        )
        index.get_thread_metadata(ROOM_ID, "$root")

        index.clear_cache()
        index.get_thread_metadata(ROOM_ID, "$root")

        assert room.timeline.get_events.call_count == 2


class TestThreadReplies:
    """get_thread_replies, filters and summaries."""

    @pytest.fixture()
    def thread(self, room, events):
        room.timeline.events.extend(
            [
                events.message("$root", sender=ALICE, ts=1000),
                events.thread_reply("$r1", "$root", sender=BOB, ts=2000, body="one"),
                events.thread_reply(
                    "$r2", "$root", sender=CAROL, ts=3000, body="two", edited=True
                ),
                events.thread_reply(
                    "$r3", "$root", sender=BOB, ts=4000, body="three", redacted=True
                ),
            ]
        )

    def test_replies_in_timeline_order(self, index, thread):
        replies = index.get_thread_replies(ROOM_ID, "$root")

        assert [reply.event_id for reply in replies] == ["$r1", "$r2", "$r3"]
        assert replies[0].content == "one"
        assert replies[0].sender == BOB
        assert replies[0].timestamp == 2000
        assert replies[1].is_edited is True
        assert replies[2].is_redacted is True

    def test_reply_count_matches_unfiltered_replies(self, index, thread):
        metadata = index.get_thread_metadata(ROOM_ID, "$root")
        replies = index.get_thread_replies(ROOM_ID, "$root")
        assert metadata.reply_count == len(replies)

    def test_exclude_edited_and_redacted(self, index, thread):
        options = ThreadOptions(include_edited=False, include_redacted=False)

        replies = index.get_thread_replies(ROOM_ID, "$root", options)

        assert [reply.event_id for reply in replies] == ["$r1"]

    def test_filter_by_sender_then_limit(self, index, thread):
        options = ThreadOptions(filter_by_sender=BOB, max_replies=1)

        replies = index.get_thread_replies(ROOM_ID, "$root", options)

        assert [reply.event_id for reply in replies] == ["$r1"]

    def test_filters_do_not_alter_cached_replies(self, index, thread):
        index.get_thread_replies(ROOM_ID, "$root", ThreadOptions(max_replies=1))

        assert len(index.get_thread_replies(ROOM_ID, "$root")) == 3

    def test_unknown_room_returns_empty_list(self, index):
        assert index.get_thread_replies("!missing:server", "$root") == []

    def test_summary_newest_first_with_more_flag(self, index, thread):
        summary = index.get_thread_summary(ROOM_ID, "$root")

        assert summary.metadata.reply_count == 3
        assert [r.event_id for r in summary.recent_replies] == ["$r3", "$r2"]
        assert summary.has_more_replies is True

    def test_summary_respects_max_replies_option(self, index, thread):
        summary = index.get_thread_summary(ROOM_ID, "$root", ThreadOptions(max_replies=3))

        assert len(summary.recent_replies) == 3
        assert summary.has_more_replies is False

    def test_summary_none_for_lone_message(self, index, room, events):
        room.timeline.events.append(events.message("$solo"))
        assert index.get_thread_summary(ROOM_ID, "$solo") is None


class TestRoomThreads:
    """Room thread directory."""

    def test_sorted_by_latest_reply_descending(self, index, room, events):
        room.timeline.events.extend(
            [
                events.message("$old"),
                events.message("$new"),
                events.thread_reply("$a", "$old", ts=2000),
                events.thread_reply("$b", "$new", ts=3000),
            ]
        )

        threads = index.get_room_threads(ROOM_ID)

        assert [t.metadata.root_event_id for t in threads] == ["$new", "$old"]
        assert [t.metadata.latest_reply_ts for t in threads] == [3000, 2000]

    def test_ties_keep_first_reference_order(self, index, room, events):
        room.timeline.events.extend(
            [
                events.thread_reply("$a", "$first", ts=2000),
                events.thread_reply("$b", "$second", ts=2000),
            ]
        )

        assert index.find_thread_roots(ROOM_ID) == ["$first", "$second"]

    def test_single_scan_for_directory(self, index, room, events):
        room.timeline.events.extend(
            [
                events.thread_reply("$a", "$one", ts=2000),
                events.thread_reply("$b", "$two", ts=2100),
                events.thread_reply("$c", "$three", ts=2200),
            ]
        )

        index.get_room_threads(ROOM_ID)
        index.find_thread_roots(ROOM_ID)

        assert room.timeline.get_events.call_count == 1

    def test_empty_room(self, index, room, events):
        room.timeline.events.append(events.message("$only"))
        assert index.get_room_threads(ROOM_ID) == []

    def test_unknown_room(self, index):
        assert index.get_room_threads("!missing:server") == []
        assert index.find_thread_roots("!missing:server") == []


class TestSendThreadReply:
    """send_thread_reply validation and transport handling."""

    def test_payload_shape(self):
        assert build_thread_reply_content("$root", "hello") == {
            "msgtype": "m.text",
            "body": "hello",
            "m.relates_to": {"rel_type": "m.thread", "event_id": "$root"},
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "\n\t", None])
    async def test_empty_content_rejected_without_send(self, index, fake_client, content):
        result = await index.send_thread_reply(ROOM_ID, "$root", content)

        assert result.success is False
        assert result.error == EMPTY_CONTENT_ERROR
        fake_client.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_sends_trimmed_thread_payload(self, index, fake_client):
        result = await index.send_thread_reply(ROOM_ID, "$root", "  hello  ")

        assert result.success is True
        assert result.event_id == "$sent:server"
        fake_client.send_message.assert_awaited_once()
        room_id, content, message_type = fake_client.send_message.call_args.args
        assert room_id == ROOM_ID
        assert message_type == "m.room.message"
        assert content["body"] == "hello"
        assert content["m.relates_to"]["rel_type"] == "m.thread"
        assert content["m.relates_to"]["event_id"] == "$root"

    @pytest.mark.asyncio
    async def test_success_invalidates_thread(self, index, fake_client, room, events):
        room.timeline.events.extend(
            [events.message("$root"), events.thread_reply("$r1", "$root")]
        )
        index.get_thread_metadata(ROOM_ID, "$root")

        await index.send_thread_reply(ROOM_ID, "$root", "hello")

        key = CacheKey(ROOM_ID, "$root", ViewKind.THREAD_METADATA)
        assert index.cache.state(key) is CacheState.STALE

    @pytest.mark.asyncio
    async def test_transport_failure_is_returned(self, index, fake_client):
        fake_client.send_message.side_effect = RuntimeError("M_FORBIDDEN")

        result = await index.send_thread_reply(ROOM_ID, "$root", "hello")

        assert result.success is False
        assert result.error == "M_FORBIDDEN"
        assert result.event_id is None
        fake_client.send_message.assert_awaited_once()
