"""Tests for the ingestion pipeline (full and incremental sync)."""

from __future__ import annotations

from datetime import datetime

import pytest

from slack_messages_mcp.exceptions import (
    AuthError,
    ConversationAccessError,
    SnapshotCorruptError,
)
from slack_messages_mcp.index.fuzzy import FuzzyIndex
from slack_messages_mcp.index.registry import StatsRegistry
from slack_messages_mcp.index.sync import (
    IngestionPipeline,
    SyncPhase,
    conversation_display_name,
    merge_cursors,
)
from slack_messages_mcp.index.users import UserDirectory
from slack_messages_mcp.slack import SlackConversation, SlackMessage

EXPECTED_CURSORS = {
    "C1": "1700000035.000100",
    "C2": "1700000040.000100",
    "D1": "1700000050.000100",
}


@pytest.fixture
def registry(tmp_path) -> StatsRegistry:
    return StatsRegistry(tmp_path / "stats.json")


@pytest.fixture
def fuzzy_path(tmp_path):
    return tmp_path / "fuzzy.json"


@pytest.fixture
def pipeline(store, registry, fuzzy_path, fake_slack, tmp_path) -> IngestionPipeline:
    return IngestionPipeline(
        fake_slack,
        store,
        registry,
        UserDirectory(tmp_path / "users.json"),
        fuzzy_path,
        workers=2,
    )


def by_external_id(store, external_id):
    return store.get_by_external_ids([external_id])[0]


def commit_newer_cursor(registry, fake_slack, monkeypatch):
    """Have another sync commit C2 up to ...60 while C2 is being fetched.

    The C2 fetch itself then fails, so only the saved record knows the
    newer cursor.
    """
    fetch_history = fake_slack.fetch_history

    def fetch_while_other_sync_commits(conversation_id, oldest=None):
        if conversation_id != "C2":
            return fetch_history(conversation_id, oldest)
        newer = registry.load()
        newer.conversation_cursors["C2"] = "1700000060.000100"
        registry.save(newer)
        raise ConversationAccessError("C2", "ratelimited")

    monkeypatch.setattr(fake_slack, "fetch_history", fetch_while_other_sync_commits)


class TestBuild:
    """Tests for IngestionPipeline.build()."""

    def test_indexes_history_and_thread_replies(self, pipeline, store):
        stats = pipeline.build()

        assert stats.total_messages == 6
        assert store.count() == 6
        reply = by_external_id(store, "1700000035.000100")
        assert reply.parent_thread_id == "1700000030.000300"

    def test_build_is_idempotent(self, pipeline, store, fuzzy_path):
        pipeline.build()
        stats = pipeline.build()

        assert stats.total_messages == 6
        assert store.count() == 6
        assert len(FuzzyIndex.load(fuzzy_path)) == 6

    def test_resolves_senders(self, pipeline, store):
        pipeline.build()

        assert by_external_id(store, "1700000010.000100").sender == "Alice"
        assert by_external_id(store, "1700000030.000300").sender == "Bob Builder"
        assert by_external_id(store, "1700000040.000100").sender == "carol"

    def test_marks_self_authored(self, pipeline, store):
        pipeline.build()

        mine = by_external_id(store, "1700000020.000200")
        assert mine.is_self_authored is True
        assert mine.sender == "Me"
        assert by_external_id(store, "1700000010.000100").is_self_authored is False

    def test_direct_message_named_after_counterpart(self, pipeline, store):
        pipeline.build()
        assert by_external_id(store, "1700000050.000100").conversation_name == "Alice"

    def test_records_cursors_including_replies(self, pipeline, registry):
        pipeline.build()
        assert registry.load().conversation_cursors == EXPECTED_CURSORS

    def test_empty_conversation_gets_no_cursor(self, pipeline, registry, fake_slack):
        fake_slack.conversations.append(SlackConversation(id="C3", name="quiet"))

        stats = pipeline.build()

        assert "C3" not in stats.conversation_cursors

    def test_writes_fuzzy_snapshot(self, pipeline, fuzzy_path):
        pipeline.build()

        fuzzy = FuzzyIndex.load(fuzzy_path)
        results = fuzzy.search("deadlne")
        assert {r.message.external_id for r in results} == {
            "1700000010.000100",
            "1700000020.000200",
        }

    def test_stats_describe_workspace(self, pipeline):
        stats = pipeline.build()

        assert stats.workspace_id == "T0ACME"
        assert stats.workspace_name == "Acme"
        assert stats.total_conversations == 3
        assert stats.oldest_timestamp == 1700000010
        assert stats.newest_timestamp == 1700000050

    def test_unreadable_history_skips_conversation(self, pipeline, store, fake_slack):
        fake_slack.fail_history.add("C2")

        stats = pipeline.build()

        assert stats.total_messages == 5
        assert "C2" not in stats.conversation_cursors
        assert store.get_by_external_ids(["1700000040.000100"]) == []

    def test_unreadable_threads_skip_whole_conversation(
        self, pipeline, store, fake_slack
    ):
        fake_slack.fail_threads.add("C1")

        stats = pipeline.build()

        assert stats.total_messages == 2
        assert "C1" not in stats.conversation_cursors
        assert all(m.conversation_id != "C1" for m in store.most_recent(10))

    def test_history_timeout_skips_conversation(self, pipeline, store, fake_slack):
        fake_slack.history_errors["C2"] = TimeoutError("The read operation timed out")

        stats = pipeline.build()

        assert stats.total_messages == 5
        assert "C2" not in stats.conversation_cursors
        assert store.get_by_external_ids(["1700000040.000100"]) == []

    def test_thread_connection_reset_skips_conversation(self, pipeline, fake_slack):
        fake_slack.thread_errors["C1"] = ConnectionResetError("reset by peer")

        stats = pipeline.build()

        assert stats.total_messages == 2
        assert "C1" not in stats.conversation_cursors

    def test_auth_failure_writes_nothing(
        self, pipeline, store, registry, fuzzy_path, fake_slack, tmp_path
    ):
        fake_slack.auth_error = AuthError("token revoked", "token_revoked")

        with pytest.raises(AuthError):
            pipeline.build()

        assert store.count() == 0
        assert not registry.exists()
        assert not fuzzy_path.exists()
        assert not (tmp_path / "users.json").exists()
        assert fake_slack.history_calls == []

    def test_keeps_previous_cursors_for_skipped_conversations(
        self, pipeline, fake_slack
    ):
        pipeline.build()
        fake_slack.fail_history.add("C2")

        stats = pipeline.build()

        assert stats.conversation_cursors["C2"] == "1700000040.000100"

    def test_keeps_cursor_committed_during_fetch(
        self, pipeline, registry, fake_slack, monkeypatch
    ):
        pipeline.build()
        commit_newer_cursor(registry, fake_slack, monkeypatch)

        stats = pipeline.build()

        assert stats.conversation_cursors["C2"] == "1700000060.000100"
        assert registry.load().conversation_cursors["C2"] == "1700000060.000100"

    def test_discards_unreadable_stats(self, pipeline, registry):
        registry.path.write_text("{broken")

        stats = pipeline.build()

        assert stats.conversation_cursors == EXPECTED_CURSORS
        assert registry.load() == stats

    def test_progress_phases_in_order(self, pipeline):
        events = []
        pipeline.build(events.append)

        phases = []
        for event in events:
            if not phases or phases[-1] != event.phase:
                phases.append(event.phase)
        assert phases == list(SyncPhase)

    def test_progress_counters_never_decrease(self, pipeline):
        events = []
        pipeline.build(events.append)

        last: dict[SyncPhase, int] = {}
        for event in events:
            assert event.current >= last.get(event.phase, 0)
            last[event.phase] = event.current
        assert events[-1].phase is SyncPhase.DONE
        assert events[-1].current == events[-1].total == 6


class TestUpdate:
    """Tests for IngestionPipeline.update()."""

    def test_without_prior_index(self, pipeline, fake_slack):
        assert pipeline.update() is None
        assert fake_slack.history_calls == []

    def test_no_new_messages(self, pipeline, registry, fake_slack):
        pipeline.build()
        stale = registry.load()
        stale.indexed_at = datetime(2020, 1, 1)
        registry.save(stale)
        fake_slack.history_calls.clear()

        stats = pipeline.update()

        assert stats.total_messages == 6
        assert stats.conversation_cursors == EXPECTED_CURSORS
        assert stats.indexed_at > datetime(2020, 1, 1)
        assert registry.load().indexed_at == stats.indexed_at
        assert sorted(fake_slack.history_calls) == sorted(EXPECTED_CURSORS.items())

    def test_fetches_only_newer_messages(
        self, pipeline, store, fuzzy_path, fake_slack
    ):
        pipeline.build()
        fake_slack.history_calls.clear()
        fake_slack.post(
            "C2",
            SlackMessage("1700000060.000100", "U1", "Shipping the release today", "C2"),
        )

        stats = pipeline.update()

        assert stats.total_messages == 7
        assert stats.conversation_cursors["C2"] == "1700000060.000100"
        assert stats.conversation_cursors["C1"] == "1700000035.000100"
        assert ("C2", "1700000040.000100") in fake_slack.history_calls
        new = by_external_id(store, "1700000060.000100")
        assert new.sender == "Alice"
        assert new.conversation_name == "random"

        fuzzy = FuzzyIndex.load(fuzzy_path)
        assert len(fuzzy) == 7
        assert fuzzy.search("relase")[0].message.external_id == "1700000060.000100"

    def test_new_conversation_is_fetched_from_the_beginning(
        self, pipeline, fake_slack
    ):
        pipeline.build()
        fake_slack.conversations.append(SlackConversation(id="C3", name="new"))
        fake_slack.post("C3", SlackMessage("1600000000.000100", "U2", "hi", "C3"))

        stats = pipeline.update()

        assert ("C3", None) in fake_slack.history_calls
        assert stats.conversation_cursors["C3"] == "1600000000.000100"
        assert stats.total_messages == 7

    def test_cursors_never_move_backwards(self, pipeline, registry):
        pipeline.build()
        ahead = registry.load()
        ahead.conversation_cursors["C2"] = "1800000000.000000"
        registry.save(ahead)

        stats = pipeline.update()

        assert stats.conversation_cursors["C2"] == "1800000000.000000"

    def test_keeps_cursor_committed_during_fetch(
        self, pipeline, registry, fake_slack, monkeypatch
    ):
        pipeline.build()
        commit_newer_cursor(registry, fake_slack, monkeypatch)

        stats = pipeline.update()

        assert stats.conversation_cursors["C2"] == "1700000060.000100"
        assert registry.load().conversation_cursors["C2"] == "1700000060.000100"

    def test_keeps_cursor_committed_during_fetch_with_new_messages(
        self, pipeline, registry, fake_slack, monkeypatch
    ):
        pipeline.build()
        fake_slack.post(
            "C1", SlackMessage("1700000070.000100", "U2", "Standup moved", "C1")
        )
        commit_newer_cursor(registry, fake_slack, monkeypatch)

        stats = pipeline.update()

        assert stats.total_messages == 7
        assert stats.conversation_cursors["C1"] == "1700000070.000100"
        assert stats.conversation_cursors["C2"] == "1700000060.000100"

    def test_history_timeout_keeps_previous_cursor(self, pipeline, fake_slack):
        pipeline.build()
        fake_slack.history_errors["C2"] = TimeoutError("timed out")

        stats = pipeline.update()

        assert stats.conversation_cursors["C2"] == "1700000040.000100"

    def test_rebuilds_missing_fuzzy_snapshot(self, pipeline, fuzzy_path, fake_slack):
        pipeline.build()
        fuzzy_path.unlink()
        fake_slack.post(
            "C2", SlackMessage("1700000060.000100", "U1", "More tacos", "C2")
        )

        pipeline.update()

        assert len(FuzzyIndex.load(fuzzy_path)) == 7

    def test_corrupt_fuzzy_snapshot_raises_before_writing(
        self, pipeline, store, fuzzy_path, registry, fake_slack
    ):
        pipeline.build()
        before = registry.load()
        fuzzy_path.write_text("garbage")
        fake_slack.post(
            "C2", SlackMessage("1700000060.000100", "U1", "More tacos", "C2")
        )

        with pytest.raises(SnapshotCorruptError):
            pipeline.update()

        assert store.count() == 6
        assert registry.load() == before

    def test_auth_failure(self, pipeline, store, fake_slack):
        pipeline.build()
        fake_slack.auth_error = AuthError("invalid", "invalid_auth")

        with pytest.raises(AuthError):
            pipeline.update()
        assert store.count() == 6


class TestHelpers:
    """Tests for cursor merging and conversation naming."""

    def test_merge_cursors_compares_numerically(self):
        merged = merge_cursors({"C1": "9.500000"}, {"C1": "10.100000"})
        assert merged["C1"] == "10.100000"

    def test_merge_cursors_keeps_unobserved(self):
        merged = merge_cursors({"C1": "5.0", "C2": "7.0"}, {"C1": "4.0", "C3": "1.0"})
        assert merged == {"C1": "5.0", "C2": "7.0", "C3": "1.0"}

    def test_dm_without_counterpart_keeps_name(self):
        users = UserDirectory()
        conversation = SlackConversation(id="D9", name="D9", is_direct_message=True)
        assert conversation_display_name(conversation, users) == "D9"

    def test_channel_name_unchanged(self):
        users = UserDirectory()
        conversation = SlackConversation(id="C1", name="general")
        assert conversation_display_name(conversation, users) == "general"
