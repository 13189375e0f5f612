"""Tests for IndexManager and open_index()."""

from __future__ import annotations

import pytest

from slack_messages_mcp.config import add_workspace
from slack_messages_mcp.exceptions import (
    AuthError,
    IndexNotFoundError,
    NotConfiguredError,
)
from slack_messages_mcp.index import (
    IndexManager,
    IndexStatus,
    SyncStatus,
    open_index,
)
from slack_messages_mcp.slack import SlackMessage


@pytest.fixture
def manager(workspace, fake_slack, tmp_path):
    with IndexManager(
        workspace,
        data_dir=tmp_path / "ws",
        client_factory=lambda token: fake_slack,
    ) as index:
        yield index


@pytest.fixture
def built(manager):
    manager.build_index()
    return manager


class TestStatus:
    """Tests for status() and the read preconditions."""

    def test_not_configured(self):
        manager = IndexManager(None)
        assert manager.status() is IndexStatus.NOT_CONFIGURED
        assert manager.has_index() is False

    def test_reads_require_configuration(self):
        manager = IndexManager(None)
        with pytest.raises(NotConfiguredError):
            manager.recent()
        with pytest.raises(NotConfiguredError):
            manager.get_stats()
        with pytest.raises(NotConfiguredError):
            manager.build_index()

    def test_no_index_before_build(self, manager):
        assert manager.status() is IndexStatus.NO_INDEX

    @pytest.mark.parametrize(
        "read",
        [
            lambda m: m.search("deadline"),
            lambda m: m.search(sender="alice"),
            lambda m: m.recent(),
            lambda m: m.contacts(),
            lambda m: m.conversations(),
            lambda m: m.thread("general"),
            lambda m: m.get_stats(),
        ],
    )
    def test_reads_require_index(self, manager, read):
        with pytest.raises(IndexNotFoundError):
            read(manager)

    def test_ready_after_build(self, built):
        assert built.status() is IndexStatus.READY
        assert built.has_index() is True

    def test_default_data_dir(self, workspace, isolated_home):
        manager = IndexManager(workspace)
        assert manager.db_path == isolated_home / "workspaces" / "T0ACME" / "index.db"

    def test_failed_build_leaves_no_index(self, manager, fake_slack):
        fake_slack.auth_error = AuthError("invalid", "invalid_auth")

        with pytest.raises(AuthError):
            manager.build_index()

        assert manager.status() is IndexStatus.NO_INDEX


class TestSync:
    """Tests for build_index() / update_index()."""

    def test_build_returns_stats(self, manager):
        stats = manager.build_index()
        assert stats.total_messages == 6
        assert manager.get_stats() == stats

    def test_update_without_prior_index(self, manager):
        outcome = manager.update_index()
        assert outcome.status is SyncStatus.NO_PRIOR_INDEX
        assert outcome.stats is None

    def test_update_falls_back_to_build(self, manager):
        outcome = manager.update_index(fallback_to_build=True)
        assert outcome.status is SyncStatus.BUILT
        assert outcome.stats.total_messages == 6

    def test_update_after_build(self, built, fake_slack):
        fake_slack.post(
            "C2", SlackMessage("1700000060.000100", "U2", "Tacos on Tuesday", "C2")
        )

        outcome = built.update_index()

        assert outcome.status is SyncStatus.UPDATED
        assert outcome.stats.total_messages == 7

    def test_progress_reported(self, manager):
        events = []
        manager.build_index(events.append)
        assert events
        assert events[-1].phase.value == "done"


class TestSearch:
    """Tests for IndexManager.search()."""

    def test_fuzzy_search(self, built):
        hits = built.search("deadlne", context=0)
        assert {h.message.external_id for h in hits} == {
            "1700000010.000100",
            "1700000020.000200",
        }

    def test_search_includes_thread_replies(self, built):
        hits = built.search("great news", context=0)
        assert hits[0].message.external_id == "1700000035.000100"

    def test_sender_search(self, built):
        hits = built.search(sender="bob")
        assert [h.message.sender for h in hits] == ["Bob Builder"]
        assert [m.external_id for m in hits[0].before] == [
            "1700000010.000100",
            "1700000020.000200",
        ]

    def test_empty_search(self, built):
        assert built.search("") == []
        assert built.search("*") == []

    def test_refresh_first_sees_new_messages(self, built, fake_slack):
        assert built.search("tacos") == []
        fake_slack.post(
            "C2", SlackMessage("1700000060.000100", "U2", "Tacos on Tuesday", "C2")
        )

        hits = built.search("tacos", refresh_first=True)

        assert [h.message.external_id for h in hits] == ["1700000060.000100"]

    def test_refresh_without_index(self, manager):
        with pytest.raises(IndexNotFoundError):
            manager.search("deadline", refresh_first=True)


class TestReads:
    """Tests for recent(), contacts(), conversations(), thread()."""

    def test_recent(self, built):
        recent = built.recent(2)
        assert [m.external_id for m in recent] == [
            "1700000050.000100",
            "1700000040.000100",
        ]

    def test_contacts_exclude_self(self, built):
        names = [c.name for c in built.contacts()]
        assert names == ["Alice", "carol", "Bob Builder"]

    def test_conversations(self, built):
        names = [c.conversation_name for c in built.conversations()]
        assert names == ["Alice", "random", "general"]

    def test_thread_is_chronological(self, built):
        messages = built.thread("gen")
        assert [m.timestamp for m in messages] == [
            1700000010,
            1700000020,
            1700000030,
            1700000035,
        ]

    def test_thread_after_and_limit(self, built):
        messages = built.thread("general", after=1700000025, limit=1)
        assert [m.timestamp for m in messages] == [1700000030]


class TestLifecycle:
    """Tests for closing and open_index()."""

    def test_close_on_exit(self, workspace, fake_slack, tmp_path):
        with IndexManager(
            workspace,
            data_dir=tmp_path / "ws",
            client_factory=lambda token: fake_slack,
        ) as manager:
            manager.build_index()
            manager.search("deadline")
            assert manager._conn is not None

        assert manager._conn is None
        assert manager._fuzzy is None

    def test_open_index_without_workspaces(self):
        with open_index() as manager:
            assert manager.status() is IndexStatus.NOT_CONFIGURED

    def test_open_index_uses_default_workspace(self, workspace):
        add_workspace(workspace)
        with open_index() as manager:
            assert manager.workspace == workspace
            assert manager.status() is IndexStatus.NO_INDEX

    def test_open_index_by_id(self, workspace):
        add_workspace(workspace)
        with open_index("T0ACME") as manager:
            assert manager.workspace.id == "T0ACME"

    def test_open_index_unknown_id(self):
        with pytest.raises(NotConfiguredError, match="T0NOPE"):
            with open_index("T0NOPE"):
                pass
