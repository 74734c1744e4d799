"""Tests for stream lifecycle transitions, reviews and external PR links."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gitswarm.db import Database
from gitswarm.errors import RepoNotFoundError, StreamStateError
from gitswarm.event_stream import EventStream
from gitswarm.models import Agent, Repository
from gitswarm.streams import StreamLifecycle


@pytest.fixture()
def db() -> Database:
	d = Database(":memory:")
	d.insert_repo(Repository(id="r1"))
	d.insert_repo(Repository(id="r2"))
	d.insert_agent(Agent(id="author"))
	d.insert_agent(Agent(id="reviewer"))
	d.insert_agent(Agent(id="human", is_human=True))
	yield d
	d.close()


@pytest.fixture()
def lifecycle(db: Database) -> StreamLifecycle:
	return StreamLifecycle(db)


def _create(lifecycle: StreamLifecycle, repo_id: str = "r1", **kwargs: object):
	return lifecycle.create(
		repo_id=repo_id, agent_id="author", branch="stream/x", base_branch="buffer", **kwargs,  # type: ignore[arg-type]
	)


class TestTransitions:
	def test_create_is_active(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle, name="login page")
		assert stream.status == "active"
		loaded = lifecycle.get(stream.id)
		assert loaded is not None
		assert loaded.name == "login page"
		assert loaded.base_branch == "buffer"

	def test_create_requires_known_repo(self, lifecycle: StreamLifecycle) -> None:
		with pytest.raises(RepoNotFoundError):
			_create(lifecycle, repo_id="missing")

	def test_abandon_is_terminal(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		assert lifecycle.abandon(stream.id).status == "abandoned"
		with pytest.raises(StreamStateError):
			lifecycle.abandon(stream.id)
		with pytest.raises(StreamStateError):
			lifecycle.mark_merged(stream.id)

	def test_mark_merged_is_idempotent(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		first = lifecycle.mark_merged(stream.id)
		second = lifecycle.mark_merged(stream.id)
		assert first.status == second.status == "merged"
		assert second.review_status == "approved"

	def test_merged_stream_cannot_be_abandoned(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		lifecycle.mark_merged(stream.id)
		with pytest.raises(StreamStateError):
			lifecycle.abandon(stream.id)

	def test_unknown_stream(self, lifecycle: StreamLifecycle) -> None:
		with pytest.raises(LookupError):
			lifecycle.abandon("nope")

	def test_abandon_emits_event(self, db: Database, tmp_path: Path) -> None:
		events = EventStream(tmp_path / "events.jsonl")
		events.open()
		lifecycle = StreamLifecycle(db, events)
		stream = _create(lifecycle)
		lifecycle.abandon(stream.id, reason="superseded")
		events.close()

		record = json.loads((tmp_path / "events.jsonl").read_text().strip())
		assert record["event_type"] == "stream_abandoned"
		assert record["stream_id"] == stream.id
		assert record["details"]["reason"] == "superseded"


class TestForks:
	def test_fork_records_parent(self, lifecycle: StreamLifecycle) -> None:
		parent = _create(lifecycle)
		child = _create(lifecycle, parent_stream_id=parent.id)
		assert child.parent_stream_id == parent.id

	def test_fork_starts_without_reviews(self, db: Database, lifecycle: StreamLifecycle) -> None:
		parent = _create(lifecycle)
		lifecycle.submit_review(parent.id, "reviewer", "approve")
		child = _create(lifecycle, parent_stream_id=parent.id)
		assert db.get_reviews(child.id) == []

	def test_fork_across_repositories_is_refused(self, lifecycle: StreamLifecycle) -> None:
		parent = _create(lifecycle, repo_id="r2")
		with pytest.raises(ValueError):
			_create(lifecycle, parent_stream_id=parent.id)


class TestReviews:
	def test_later_verdict_replaces_earlier(self, db: Database, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		lifecycle.submit_review(stream.id, "reviewer", "approve")
		lifecycle.submit_review(stream.id, "reviewer", "request_changes", feedback="needs tests")
		reviews = db.get_reviews(stream.id)
		assert len(reviews) == 1
		assert reviews[0].verdict == "request_changes"
		assert reviews[0].feedback == "needs tests"

	def test_review_status_follows_verdicts(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		assert lifecycle.submit_for_review(stream.id).review_status == "in_review"

		lifecycle.submit_review(stream.id, "reviewer", "comment")
		assert lifecycle.require(stream.id).review_status == "in_review"

		lifecycle.submit_review(stream.id, "reviewer", "approve")
		assert lifecycle.require(stream.id).review_status == "approved"

		lifecycle.submit_review(stream.id, "human", "reject")
		assert lifecycle.require(stream.id).review_status == "changes_requested"
		assert lifecycle.require(stream.id).status == "active"

	def test_is_human_defaults_from_agent(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		assert lifecycle.submit_review(stream.id, "human", "approve").is_human
		assert not lifecycle.submit_review(stream.id, "reviewer", "approve").is_human

	def test_self_review_is_refused(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		with pytest.raises(ValueError, match="own stream"):
			lifecycle.submit_review(stream.id, "author", "approve")

	def test_unknown_verdict(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		with pytest.raises(ValueError, match="verdict"):
			lifecycle.submit_review(stream.id, "reviewer", "lgtm")

	def test_reviews_only_on_active_streams(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		lifecycle.abandon(stream.id)
		with pytest.raises(StreamStateError):
			lifecycle.submit_review(stream.id, "reviewer", "approve")


class TestExternalPullRequests:
	def test_link_and_find(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		lifecycle.link_external_pr(stream.id, 42)
		found = lifecycle.find_by_external_pr("r1", 42)
		assert found is not None
		assert found.id == stream.id
		assert lifecycle.find_by_external_pr("r1", 43) is None

	def test_one_stream_per_pr(self, lifecycle: StreamLifecycle) -> None:
		first = _create(lifecycle)
		second = _create(lifecycle)
		lifecycle.link_external_pr(first.id, 7)
		with pytest.raises(ValueError, match="already linked"):
			lifecycle.link_external_pr(second.id, 7)

	def test_relinking_same_stream_is_allowed(self, lifecycle: StreamLifecycle) -> None:
		stream = _create(lifecycle)
		lifecycle.link_external_pr(stream.id, 7)
		assert lifecycle.link_external_pr(stream.id, 7).external_pr_number == 7

	def test_same_pr_number_in_other_repo(self, lifecycle: StreamLifecycle) -> None:
		a = _create(lifecycle, repo_id="r1")
		b = _create(lifecycle, repo_id="r2")
		lifecycle.link_external_pr(a.id, 7)
		lifecycle.link_external_pr(b.id, 7)
		found = lifecycle.find_by_external_pr("r2", 7)
		assert found is not None
		assert found.id == b.id


class TestStaleSweep:
	def test_abandons_only_stale_active_streams(self, db: Database, lifecycle: StreamLifecycle) -> None:
		stale = _create(lifecycle)
		fresh = _create(lifecycle)
		merged = _create(lifecycle)
		lifecycle.mark_merged(merged.id)

		old = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()
		db.conn.execute("UPDATE streams SET updated_at=? WHERE id IN (?, ?)", (old, stale.id, merged.id))
		db.conn.commit()

		abandoned = lifecycle.abandon_stale_streams(days=14)
		assert [s.id for s in abandoned] == [stale.id]
		assert lifecycle.require(fresh.id).status == "active"
		assert lifecycle.require(merged.id).status == "merged"
