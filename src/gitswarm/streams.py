"""Stream lifecycle: active -> merged | abandoned, plus reviews on active streams."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from gitswarm.constants import (
	EVENT_STREAM_ABANDONED,
	REJECTION_VERDICTS,
	REVIEW_VERDICTS,
	STREAM_ABANDONED,
	STREAM_ACTIVE,
	STREAM_MERGED,
	VERDICT_APPROVE,
)
from gitswarm.db import Database
from gitswarm.errors import RepoNotFoundError, StreamStateError
from gitswarm.event_stream import EventStream
from gitswarm.models import Review, Stream

logger = logging.getLogger(__name__)


class StreamLifecycle:
	"""Owns stream state transitions in the relational store.

	Merged and abandoned are terminal. Only the workspace manager's merge
	path calls ``mark_merged``.
	"""

	def __init__(self, db: Database, events: EventStream | None = None) -> None:
		self._db = db
		self._events = events

	def get(self, stream_id: str) -> Stream | None:
		return self._db.get_stream(stream_id)

	def require(self, stream_id: str) -> Stream:
		stream = self._db.get_stream(stream_id)
		if stream is None:
			raise LookupError(f"Stream {stream_id} not found")
		return stream

	def create(
		self,
		repo_id: str,
		agent_id: str,
		branch: str,
		base_branch: str,
		name: str = "",
		parent_stream_id: str | None = None,
		stream_id: str | None = None,
	) -> Stream:
		"""Record a new active stream. Forks start with no reviews."""
		if self._db.get_repo(repo_id) is None:
			raise RepoNotFoundError(repo_id)
		if parent_stream_id is not None:
			parent = self.require(parent_stream_id)
			if parent.repo_id != repo_id:
				raise ValueError(f"Parent stream {parent_stream_id} belongs to another repository")

		stream = Stream(
			repo_id=repo_id,
			agent_id=agent_id,
			name=name or branch,
			branch=branch,
			base_branch=base_branch,
			parent_stream_id=parent_stream_id,
		)
		if stream_id:
			stream.id = stream_id
		self._db.insert_stream(stream)
		return stream

	def _transition(self, stream_id: str, to_status: str) -> Stream:
		updated = self._db.transition_stream(stream_id, STREAM_ACTIVE, to_status)
		if updated is not None:
			return updated
		current = self.require(stream_id)
		raise StreamStateError(
			f"Stream {stream_id} is {current.status}; cannot move to {to_status}"
		)

	def abandon(self, stream_id: str, reason: str = "") -> Stream:
		"""Mark a stream inert. The branch itself is kept."""
		stream = self._transition(stream_id, STREAM_ABANDONED)
		logger.info("Abandoned stream %s (%s)", stream_id, reason or "no reason given")
		if self._events:
			self._events.emit(
				EVENT_STREAM_ABANDONED,
				repo_id=stream.repo_id,
				stream_id=stream_id,
				agent_id=stream.agent_id,
				details={"reason": reason},
			)
		return stream

	def mark_merged(self, stream_id: str) -> Stream:
		"""Move an active stream to merged. Already-merged streams are returned as is."""
		updated = self._db.transition_stream(stream_id, STREAM_ACTIVE, STREAM_MERGED)
		if updated is not None:
			self._db.set_review_status(stream_id, "approved")
			updated.review_status = "approved"
			return updated
		current = self.require(stream_id)
		if current.status == STREAM_MERGED:
			return current
		raise StreamStateError(f"Stream {stream_id} is {current.status}; cannot merge")

	def ensure_active(self, stream_id: str) -> Stream:
		stream = self.require(stream_id)
		if stream.status != STREAM_ACTIVE:
			raise StreamStateError(f"Stream {stream_id} is {stream.status}")
		return stream

	def submit_for_review(self, stream_id: str) -> Stream:
		stream = self.ensure_active(stream_id)
		self._db.set_review_status(stream_id, "in_review")
		stream.review_status = "in_review"
		return stream

	def submit_review(
		self,
		stream_id: str,
		reviewer_id: str,
		verdict: str,
		feedback: str = "",
		tested: bool = False,
		is_human: bool | None = None,
	) -> Review:
		"""Upsert one reviewer's verdict. A later verdict replaces an earlier one."""
		if verdict not in REVIEW_VERDICTS:
			raise ValueError(f"Unknown verdict: {verdict!r}")
		stream = self.ensure_active(stream_id)
		if stream.agent_id == reviewer_id:
			raise ValueError("Cannot review your own stream")

		if is_human is None:
			reviewer = self._db.get_agent(reviewer_id)
			is_human = reviewer.is_human if reviewer else False

		review = Review(
			stream_id=stream_id,
			reviewer_id=reviewer_id,
			verdict=verdict,
			feedback=feedback,
			is_human=is_human,
			tested=tested,
		)
		self._db.upsert_review(review)
		self._db.set_review_status(stream_id, self._review_status(stream_id))
		return review

	def _review_status(self, stream_id: str) -> str:
		verdicts = {r.verdict for r in self._db.get_reviews(stream_id)}
		if verdicts & REJECTION_VERDICTS:
			return "changes_requested"
		if VERDICT_APPROVE in verdicts:
			return "approved"
		return "in_review"

	def link_external_pr(self, stream_id: str, pr_number: int) -> Stream:
		"""Attach an external PR number. At most one stream per (repo, PR)."""
		stream = self.require(stream_id)
		existing = self._db.get_stream_by_external_pr(stream.repo_id, pr_number)
		if existing is not None and existing.id != stream_id:
			raise ValueError(f"PR #{pr_number} is already linked to stream {existing.id}")
		try:
			self._db.set_external_pr(stream_id, pr_number)
		except sqlite3.IntegrityError as exc:
			raise ValueError(f"PR #{pr_number} is already linked to another stream") from exc
		stream.external_pr_number = pr_number
		return stream

	def find_by_external_pr(self, repo_id: str, pr_number: int) -> Stream | None:
		return self._db.get_stream_by_external_pr(repo_id, pr_number)

	def abandon_stale_streams(self, days: int, now: datetime | None = None) -> list[Stream]:
		"""Abandon active streams untouched for ``days``. Returns the abandoned streams."""
		cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
		abandoned: list[Stream] = []
		for stream in self._db.get_stale_streams(cutoff.isoformat()):
			try:
				abandoned.append(self.abandon(stream.id, reason=f"inactive for {days} days"))
			except StreamStateError:
				# Merged or abandoned concurrently
				continue
		return abandoned
