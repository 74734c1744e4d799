"""Data models for gitswarm governance and workspace state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


def _compact(data: dict[str, Any]) -> dict[str, Any]:
	"""Drop keys whose value is None so result payloads stay small."""
	return {k: v for k, v in data.items() if v is not None}


# -- Relational store entities --


@dataclass
class Org:
	"""An organization owning repositories and providing access defaults."""

	id: str = field(default_factory=_new_id)
	name: str = ""
	default_agent_access: str = "none"  # none/public/karma_threshold/allowlist
	default_min_karma: int = 0
	is_platform_org: bool = False
	created_at: str = field(default_factory=_now_iso)


@dataclass
class Agent:
	"""An actor (agent or human) with a karma score."""

	id: str = field(default_factory=_new_id)
	name: str = ""
	karma: int = 0
	is_human: bool = False
	created_at: str = field(default_factory=_now_iso)


@dataclass
class Repository:
	"""A managed codebase and its governance settings."""

	id: str = field(default_factory=_new_id)
	org_id: str | None = None
	name: str = ""
	is_private: bool = False
	ownership_model: str = "guild"  # solo/guild/open
	merge_mode: str = "review"  # swarm/review/gated
	consensus_threshold: float = 0.66
	min_reviews: int = 1
	human_review_weight: float = 1.5
	agent_access: str | None = None  # None = inherit from org
	min_karma: int | None = None
	buffer_branch: str = "buffer"
	promote_target: str = "main"
	auto_promote_on_green: bool = False
	auto_revert_on_red: bool = True
	clone_url: str | None = None
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)


@dataclass
class AccessGrant:
	"""An explicit access level for one agent on one repository."""

	repo_id: str = ""
	agent_id: str = ""
	access_level: str = "read"
	granted_by: str | None = None
	granted_at: str = field(default_factory=_now_iso)
	expires_at: str | None = None  # None = no expiry
	reason: str = ""

	def is_expired(self, now: datetime | None = None) -> bool:
		if not self.expires_at:
			return False
		expires = datetime.fromisoformat(self.expires_at)
		if expires.tzinfo is None:
			expires = expires.replace(tzinfo=timezone.utc)
		return expires < (now or datetime.now(timezone.utc))


@dataclass
class Maintainer:
	"""A maintainer role on a repository."""

	repo_id: str = ""
	agent_id: str = ""
	role: str = "maintainer"  # owner/maintainer
	added_by: str | None = None
	added_at: str = field(default_factory=_now_iso)


@dataclass
class BranchRule:
	"""A branch protection rule matched by wildcard pattern."""

	id: str = field(default_factory=_new_id)
	repo_id: str = ""
	branch_pattern: str = ""
	direct_push: str = "none"  # none/maintainers/all
	required_approvals: int = 1
	require_tests_pass: bool = False
	consensus_threshold: float | None = None
	merge_restriction: str = "consensus"  # none/maintainers/consensus
	priority: int = 0

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class Stream:
	"""A proposed unit of work tracked against a repository."""

	id: str = field(default_factory=_new_id)
	repo_id: str = ""
	agent_id: str = ""
	name: str = ""
	branch: str = ""
	base_branch: str = ""
	parent_stream_id: str | None = None
	status: str = "active"  # active/merged/abandoned
	review_status: str | None = None  # in_review/approved/changes_requested
	external_pr_number: int | None = None
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class Review:
	"""One reviewer's current verdict on a stream."""

	stream_id: str = ""
	reviewer_id: str = ""
	verdict: str = "approve"  # approve/request_changes/reject/comment
	feedback: str = ""
	is_human: bool = False
	tested: bool = False
	reviewed_at: str = field(default_factory=_now_iso)


@dataclass
class ReviewVote:
	"""A review joined with the reviewer facts consensus needs."""

	reviewer_id: str = ""
	verdict: str = "approve"
	is_human: bool = False
	tested: bool = False
	karma: int = 0
	is_maintainer: bool = False


@dataclass
class MergeRecord:
	"""Append-only record of a stream merged into the buffer branch."""

	id: str = field(default_factory=_new_id)
	repo_id: str = ""
	stream_id: str = ""
	agent_id: str | None = None
	merge_commit: str = ""
	target_branch: str = ""
	conflict_resolved: bool = False
	merged_at: str = field(default_factory=_now_iso)


@dataclass
class PromotionRecord:
	"""Append-only record of a buffer to trunk fast-forward."""

	id: str = field(default_factory=_new_id)
	repo_id: str = ""
	from_branch: str = ""
	to_branch: str = ""
	from_commit: str = ""
	to_commit: str = ""
	triggered_by: str = "manual"  # manual/auto
	agent_id: str | None = None
	promoted_at: str = field(default_factory=_now_iso)


@dataclass
class Stabilization:
	"""An externally reported test run against a buffer commit."""

	id: str = field(default_factory=_new_id)
	repo_id: str = ""
	result: str = "green"  # green/red
	buffer_commit: str = ""
	breaking_stream_id: str | None = None
	output: str = ""
	stabilized_at: str = field(default_factory=_now_iso)


# -- Embedded store entities --


@dataclass
class TrackedStream:
	"""Stream to branch mapping held in a repository's embedded store."""

	id: str = ""
	name: str = ""
	agent_id: str = ""
	branch: str = ""
	base_branch: str = ""
	parent_stream_id: str | None = None
	created_at: str = field(default_factory=_now_iso)


@dataclass
class Worktree:
	"""An agent's dedicated working directory within a repository clone."""

	agent_id: str = ""
	path: str = ""
	branch: str = ""
	current_stream: str | None = None
	updated_at: str = field(default_factory=_now_iso)


@dataclass
class StreamCommit:
	"""A commit made on a stream through the workspace manager."""

	id: str = field(default_factory=_new_id)
	stream_id: str = ""
	agent_id: str = ""
	commit_hash: str = ""
	message: str = ""
	created_at: str = field(default_factory=_now_iso)


# -- Decision and outcome types --


@dataclass
class PermissionResult:
	"""Effective access level and where it came from."""

	level: str = "none"
	source: str = ""
	role: str | None = None
	threshold: int | None = None
	karma: int | None = None

	def to_dict(self) -> dict[str, Any]:
		return _compact(asdict(self))


@dataclass
class ActionDecision:
	"""Whether an agent may perform an action, with the permissions used."""

	allowed: bool = False
	action: str = ""
	permissions: PermissionResult = field(default_factory=PermissionResult)

	def to_dict(self) -> dict[str, Any]:
		return {
			"allowed": self.allowed,
			"action": self.action,
			"permissions": self.permissions.to_dict(),
		}


@dataclass
class PushDecision:
	"""Whether an agent may push directly to a branch."""

	allowed: bool = False
	reason: str = ""
	rule: BranchRule | None = None
	permissions: PermissionResult = field(default_factory=PermissionResult)

	def to_dict(self) -> dict[str, Any]:
		return {
			"allowed": self.allowed,
			"reason": self.reason,
			"rule": self.rule.to_dict() if self.rule else None,
			"permissions": self.permissions.to_dict(),
		}


@dataclass
class ConsensusDecision:
	"""Outcome of a consensus check. Ratios are rounded for display only."""

	reached: bool = False
	reason: str = ""
	ratio: float | None = None
	threshold: float | None = None
	current: int | None = None
	required: int | None = None
	approvals: int | None = None
	rejections: int | None = None
	maintainer_approvals: int | None = None
	maintainer_rejections: int | None = None
	approval_weight: float | None = None
	rejection_weight: float | None = None

	def to_dict(self) -> dict[str, Any]:
		return _compact(asdict(self))


@dataclass
class ConflictFile:
	"""Three-way content for one conflicting path. Missing sides are None."""

	path: str = ""
	base: str | None = None
	ours: str | None = None
	theirs: str | None = None


@dataclass
class FileResolution:
	"""Resolved content for one conflicting path."""

	path: str = ""
	content: str = ""


MERGE_MERGED = "merged"
MERGE_CONFLICT = "conflict"
MERGE_FAILED = "failed"


@dataclass
class MergeOutcome:
	"""Tagged result of a buffer merge: merged, conflict, or failed."""

	kind: str = MERGE_FAILED
	stream_id: str = ""
	buffer_branch: str = ""
	merge_commit: str = ""
	conflicts: list[ConflictFile] = field(default_factory=list)
	reason: str = ""
	already_merged: bool = False

	@property
	def merged(self) -> bool:
		return self.kind == MERGE_MERGED

	@property
	def conflicted(self) -> bool:
		return self.kind == MERGE_CONFLICT

	@property
	def conflict_paths(self) -> list[str]:
		return [c.path for c in self.conflicts]

	@classmethod
	def merged_at(
		cls, stream_id: str, buffer_branch: str, commit: str, already_merged: bool = False,
	) -> MergeOutcome:
		return cls(
			kind=MERGE_MERGED,
			stream_id=stream_id,
			buffer_branch=buffer_branch,
			merge_commit=commit,
			already_merged=already_merged,
		)

	@classmethod
	def conflict(cls, stream_id: str, buffer_branch: str, conflicts: list[ConflictFile]) -> MergeOutcome:
		return cls(
			kind=MERGE_CONFLICT,
			stream_id=stream_id,
			buffer_branch=buffer_branch,
			conflicts=conflicts,
			reason="merge_conflict",
		)

	@classmethod
	def failed(cls, stream_id: str, buffer_branch: str, reason: str) -> MergeOutcome:
		return cls(kind=MERGE_FAILED, stream_id=stream_id, buffer_branch=buffer_branch, reason=reason)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class CommitResult:
	"""A commit made in an agent's worktree."""

	commit: str = ""
	stream_id: str = ""
	branch: str = ""


@dataclass
class StreamHandle:
	"""Where a newly created stream lives on disk."""

	stream_id: str = ""
	branch: str = ""
	worktree_path: str = ""
	parent_stream_id: str | None = None


@dataclass
class PromotionResult:
	"""Outcome of promoting the buffer branch into trunk."""

	promoted: bool = False
	from_branch: str = ""
	to_branch: str = ""
	from_commit: str = ""
	to_commit: str = ""

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class BufferState:
	"""Current tip of a repository's buffer branch."""

	buffer_branch: str = ""
	buffer_commit: str = ""


@dataclass
class StabilizationResult:
	"""A recorded stabilization report and the automatic action it triggered."""

	record: Stabilization = field(default_factory=Stabilization)
	promotion: PromotionResult | None = None
	promotion_error: str = ""
	reverted_commit: str | None = None

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)
