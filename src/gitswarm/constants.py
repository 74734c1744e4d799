"""Centralized access levels, reason codes, and default limits."""

from __future__ import annotations

# -- Access levels (ordered weakest to strongest) --

ACCESS_NONE = "none"
ACCESS_READ = "read"
ACCESS_WRITE = "write"
ACCESS_MAINTAIN = "maintain"
ACCESS_ADMIN = "admin"

ACCESS_LEVELS: tuple[str, ...] = (
	ACCESS_NONE,
	ACCESS_READ,
	ACCESS_WRITE,
	ACCESS_MAINTAIN,
	ACCESS_ADMIN,
)

# Minimum levels required per action
ACTION_LEVELS: dict[str, frozenset[str]] = {
	"read": frozenset({ACCESS_READ, ACCESS_WRITE, ACCESS_MAINTAIN, ACCESS_ADMIN}),
	"write": frozenset({ACCESS_WRITE, ACCESS_MAINTAIN, ACCESS_ADMIN}),
	"merge": frozenset({ACCESS_MAINTAIN, ACCESS_ADMIN}),
	"settings": frozenset({ACCESS_ADMIN}),
	"delete": frozenset({ACCESS_ADMIN}),
}

MAINTAINER_ROLE_LEVELS: dict[str, str] = {
	"owner": ACCESS_ADMIN,
	"maintainer": ACCESS_MAINTAIN,
}

# -- Repository policy vocabularies --

AGENT_ACCESS_MODES: frozenset[str] = frozenset({"none", "public", "karma_threshold", "allowlist"})
OWNERSHIP_MODELS: frozenset[str] = frozenset({"solo", "guild", "open"})
MERGE_MODES: frozenset[str] = frozenset({"swarm", "review", "gated"})
DIRECT_PUSH_MODES: frozenset[str] = frozenset({"none", "maintainers", "all"})
MERGE_RESTRICTIONS: frozenset[str] = frozenset({"none", "maintainers", "consensus"})

# -- Streams and reviews --

STREAM_ACTIVE = "active"
STREAM_MERGED = "merged"
STREAM_ABANDONED = "abandoned"

STREAM_STATUSES: frozenset[str] = frozenset({STREAM_ACTIVE, STREAM_MERGED, STREAM_ABANDONED})

STREAM_TRANSITIONS: dict[str, frozenset[str]] = {
	STREAM_ACTIVE: frozenset({STREAM_MERGED, STREAM_ABANDONED}),
	STREAM_MERGED: frozenset(),
	STREAM_ABANDONED: frozenset(),
}

VERDICT_APPROVE = "approve"
VERDICT_REQUEST_CHANGES = "request_changes"
VERDICT_REJECT = "reject"
VERDICT_COMMENT = "comment"

REVIEW_VERDICTS: frozenset[str] = frozenset({
	VERDICT_APPROVE,
	VERDICT_REQUEST_CHANGES,
	VERDICT_REJECT,
	VERDICT_COMMENT,
})
REJECTION_VERDICTS: frozenset[str] = frozenset({VERDICT_REQUEST_CHANGES, VERDICT_REJECT})

# -- Push / consensus reason codes --

REASON_INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
REASON_BRANCH_PROTECTED = "branch_protected"
REASON_MAINTAINERS_ONLY = "maintainers_only"
REASON_MAINTAINER = "maintainer"
REASON_ALLOWED = "allowed"
REASON_NO_BRANCH_RULE = "no_branch_rule"

REASON_SWARM_MODE = "swarm_mode"
REASON_INSUFFICIENT_REVIEWS = "insufficient_reviews"
REASON_OWNER_APPROVED = "owner_approved"
REASON_AWAITING_OWNER = "awaiting_owner"
REASON_NO_MAINTAINER_REVIEWS = "no_maintainer_reviews"
REASON_CONSENSUS_REACHED = "consensus_reached"
REASON_BELOW_THRESHOLD = "below_threshold"
REASON_NO_REVIEWS = "no_reviews"
REASON_REPO_NOT_FOUND = "repo_not_found"
REASON_STREAM_NOT_FOUND = "stream_not_found"

# -- Engine event types --

EVENT_REPO_INITIALIZED = "repo_initialized"
EVENT_STREAM_CREATED = "stream_created"
EVENT_STREAM_MERGED = "stream_merged"
EVENT_MERGE_CONFLICT = "merge_conflict"
EVENT_STREAM_ABANDONED = "stream_abandoned"
EVENT_PROMOTION_COMPLETED = "promotion_completed"
EVENT_STABILIZATION = "stabilization"

EVENT_TYPES: frozenset[str] = frozenset({
	EVENT_REPO_INITIALIZED,
	EVENT_STREAM_CREATED,
	EVENT_STREAM_MERGED,
	EVENT_MERGE_CONFLICT,
	EVENT_STREAM_ABANDONED,
	EVENT_PROMOTION_COMPLETED,
	EVENT_STABILIZATION,
})

# -- Defaults --

DEFAULT_HUMAN_REVIEW_WEIGHT = 1.5
DEFAULT_CONSENSUS_THRESHOLD = 0.66
TRACKER_DB_NAME = ".gitswarm-cascade.db"
WORKTREES_DIR_NAME = "worktrees"

DEFAULT_LIMITS: dict[str, int] = {
	"command_timeout": 30,
	"clone_timeout": 120,
	"merge_timeout": 60,
	"push_timeout": 60,
	"stale_after_days": 14,
	"max_output_chars": 10_000,
}
