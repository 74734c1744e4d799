"""SQLite relational store: the authoritative source for governance settings."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from gitswarm.models import (
	AccessGrant,
	Agent,
	BranchRule,
	Maintainer,
	MergeRecord,
	Org,
	PromotionRecord,
	Repository,
	Review,
	ReviewVote,
	Stabilization,
	Stream,
	_now_iso,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS orgs (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL DEFAULT '',
	default_agent_access TEXT NOT NULL DEFAULT 'none',
	default_min_karma INTEGER NOT NULL DEFAULT 0,
	is_platform_org INTEGER NOT NULL DEFAULT 0,
	created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL DEFAULT '',
	karma INTEGER NOT NULL DEFAULT 0,
	is_human INTEGER NOT NULL DEFAULT 0,
	created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS repos (
	id TEXT PRIMARY KEY,
	org_id TEXT,
	name TEXT NOT NULL DEFAULT '',
	is_private INTEGER NOT NULL DEFAULT 0,
	ownership_model TEXT NOT NULL DEFAULT 'guild',
	merge_mode TEXT NOT NULL DEFAULT 'review',
	consensus_threshold REAL NOT NULL DEFAULT 0.66,
	min_reviews INTEGER NOT NULL DEFAULT 1,
	human_review_weight REAL NOT NULL DEFAULT 1.5,
	agent_access TEXT,
	min_karma INTEGER,
	buffer_branch TEXT NOT NULL DEFAULT 'buffer',
	promote_target TEXT NOT NULL DEFAULT 'main',
	auto_promote_on_green INTEGER NOT NULL DEFAULT 0,
	auto_revert_on_red INTEGER NOT NULL DEFAULT 1,
	clone_url TEXT,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	FOREIGN KEY (org_id) REFERENCES orgs(id)
);

CREATE TABLE IF NOT EXISTS repo_access (
	repo_id TEXT NOT NULL,
	agent_id TEXT NOT NULL,
	access_level TEXT NOT NULL DEFAULT 'read',
	granted_by TEXT,
	granted_at TEXT NOT NULL,
	expires_at TEXT,
	reason TEXT NOT NULL DEFAULT '',
	PRIMARY KEY (repo_id, agent_id),
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS maintainers (
	repo_id TEXT NOT NULL,
	agent_id TEXT NOT NULL,
	role TEXT NOT NULL DEFAULT 'maintainer',
	added_by TEXT,
	added_at TEXT NOT NULL,
	PRIMARY KEY (repo_id, agent_id),
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS branch_rules (
	id TEXT PRIMARY KEY,
	repo_id TEXT NOT NULL,
	branch_pattern TEXT NOT NULL,
	direct_push TEXT NOT NULL DEFAULT 'none',
	required_approvals INTEGER NOT NULL DEFAULT 1,
	require_tests_pass INTEGER NOT NULL DEFAULT 0,
	consensus_threshold REAL,
	merge_restriction TEXT NOT NULL DEFAULT 'consensus',
	priority INTEGER NOT NULL DEFAULT 0,
	UNIQUE (repo_id, branch_pattern),
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS streams (
	id TEXT PRIMARY KEY,
	repo_id TEXT NOT NULL,
	agent_id TEXT NOT NULL,
	name TEXT NOT NULL DEFAULT '',
	branch TEXT NOT NULL DEFAULT '',
	base_branch TEXT NOT NULL DEFAULT '',
	parent_stream_id TEXT,
	status TEXT NOT NULL DEFAULT 'active',
	review_status TEXT,
	external_pr_number INTEGER,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE INDEX IF NOT EXISTS idx_streams_repo_status ON streams(repo_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_streams_external_pr
	ON streams(repo_id, external_pr_number) WHERE external_pr_number IS NOT NULL;

CREATE TABLE IF NOT EXISTS stream_reviews (
	stream_id TEXT NOT NULL,
	reviewer_id TEXT NOT NULL,
	verdict TEXT NOT NULL,
	feedback TEXT NOT NULL DEFAULT '',
	is_human INTEGER NOT NULL DEFAULT 0,
	tested INTEGER NOT NULL DEFAULT 0,
	reviewed_at TEXT NOT NULL,
	PRIMARY KEY (stream_id, reviewer_id),
	FOREIGN KEY (stream_id) REFERENCES streams(id)
);

CREATE TABLE IF NOT EXISTS merges (
	id TEXT PRIMARY KEY,
	repo_id TEXT NOT NULL,
	stream_id TEXT NOT NULL UNIQUE,
	agent_id TEXT,
	merge_commit TEXT NOT NULL,
	target_branch TEXT NOT NULL,
	conflict_resolved INTEGER NOT NULL DEFAULT 0,
	merged_at TEXT NOT NULL,
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS promotions (
	id TEXT PRIMARY KEY,
	repo_id TEXT NOT NULL,
	from_branch TEXT NOT NULL,
	to_branch TEXT NOT NULL,
	from_commit TEXT NOT NULL,
	to_commit TEXT NOT NULL,
	triggered_by TEXT NOT NULL DEFAULT 'manual',
	agent_id TEXT,
	promoted_at TEXT NOT NULL,
	UNIQUE (repo_id, from_commit, to_commit),
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS stabilizations (
	id TEXT PRIMARY KEY,
	repo_id TEXT NOT NULL,
	result TEXT NOT NULL,
	buffer_commit TEXT NOT NULL,
	breaking_stream_id TEXT,
	output TEXT NOT NULL DEFAULT '',
	stabilized_at TEXT NOT NULL,
	FOREIGN KEY (repo_id) REFERENCES repos(id)
);
"""


class Database:
	"""SQLite database for orgs, repositories, access, streams and history."""

	def __init__(self, path: str | Path = ":memory:") -> None:
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.conn = sqlite3.connect(db_path)
		self.conn.row_factory = sqlite3.Row
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
		self.conn.execute("PRAGMA foreign_keys=ON")
		self._create_tables()

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)

	def close(self) -> None:
		self.conn.close()

	# -- Orgs --

	def insert_org(self, org: Org) -> None:
		self.conn.execute(
			"""INSERT INTO orgs
			(id, name, default_agent_access, default_min_karma, is_platform_org, created_at)
			VALUES (?, ?, ?, ?, ?, ?)""",
			(
				org.id, org.name, org.default_agent_access, org.default_min_karma,
				int(org.is_platform_org), org.created_at,
			),
		)
		self.conn.commit()

	def get_org(self, org_id: str) -> Org | None:
		row = self.conn.execute("SELECT * FROM orgs WHERE id=?", (org_id,)).fetchone()
		if row is None:
			return None
		return Org(
			id=row["id"],
			name=row["name"],
			default_agent_access=row["default_agent_access"],
			default_min_karma=row["default_min_karma"],
			is_platform_org=bool(row["is_platform_org"]),
			created_at=row["created_at"],
		)

	# -- Agents --

	def insert_agent(self, agent: Agent) -> None:
		self.conn.execute(
			"INSERT INTO agents (id, name, karma, is_human, created_at) VALUES (?, ?, ?, ?, ?)",
			(agent.id, agent.name, agent.karma, int(agent.is_human), agent.created_at),
		)
		self.conn.commit()

	def update_agent_karma(self, agent_id: str, karma: int) -> None:
		self.conn.execute("UPDATE agents SET karma=? WHERE id=?", (karma, agent_id))
		self.conn.commit()

	def get_agent(self, agent_id: str) -> Agent | None:
		row = self.conn.execute("SELECT * FROM agents WHERE id=?", (agent_id,)).fetchone()
		if row is None:
			return None
		return Agent(
			id=row["id"],
			name=row["name"],
			karma=row["karma"],
			is_human=bool(row["is_human"]),
			created_at=row["created_at"],
		)

	# -- Repositories --

	def insert_repo(self, repo: Repository) -> None:
		self.conn.execute(
			"""INSERT INTO repos
			(id, org_id, name, is_private, ownership_model, merge_mode,
			 consensus_threshold, min_reviews, human_review_weight, agent_access,
			 min_karma, buffer_branch, promote_target, auto_promote_on_green,
			 auto_revert_on_red, clone_url, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				repo.id, repo.org_id, repo.name, int(repo.is_private),
				repo.ownership_model, repo.merge_mode, repo.consensus_threshold,
				repo.min_reviews, repo.human_review_weight, repo.agent_access,
				repo.min_karma, repo.buffer_branch, repo.promote_target,
				int(repo.auto_promote_on_green), int(repo.auto_revert_on_red),
				repo.clone_url, repo.created_at, repo.updated_at,
			),
		)
		self.conn.commit()

	def update_repo(self, repo: Repository) -> None:
		repo.updated_at = _now_iso()
		self.conn.execute(
			"""UPDATE repos SET
			org_id=?, name=?, is_private=?, ownership_model=?, merge_mode=?,
			consensus_threshold=?, min_reviews=?, human_review_weight=?,
			agent_access=?, min_karma=?, buffer_branch=?, promote_target=?,
			auto_promote_on_green=?, auto_revert_on_red=?, clone_url=?, updated_at=?
			WHERE id=?""",
			(
				repo.org_id, repo.name, int(repo.is_private), repo.ownership_model,
				repo.merge_mode, repo.consensus_threshold, repo.min_reviews,
				repo.human_review_weight, repo.agent_access, repo.min_karma,
				repo.buffer_branch, repo.promote_target,
				int(repo.auto_promote_on_green), int(repo.auto_revert_on_red),
				repo.clone_url, repo.updated_at, repo.id,
			),
		)
		self.conn.commit()

	def get_repo(self, repo_id: str) -> Repository | None:
		row = self.conn.execute("SELECT * FROM repos WHERE id=?", (repo_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_repo(row)

	@staticmethod
	def _row_to_repo(row: sqlite3.Row) -> Repository:
		return Repository(
			id=row["id"],
			org_id=row["org_id"],
			name=row["name"],
			is_private=bool(row["is_private"]),
			ownership_model=row["ownership_model"],
			merge_mode=row["merge_mode"],
			consensus_threshold=row["consensus_threshold"],
			min_reviews=row["min_reviews"],
			human_review_weight=row["human_review_weight"],
			agent_access=row["agent_access"],
			min_karma=row["min_karma"],
			buffer_branch=row["buffer_branch"],
			promote_target=row["promote_target"],
			auto_promote_on_green=bool(row["auto_promote_on_green"]),
			auto_revert_on_red=bool(row["auto_revert_on_red"]),
			clone_url=row["clone_url"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- Access grants --

	def upsert_access_grant(self, grant: AccessGrant) -> None:
		self.conn.execute(
			"""INSERT INTO repo_access
			(repo_id, agent_id, access_level, granted_by, granted_at, expires_at, reason)
			VALUES (?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(repo_id, agent_id) DO UPDATE SET
				access_level=excluded.access_level,
				granted_by=excluded.granted_by,
				granted_at=excluded.granted_at,
				expires_at=excluded.expires_at,
				reason=excluded.reason""",
			(
				grant.repo_id, grant.agent_id, grant.access_level, grant.granted_by,
				grant.granted_at, grant.expires_at, grant.reason,
			),
		)
		self.conn.commit()

	def get_access_grant(self, repo_id: str, agent_id: str) -> AccessGrant | None:
		row = self.conn.execute(
			"SELECT * FROM repo_access WHERE repo_id=? AND agent_id=?",
			(repo_id, agent_id),
		).fetchone()
		if row is None:
			return None
		return AccessGrant(
			repo_id=row["repo_id"],
			agent_id=row["agent_id"],
			access_level=row["access_level"],
			granted_by=row["granted_by"],
			granted_at=row["granted_at"],
			expires_at=row["expires_at"],
			reason=row["reason"],
		)

	def delete_access_grant(self, repo_id: str, agent_id: str) -> bool:
		cur = self.conn.execute(
			"DELETE FROM repo_access WHERE repo_id=? AND agent_id=?",
			(repo_id, agent_id),
		)
		self.conn.commit()
		return cur.rowcount > 0

	# -- Maintainers --

	def upsert_maintainer(self, maintainer: Maintainer) -> None:
		self.conn.execute(
			"""INSERT INTO maintainers (repo_id, agent_id, role, added_by, added_at)
			VALUES (?, ?, ?, ?, ?)
			ON CONFLICT(repo_id, agent_id) DO UPDATE SET role=excluded.role""",
			(
				maintainer.repo_id, maintainer.agent_id, maintainer.role,
				maintainer.added_by, maintainer.added_at,
			),
		)
		self.conn.commit()

	def get_maintainer(self, repo_id: str, agent_id: str) -> Maintainer | None:
		row = self.conn.execute(
			"SELECT * FROM maintainers WHERE repo_id=? AND agent_id=?",
			(repo_id, agent_id),
		).fetchone()
		if row is None:
			return None
		return Maintainer(
			repo_id=row["repo_id"],
			agent_id=row["agent_id"],
			role=row["role"],
			added_by=row["added_by"],
			added_at=row["added_at"],
		)

	def remove_maintainer(self, repo_id: str, agent_id: str) -> None:
		self.conn.execute(
			"DELETE FROM maintainers WHERE repo_id=? AND agent_id=?",
			(repo_id, agent_id),
		)
		self.conn.commit()

	# -- Branch rules --

	def insert_branch_rule(self, rule: BranchRule) -> None:
		self.conn.execute(
			"""INSERT INTO branch_rules
			(id, repo_id, branch_pattern, direct_push, required_approvals,
			 require_tests_pass, consensus_threshold, merge_restriction, priority)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				rule.id, rule.repo_id, rule.branch_pattern, rule.direct_push,
				rule.required_approvals, int(rule.require_tests_pass),
				rule.consensus_threshold, rule.merge_restriction, rule.priority,
			),
		)
		self.conn.commit()

	def get_branch_rules(self, repo_id: str) -> list[BranchRule]:
		"""Rules for a repository, most specific first."""
		rows = self.conn.execute(
			"""SELECT * FROM branch_rules WHERE repo_id=?
			ORDER BY priority DESC, length(branch_pattern) DESC""",
			(repo_id,),
		).fetchall()
		return [
			BranchRule(
				id=r["id"],
				repo_id=r["repo_id"],
				branch_pattern=r["branch_pattern"],
				direct_push=r["direct_push"],
				required_approvals=r["required_approvals"],
				require_tests_pass=bool(r["require_tests_pass"]),
				consensus_threshold=r["consensus_threshold"],
				merge_restriction=r["merge_restriction"],
				priority=r["priority"],
			)
			for r in rows
		]

	# -- Streams --

	def insert_stream(self, stream: Stream) -> None:
		self.conn.execute(
			"""INSERT INTO streams
			(id, repo_id, agent_id, name, branch, base_branch, parent_stream_id,
			 status, review_status, external_pr_number, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				stream.id, stream.repo_id, stream.agent_id, stream.name, stream.branch,
				stream.base_branch, stream.parent_stream_id, stream.status,
				stream.review_status, stream.external_pr_number,
				stream.created_at, stream.updated_at,
			),
		)
		self.conn.commit()

	def get_stream(self, stream_id: str) -> Stream | None:
		row = self.conn.execute("SELECT * FROM streams WHERE id=?", (stream_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_stream(row)

	def get_streams(self, repo_id: str, status: str | None = None) -> list[Stream]:
		if status is None:
			rows = self.conn.execute(
				"SELECT * FROM streams WHERE repo_id=? ORDER BY created_at", (repo_id,),
			).fetchall()
		else:
			rows = self.conn.execute(
				"SELECT * FROM streams WHERE repo_id=? AND status=? ORDER BY created_at",
				(repo_id, status),
			).fetchall()
		return [self._row_to_stream(r) for r in rows]

	def transition_stream(self, stream_id: str, from_status: str, to_status: str) -> Stream | None:
		"""Move a stream between statuses atomically.

		Returns the updated stream, or None when the stream was not in
		from_status (lost a race, or already terminal).
		"""
		row = self.conn.execute(
			"""UPDATE streams SET status=?, updated_at=?
			WHERE id=? AND status=?
			RETURNING *""",
			(to_status, _now_iso(), stream_id, from_status),
		).fetchone()
		self.conn.commit()
		if row is None:
			return None
		return self._row_to_stream(row)

	def set_review_status(self, stream_id: str, review_status: str | None) -> None:
		self.conn.execute(
			"UPDATE streams SET review_status=?, updated_at=? WHERE id=?",
			(review_status, _now_iso(), stream_id),
		)
		self.conn.commit()

	def touch_stream(self, stream_id: str) -> None:
		self.conn.execute("UPDATE streams SET updated_at=? WHERE id=?", (_now_iso(), stream_id))
		self.conn.commit()

	def set_external_pr(self, stream_id: str, pr_number: int) -> None:
		"""Link a stream to an external PR. Raises sqlite3.IntegrityError on a duplicate."""
		self.conn.execute(
			"UPDATE streams SET external_pr_number=?, updated_at=? WHERE id=?",
			(pr_number, _now_iso(), stream_id),
		)
		self.conn.commit()

	def get_stream_by_external_pr(self, repo_id: str, pr_number: int) -> Stream | None:
		row = self.conn.execute(
			"SELECT * FROM streams WHERE repo_id=? AND external_pr_number=?",
			(repo_id, pr_number),
		).fetchone()
		if row is None:
			return None
		return self._row_to_stream(row)

	def get_stale_streams(self, cutoff: str) -> list[Stream]:
		rows = self.conn.execute(
			"SELECT * FROM streams WHERE status='active' AND updated_at < ? ORDER BY updated_at",
			(cutoff,),
		).fetchall()
		return [self._row_to_stream(r) for r in rows]

	@staticmethod
	def _row_to_stream(row: sqlite3.Row) -> Stream:
		return Stream(
			id=row["id"],
			repo_id=row["repo_id"],
			agent_id=row["agent_id"],
			name=row["name"],
			branch=row["branch"],
			base_branch=row["base_branch"],
			parent_stream_id=row["parent_stream_id"],
			status=row["status"],
			review_status=row["review_status"],
			external_pr_number=row["external_pr_number"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- Reviews --

	def upsert_review(self, review: Review) -> None:
		"""Insert or overwrite the (stream, reviewer) review. Last write wins."""
		self.conn.execute(
			"""INSERT INTO stream_reviews
			(stream_id, reviewer_id, verdict, feedback, is_human, tested, reviewed_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(stream_id, reviewer_id) DO UPDATE SET
				verdict=excluded.verdict,
				feedback=excluded.feedback,
				is_human=excluded.is_human,
				tested=excluded.tested,
				reviewed_at=excluded.reviewed_at""",
			(
				review.stream_id, review.reviewer_id, review.verdict, review.feedback,
				int(review.is_human), int(review.tested), review.reviewed_at,
			),
		)
		self.conn.commit()

	def get_reviews(self, stream_id: str) -> list[Review]:
		rows = self.conn.execute(
			"SELECT * FROM stream_reviews WHERE stream_id=? ORDER BY reviewed_at",
			(stream_id,),
		).fetchall()
		return [
			Review(
				stream_id=r["stream_id"],
				reviewer_id=r["reviewer_id"],
				verdict=r["verdict"],
				feedback=r["feedback"],
				is_human=bool(r["is_human"]),
				tested=bool(r["tested"]),
				reviewed_at=r["reviewed_at"],
			)
			for r in rows
		]

	def get_review_votes(self, stream_id: str, repo_id: str) -> list[ReviewVote]:
		"""Reviews joined with reviewer karma and maintainer status."""
		rows = self.conn.execute(
			"""SELECT r.reviewer_id, r.verdict, r.is_human, r.tested,
				COALESCE(a.karma, 0) AS karma,
				m.role AS maintainer_role
			FROM stream_reviews r
			LEFT JOIN agents a ON a.id = r.reviewer_id
			LEFT JOIN maintainers m ON m.agent_id = r.reviewer_id AND m.repo_id = ?
			WHERE r.stream_id = ?
			ORDER BY r.reviewed_at""",
			(repo_id, stream_id),
		).fetchall()
		return [
			ReviewVote(
				reviewer_id=r["reviewer_id"],
				verdict=r["verdict"],
				is_human=bool(r["is_human"]),
				tested=bool(r["tested"]),
				karma=r["karma"],
				is_maintainer=r["maintainer_role"] is not None,
			)
			for r in rows
		]

	# -- Merge / promotion / stabilization history --

	def insert_merge(self, record: MergeRecord) -> bool:
		"""Record a buffer merge. Returns False if the stream already has one."""
		cur = self.conn.execute(
			"""INSERT OR IGNORE INTO merges
			(id, repo_id, stream_id, agent_id, merge_commit, target_branch,
			 conflict_resolved, merged_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.repo_id, record.stream_id, record.agent_id,
				record.merge_commit, record.target_branch,
				int(record.conflict_resolved), record.merged_at,
			),
		)
		self.conn.commit()
		return cur.rowcount > 0

	def get_merge_for_stream(self, stream_id: str) -> MergeRecord | None:
		row = self.conn.execute("SELECT * FROM merges WHERE stream_id=?", (stream_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_merge(row)

	def get_merges(self, repo_id: str, limit: int = 50) -> list[MergeRecord]:
		rows = self.conn.execute(
			"SELECT * FROM merges WHERE repo_id=? ORDER BY merged_at DESC LIMIT ?",
			(repo_id, limit),
		).fetchall()
		return [self._row_to_merge(r) for r in rows]

	@staticmethod
	def _row_to_merge(row: sqlite3.Row) -> MergeRecord:
		return MergeRecord(
			id=row["id"],
			repo_id=row["repo_id"],
			stream_id=row["stream_id"],
			agent_id=row["agent_id"],
			merge_commit=row["merge_commit"],
			target_branch=row["target_branch"],
			conflict_resolved=bool(row["conflict_resolved"]),
			merged_at=row["merged_at"],
		)

	def insert_promotion(self, record: PromotionRecord) -> bool:
		"""Record a promotion. Returns False on a replay of the same (from, to) pair."""
		cur = self.conn.execute(
			"""INSERT OR IGNORE INTO promotions
			(id, repo_id, from_branch, to_branch, from_commit, to_commit,
			 triggered_by, agent_id, promoted_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.repo_id, record.from_branch, record.to_branch,
				record.from_commit, record.to_commit, record.triggered_by,
				record.agent_id, record.promoted_at,
			),
		)
		self.conn.commit()
		return cur.rowcount > 0

	def get_promotions(self, repo_id: str, limit: int = 50) -> list[PromotionRecord]:
		rows = self.conn.execute(
			"SELECT * FROM promotions WHERE repo_id=? ORDER BY promoted_at DESC LIMIT ?",
			(repo_id, limit),
		).fetchall()
		return [
			PromotionRecord(
				id=r["id"],
				repo_id=r["repo_id"],
				from_branch=r["from_branch"],
				to_branch=r["to_branch"],
				from_commit=r["from_commit"],
				to_commit=r["to_commit"],
				triggered_by=r["triggered_by"],
				agent_id=r["agent_id"],
				promoted_at=r["promoted_at"],
			)
			for r in rows
		]

	def insert_stabilization(self, record: Stabilization) -> None:
		self.conn.execute(
			"""INSERT INTO stabilizations
			(id, repo_id, result, buffer_commit, breaking_stream_id, output, stabilized_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.repo_id, record.result, record.buffer_commit,
				record.breaking_stream_id, record.output, record.stabilized_at,
			),
		)
		self.conn.commit()

	def get_stabilizations(self, repo_id: str, limit: int = 50) -> list[Stabilization]:
		rows = self.conn.execute(
			"SELECT * FROM stabilizations WHERE repo_id=? ORDER BY stabilized_at DESC LIMIT ?",
			(repo_id, limit),
		).fetchall()
		return [
			Stabilization(
				id=r["id"],
				repo_id=r["repo_id"],
				result=r["result"],
				buffer_commit=r["buffer_commit"],
				breaking_stream_id=r["breaking_stream_id"],
				output=r["output"],
				stabilized_at=r["stabilized_at"],
			)
			for r in rows
		]
