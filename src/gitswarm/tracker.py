"""Embedded per-repository store kept inside the clone.

Holds git mechanics only: which stream lives on which branch, which agent
owns which worktree, and the commits made on each stream. Governance
settings are never stored here.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from gitswarm.models import StreamCommit, TrackedStream, Worktree, _now_iso

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS streams (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL DEFAULT '',
	agent_id TEXT NOT NULL,
	branch TEXT NOT NULL,
	base_branch TEXT NOT NULL DEFAULT '',
	parent_stream_id TEXT,
	created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS worktrees (
	agent_id TEXT PRIMARY KEY,
	path TEXT NOT NULL,
	branch TEXT NOT NULL DEFAULT '',
	current_stream TEXT,
	updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_commits (
	id TEXT PRIMARY KEY,
	stream_id TEXT NOT NULL,
	agent_id TEXT NOT NULL,
	commit_hash TEXT NOT NULL,
	message TEXT NOT NULL DEFAULT '',
	created_at TEXT NOT NULL,
	FOREIGN KEY (stream_id) REFERENCES streams(id)
);

CREATE INDEX IF NOT EXISTS idx_stream_commits_stream ON stream_commits(stream_id, created_at);
"""


class StreamTracker:
	"""SQLite sidecar for one repository clone."""

	def __init__(self, path: str | Path) -> None:
		self.path = Path(path)
		self.conn = sqlite3.connect(str(self.path))
		self.conn.row_factory = sqlite3.Row
		self.conn.execute("PRAGMA journal_mode=WAL")
		self.conn.execute("PRAGMA foreign_keys=ON")
		self.conn.executescript(SCHEMA_SQL)

	def close(self) -> None:
		self.conn.close()

	# -- Streams --

	def record_stream(self, stream: TrackedStream) -> None:
		self.conn.execute(
			"""INSERT OR REPLACE INTO streams
			(id, name, agent_id, branch, base_branch, parent_stream_id, created_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)""",
			(
				stream.id, stream.name, stream.agent_id, stream.branch,
				stream.base_branch, stream.parent_stream_id, stream.created_at,
			),
		)
		self.conn.commit()

	def get_stream(self, stream_id: str) -> TrackedStream | None:
		row = self.conn.execute("SELECT * FROM streams WHERE id=?", (stream_id,)).fetchone()
		if row is None:
			return None
		return TrackedStream(
			id=row["id"],
			name=row["name"],
			agent_id=row["agent_id"],
			branch=row["branch"],
			base_branch=row["base_branch"],
			parent_stream_id=row["parent_stream_id"],
			created_at=row["created_at"],
		)

	# -- Worktrees --

	def upsert_worktree(self, worktree: Worktree) -> None:
		worktree.updated_at = _now_iso()
		self.conn.execute(
			"""INSERT INTO worktrees (agent_id, path, branch, current_stream, updated_at)
			VALUES (?, ?, ?, ?, ?)
			ON CONFLICT(agent_id) DO UPDATE SET
				path=excluded.path,
				branch=excluded.branch,
				current_stream=excluded.current_stream,
				updated_at=excluded.updated_at""",
			(
				worktree.agent_id, worktree.path, worktree.branch,
				worktree.current_stream, worktree.updated_at,
			),
		)
		self.conn.commit()

	def get_worktree(self, agent_id: str) -> Worktree | None:
		row = self.conn.execute("SELECT * FROM worktrees WHERE agent_id=?", (agent_id,)).fetchone()
		if row is None:
			return None
		return Worktree(
			agent_id=row["agent_id"],
			path=row["path"],
			branch=row["branch"],
			current_stream=row["current_stream"],
			updated_at=row["updated_at"],
		)

	def list_worktrees(self) -> list[Worktree]:
		rows = self.conn.execute("SELECT * FROM worktrees ORDER BY agent_id").fetchall()
		return [
			Worktree(
				agent_id=r["agent_id"],
				path=r["path"],
				branch=r["branch"],
				current_stream=r["current_stream"],
				updated_at=r["updated_at"],
			)
			for r in rows
		]

	# -- Commits --

	def record_commit(self, commit: StreamCommit) -> None:
		self.conn.execute(
			"""INSERT INTO stream_commits (id, stream_id, agent_id, commit_hash, message, created_at)
			VALUES (?, ?, ?, ?, ?, ?)""",
			(
				commit.id, commit.stream_id, commit.agent_id, commit.commit_hash,
				commit.message, commit.created_at,
			),
		)
		self.conn.commit()

	def get_commits(self, stream_id: str) -> list[StreamCommit]:
		rows = self.conn.execute(
			"SELECT * FROM stream_commits WHERE stream_id=? ORDER BY created_at, rowid",
			(stream_id,),
		).fetchall()
		return [
			StreamCommit(
				id=r["id"],
				stream_id=r["stream_id"],
				agent_id=r["agent_id"],
				commit_hash=r["commit_hash"],
				message=r["message"],
				created_at=r["created_at"],
			)
			for r in rows
		]
