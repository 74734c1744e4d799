"""Tests for the workspace manager against real git repositories."""

from __future__ import annotations

import asyncio
import json
import os
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from gitswarm.config import GitswarmConfig
from gitswarm.db import Database
from gitswarm.errors import (
	GitTimeoutError,
	PromotionDivergedError,
	RepoNotFoundError,
	RepoNotInitializedError,
	StreamStateError,
)
from gitswarm.event_stream import EventStream
from gitswarm.models import Agent, FileResolution, Repository
from gitswarm.workspace import WorkspaceManager

_GIT_ENV = {
	**os.environ,
	"GIT_AUTHOR_NAME": "test",
	"GIT_AUTHOR_EMAIL": "test@test.com",
	"GIT_COMMITTER_NAME": "test",
	"GIT_COMMITTER_EMAIL": "test@test.com",
}


def _git(cwd: Path | str, *args: str) -> str:
	result = subprocess.run(
		["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True, env=_GIT_ENV,
	)
	return result.stdout.strip()


@pytest.fixture()
def config(tmp_path: Path) -> GitswarmConfig:
	cfg = GitswarmConfig()
	cfg.storage.repos_dir = str(tmp_path / "repos")
	return cfg


@pytest.fixture()
def db() -> Database:
	d = Database(":memory:")
	d.insert_repo(Repository(id="r1", name="demo"))
	d.insert_agent(Agent(id="a1"))
	d.insert_agent(Agent(id="a2"))
	yield d
	d.close()


@pytest.fixture()
async def manager(config: GitswarmConfig, db: Database) -> WorkspaceManager:
	mgr = WorkspaceManager(config, db)
	yield mgr
	await mgr.close_all()


@pytest.fixture()
async def repo_path(manager: WorkspaceManager) -> Path:
	ws = await manager.init_repo("r1")
	return ws.path


@pytest.fixture()
def source_repo(tmp_path: Path) -> Path:
	repo = tmp_path / "source"
	repo.mkdir()
	_git(repo, "init")
	_git(repo, "checkout", "-b", "main")
	(repo / "README.md").write_text("# Source\n")
	_git(repo, "add", ".")
	_git(repo, "commit", "-m", "Initial commit")
	return repo


async def _stream_with_file(
	manager: WorkspaceManager, agent_id: str, path: str, content: str, **kwargs: str,
) -> str:
	handle = await manager.create_stream("r1", agent_id, **kwargs)
	await manager.write_file("r1", agent_id, path, content)
	await manager.commit_changes("r1", agent_id, f"Write {path}")
	return handle.stream_id


def _tip(repo_path: Path, ref: str = "buffer") -> str:
	return _git(repo_path, "rev-parse", ref)


class TestInit:
	async def test_init_empty_repository(self, manager: WorkspaceManager) -> None:
		ws = await manager.init_repo("r1")
		assert (ws.path / ".git").exists()
		assert (ws.path / ".gitswarm-cascade.db").exists()
		assert _git(ws.path, "rev-parse", "--abbrev-ref", "HEAD") == "buffer"
		assert _tip(ws.path, "main") == _tip(ws.path, "buffer")

	async def test_init_is_idempotent(self, manager: WorkspaceManager) -> None:
		first = await manager.init_repo("r1")
		second = await manager.init_repo("r1")
		assert first is second

	async def test_existing_clone_is_reused(self, config: GitswarmConfig, db: Database) -> None:
		first = WorkspaceManager(config, db)
		ws = await first.init_repo("r1")
		head = _tip(ws.path)
		await first.close_all()

		second = WorkspaceManager(config, db)
		attached = await second.get_or_init_workspace("r1")
		assert attached.path == ws.path
		assert _tip(attached.path) == head
		await second.close_all()

	async def test_init_from_clone_source(
		self, manager: WorkspaceManager, db: Database, source_repo: Path,
	) -> None:
		db.insert_repo(Repository(id="r2"))
		ws = await manager.init_repo("r2", clone_source=str(source_repo))
		assert (ws.path / "README.md").read_text() == "# Source\n"
		assert _tip(ws.path, "main") == _tip(source_repo, "main")
		assert _tip(ws.path, "buffer") == _tip(source_repo, "main")

	async def test_attach_requires_init(self, manager: WorkspaceManager) -> None:
		with pytest.raises(RepoNotInitializedError):
			await manager.get_or_init_workspace("r1")

	async def test_unknown_repository(self, manager: WorkspaceManager) -> None:
		with pytest.raises(RepoNotFoundError):
			await manager.init_repo("nope")

	async def test_invalid_repo_id(self, manager: WorkspaceManager) -> None:
		with pytest.raises(ValueError):
			await manager.init_repo("../escape")


class TestStreamsAndFiles:
	async def test_create_stream_checks_out_worktree(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		handle = await manager.create_stream("r1", "a1", name="feature")
		assert handle.branch == f"stream/{handle.stream_id}"
		assert _git(handle.worktree_path, "rev-parse", "--abbrev-ref", "HEAD") == handle.branch
		stream = manager.streams.require(handle.stream_id)
		assert stream.status == "active"
		assert stream.base_branch == "buffer"

	async def test_worktree_is_reused_per_agent(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		first = await manager.create_stream("r1", "a1")
		second = await manager.create_stream("r1", "a1")
		assert first.worktree_path == second.worktree_path
		assert _git(second.worktree_path, "rev-parse", "--abbrev-ref", "HEAD") == second.branch

	async def test_missing_base_branch(self, manager: WorkspaceManager, repo_path: Path) -> None:
		with pytest.raises(ValueError):
			await manager.create_stream("r1", "a1", base_branch="does-not-exist")

	async def test_file_operations(self, manager: WorkspaceManager, repo_path: Path) -> None:
		await manager.create_stream("r1", "a1")
		await manager.write_file("r1", "a1", "src/app.py", "print('hi')\n")
		assert await manager.read_file("r1", "a1", "src/app.py") == "print('hi')\n"
		assert "src/app.py" in await manager.list_files("r1", "a1")
		assert await manager.list_files("r1", "a1", "src") == ["src/app.py"]

		await manager.delete_file("r1", "a1", "src/app.py")
		assert "src/app.py" not in await manager.list_files("r1", "a1")

	async def test_paths_must_stay_inside_worktree(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		await manager.create_stream("r1", "a1")
		for bad in ("../outside.txt", ".git/config", "/etc/passwd"):
			with pytest.raises(ValueError):
				await manager.write_file("r1", "a1", bad, "x")

	async def test_agent_without_worktree(self, manager: WorkspaceManager, repo_path: Path) -> None:
		with pytest.raises(LookupError):
			await manager.read_file("r1", "a2", "README.md")

	async def test_commit_records_author_and_tracker_entry(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		handle = await manager.create_stream("r1", "a1")
		await manager.write_file("r1", "a1", "notes.txt", "hello\n")
		result = await manager.commit_changes("r1", "a1", "Add notes")

		assert result.stream_id == handle.stream_id
		assert result.commit == _tip(repo_path, handle.branch)
		assert _git(handle.worktree_path, "log", "-1", "--format=%an <%ae>") == "a1 <a1@gitswarm.local>"
		ws = await manager.get_or_init_workspace("r1")
		assert [c.commit_hash for c in ws.tracker.get_commits(handle.stream_id)] == [result.commit]

	async def test_nothing_staged(self, manager: WorkspaceManager, repo_path: Path) -> None:
		await manager.create_stream("r1", "a1")
		with pytest.raises(ValueError, match="Nothing staged"):
			await manager.commit_changes("r1", "a1", "empty")

	async def test_commit_to_abandoned_stream(self, manager: WorkspaceManager, repo_path: Path) -> None:
		handle = await manager.create_stream("r1", "a1")
		manager.streams.abandon(handle.stream_id)
		await manager.write_file("r1", "a1", "late.txt", "x\n")
		with pytest.raises(StreamStateError):
			await manager.commit_changes("r1", "a1", "too late")

	async def test_agents_commit_concurrently(self, manager: WorkspaceManager, repo_path: Path) -> None:
		await manager.create_stream("r1", "a1")
		await manager.create_stream("r1", "a2")
		await manager.write_file("r1", "a1", "one.txt", "1\n")
		await manager.write_file("r1", "a2", "two.txt", "2\n")
		results = await asyncio.gather(
			manager.commit_changes("r1", "a1", "one"),
			manager.commit_changes("r1", "a2", "two"),
		)
		assert results[0].commit != results[1].commit

	async def test_fork_starts_from_parent_branch(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		parent_id = await _stream_with_file(manager, "a1", "parent.txt", "from parent\n")
		child = await manager.create_stream("r1", "a2", parent_stream_id=parent_id)
		assert child.parent_stream_id == parent_id
		assert (Path(child.worktree_path) / "parent.txt").read_text() == "from parent\n"


class TestMergeToBuffer:
	async def test_clean_merge(self, manager: WorkspaceManager, repo_path: Path) -> None:
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		outcome = await manager.merge_to_buffer("r1", stream_id)

		assert outcome.merged
		assert outcome.merge_commit == _tip(repo_path)
		parents = _git(repo_path, "rev-list", "--parents", "-n", "1", "buffer").split()
		assert len(parents) == 3
		assert _git(repo_path, "show", "buffer:feature.txt") == "done"
		assert manager.streams.require(stream_id).status == "merged"

	async def test_repeat_merge_is_reported_as_already_merged(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		first = await manager.merge_to_buffer("r1", stream_id)
		second = await manager.merge_to_buffer("r1", stream_id)
		assert second.merged
		assert second.already_merged
		assert second.merge_commit == first.merge_commit
		assert _tip(repo_path) == first.merge_commit

	async def test_unknown_and_abandoned_streams(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		missing = await manager.merge_to_buffer("r1", "nope")
		assert (missing.kind, missing.reason) == ("failed", "stream_not_found")

		handle = await manager.create_stream("r1", "a1")
		manager.streams.abandon(handle.stream_id)
		abandoned = await manager.merge_to_buffer("r1", handle.stream_id)
		assert (abandoned.kind, abandoned.reason) == ("failed", "stream_abandoned")

	async def test_concurrent_merges_are_serialized(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		s1 = await _stream_with_file(manager, "a1", "one.txt", "1\n")
		s2 = await _stream_with_file(manager, "a2", "two.txt", "2\n")
		o1, o2 = await asyncio.gather(
			manager.merge_to_buffer("r1", s1),
			manager.merge_to_buffer("r1", s2),
		)
		assert o1.merged and o2.merged
		first_parents = {_git(repo_path, "rev-parse", f"{o.merge_commit}^1") for o in (o1, o2)}
		assert o1.merge_commit in first_parents or o2.merge_commit in first_parents
		assert _tip(repo_path) in (o1.merge_commit, o2.merge_commit)

	async def test_timeout_aborts_and_releases_lock(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		stream_id = await _stream_with_file(manager, "a1", "slow.txt", "zzz\n")
		before = _tip(repo_path)
		original = manager._run_git_in

		async def slow_merge(cwd: str | Path, *args: str, **kwargs: object) -> tuple[bool, str]:
			if "--no-ff" in args:
				raise GitTimeoutError(args, 1)
			return await original(cwd, *args, **kwargs)  # type: ignore[arg-type]

		manager._run_git_in = AsyncMock(side_effect=slow_merge)  # type: ignore[method-assign]
		with pytest.raises(GitTimeoutError):
			await manager.merge_to_buffer("r1", stream_id)

		assert not manager.locks.is_locked("r1")
		assert _tip(repo_path) == before
		assert manager.streams.require(stream_id).status == "active"

		del manager._run_git_in
		assert (await manager.merge_to_buffer("r1", stream_id)).merged

	async def test_failed_bookkeeping_rolls_back_merge_commit(
		self, manager: WorkspaceManager, repo_path: Path, db: Database,
	) -> None:
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		before = _tip(repo_path)
		manager.streams.mark_merged = MagicMock(  # type: ignore[method-assign]
			side_effect=StreamStateError(f"Stream {stream_id} is abandoned; cannot merge"),
		)

		with pytest.raises(StreamStateError):
			await manager.merge_to_buffer("r1", stream_id)

		assert _tip(repo_path) == before
		assert _git(repo_path, "status", "--porcelain") == ""
		assert db.get_merge_for_stream(stream_id) is None
		assert not manager.locks.is_locked("r1")

		del manager.streams.mark_merged
		assert (await manager.merge_to_buffer("r1", stream_id)).merged

	async def test_merge_emits_event(self, config: GitswarmConfig, db: Database, tmp_path: Path) -> None:
		events = EventStream(tmp_path / "events.jsonl")
		events.open()
		mgr = WorkspaceManager(config, db, events=events)
		await mgr.init_repo("r1")
		stream_id = await _stream_with_file(mgr, "a1", "feature.txt", "done\n")
		await mgr.merge_to_buffer("r1", stream_id)
		await mgr.close_all()
		events.close()

		records = [json.loads(line) for line in (tmp_path / "events.jsonl").read_text().splitlines()]
		types = [r["event_type"] for r in records]
		assert types == ["repo_initialized", "stream_created", "stream_merged"]
		assert records[-1]["stream_id"] == stream_id


class TestConflicts:
	async def _conflicting_streams(self, manager: WorkspaceManager) -> tuple[str, str]:
		base = await _stream_with_file(manager, "a1", "shared.txt", "base\n")
		assert (await manager.merge_to_buffer("r1", base)).merged
		ours = await _stream_with_file(manager, "a1", "shared.txt", "ours\n")
		theirs = await _stream_with_file(manager, "a2", "shared.txt", "theirs\n")
		assert (await manager.merge_to_buffer("r1", ours)).merged
		return ours, theirs

	async def test_conflict_leaves_buffer_untouched(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		_, theirs = await self._conflicting_streams(manager)
		before = _tip(repo_path)

		outcome = await manager.merge_to_buffer("r1", theirs)
		assert outcome.conflicted
		assert outcome.conflict_paths == ["shared.txt"]
		conflict = outcome.conflicts[0]
		assert (conflict.base, conflict.ours, conflict.theirs) == ("base\n", "ours\n", "theirs\n")

		assert _tip(repo_path) == before
		assert _git(repo_path, "status", "--porcelain") == ""
		assert manager.streams.require(theirs).status == "active"

	async def test_resolve_conflict(self, manager: WorkspaceManager, repo_path: Path, db: Database) -> None:
		_, theirs = await self._conflicting_streams(manager)
		resolution = [FileResolution(path="shared.txt", content="ours\ntheirs\n")]

		outcome = await manager.resolve_conflict("r1", theirs, resolution)
		assert outcome.merged
		assert outcome.merge_commit == _tip(repo_path)
		assert _git(repo_path, "show", "buffer:shared.txt") == "ours\ntheirs"
		record = db.get_merge_for_stream(theirs)
		assert record is not None
		assert record.conflict_resolved

		again = await manager.resolve_conflict("r1", theirs, resolution)
		assert again.already_merged
		assert again.merge_commit == outcome.merge_commit

	async def test_incomplete_resolution_is_aborted(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		_, theirs = await self._conflicting_streams(manager)
		before = _tip(repo_path)

		outcome = await manager.resolve_conflict("r1", theirs, [])
		assert outcome.conflicted
		assert outcome.conflict_paths == ["shared.txt"]
		assert _tip(repo_path) == before
		assert _git(repo_path, "status", "--porcelain") == ""



	async def test_non_ascii_conflict_paths_are_reported_verbatim(
		self, manager: WorkspaceManager, repo_path: Path,
	) -> None:
		base = await _stream_with_file(manager, "a1", "café.txt", "base\n")
		assert (await manager.merge_to_buffer("r1", base)).merged
		ours = await _stream_with_file(manager, "a1", "café.txt", "ours\n")
		theirs = await _stream_with_file(manager, "a2", "café.txt", "theirs\n")
		assert (await manager.merge_to_buffer("r1", ours)).merged

		outcome = await manager.merge_to_buffer("r1", theirs)
		assert outcome.conflicted
		assert outcome.conflict_paths == ["café.txt"]
		conflict = outcome.conflicts[0]
		assert (conflict.base, conflict.ours, conflict.theirs) == ("base\n", "ours\n", "theirs\n")

		resolved = await manager.resolve_conflict(
			"r1", theirs, [FileResolution(path="café.txt", content="both\n")],
		)
		assert resolved.merged
		assert _git(repo_path, "show", "buffer:café.txt") == "both"

	@pytest.mark.parametrize("path", ["worktrees/a1/shared.txt", ".gitswarm-cascade.db", "other.txt"])
	async def test_resolution_outside_conflict_set_is_refused(
		self, manager: WorkspaceManager, repo_path: Path, path: str,
	) -> None:
		_, theirs = await self._conflicting_streams(manager)
		before = _tip(repo_path)
		ws = await manager.get_or_init_workspace("r1")
		worktree_file = ws.worktree_path("a1") / "shared.txt"
		worktree_content = worktree_file.read_text()

		resolutions = [
			FileResolution(path="shared.txt", content="merged\n"),
			FileResolution(path=path, content="clobbered\n"),
		]
		with pytest.raises(ValueError, match="not in conflict"):
			await manager.resolve_conflict("r1", theirs, resolutions)

		assert worktree_file.read_text() == worktree_content
		assert (repo_path / ".gitswarm-cascade.db").read_bytes().startswith(b"SQLite format 3")
		assert not (repo_path / "other.txt").exists()
		assert _tip(repo_path) == before
		assert _git(repo_path, "status", "--porcelain") == ""
		assert manager.streams.require(theirs).status == "active"
		assert not manager.locks.is_locked("r1")


class TestPromote:
	async def test_fast_forward(self, manager: WorkspaceManager, repo_path: Path, db: Database) -> None:
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		merged = await manager.merge_to_buffer("r1", stream_id)
		old_main = _tip(repo_path, "main")

		result = await manager.promote("r1", agent_id="a1")
		assert result.promoted
		assert (result.from_commit, result.to_commit) == (old_main, merged.merge_commit)
		assert _tip(repo_path, "main") == merged.merge_commit
		assert _git(repo_path, "rev-parse", "--abbrev-ref", "HEAD") == "buffer"
		assert len(db.get_promotions("r1")) == 1

	async def test_nothing_to_promote(self, manager: WorkspaceManager, repo_path: Path) -> None:
		result = await manager.promote("r1")
		assert not result.promoted
		assert result.from_commit == result.to_commit

	async def test_diverged_trunk_is_refused(self, manager: WorkspaceManager, repo_path: Path) -> None:
		_git(repo_path, "checkout", "main")
		(repo_path / "hotfix.txt").write_text("hotfix\n")
		_git(repo_path, "add", "hotfix.txt")
		_git(repo_path, "-c", "user.name=test", "-c", "user.email=test@test.com", "commit", "-m", "hotfix")
		_git(repo_path, "checkout", "buffer")
		main_before = _tip(repo_path, "main")

		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		await manager.merge_to_buffer("r1", stream_id)

		with pytest.raises(PromotionDivergedError):
			await manager.promote("r1")
		assert _tip(repo_path, "main") == main_before
		assert not manager.locks.is_locked("r1")

	async def test_buffer_state(self, manager: WorkspaceManager, repo_path: Path) -> None:
		state = await manager.get_buffer_state("r1")
		assert state.buffer_branch == "buffer"
		assert state.buffer_commit == _tip(repo_path)

	async def test_push_without_remote(self, manager: WorkspaceManager, repo_path: Path) -> None:
		assert await manager.push_to_remote("r1") is False


class TestStabilization:
	def _enable(self, db: Database, **flags: bool) -> None:
		repo = db.get_repo("r1")
		assert repo is not None
		for key, value in flags.items():
			setattr(repo, key, value)
		db.update_repo(repo)

	async def test_green_auto_promotes(self, manager: WorkspaceManager, repo_path: Path, db: Database) -> None:
		self._enable(db, auto_promote_on_green=True)
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		await manager.merge_to_buffer("r1", stream_id)
		tip = _tip(repo_path)

		outcome = await manager.report_stabilization("r1", "green", tip)
		assert outcome.promotion is not None
		assert outcome.promotion.promoted
		assert _tip(repo_path, "main") == tip
		assert db.get_promotions("r1")[0].triggered_by == "auto"

	async def test_green_for_stale_commit_does_not_promote(
		self, manager: WorkspaceManager, repo_path: Path, db: Database,
	) -> None:
		self._enable(db, auto_promote_on_green=True)
		stale = _tip(repo_path)
		stream_id = await _stream_with_file(manager, "a1", "feature.txt", "done\n")
		await manager.merge_to_buffer("r1", stream_id)

		outcome = await manager.report_stabilization("r1", "green", stale)
		assert outcome.promotion is None
		assert _tip(repo_path, "main") == stale
		assert len(db.get_stabilizations("r1")) == 1

	async def test_red_reverts_breaking_stream(
		self, manager: WorkspaceManager, repo_path: Path, db: Database,
	) -> None:
		stream_id = await _stream_with_file(manager, "a1", "broken.txt", "oops\n")
		await manager.merge_to_buffer("r1", stream_id)

		outcome = await manager.report_stabilization(
			"r1", "red", _tip(repo_path), breaking_stream_id=stream_id, output="1 failed",
		)
		assert outcome.reverted_commit == _tip(repo_path)
		assert "broken.txt" not in _git(repo_path, "ls-tree", "--name-only", "buffer").split()
		assert manager.streams.require(stream_id).status == "merged"
		assert db.get_stabilizations("r1")[0].breaking_stream_id == stream_id

	async def test_red_without_auto_revert(
		self, manager: WorkspaceManager, repo_path: Path, db: Database,
	) -> None:
		self._enable(db, auto_revert_on_red=False)
		stream_id = await _stream_with_file(manager, "a1", "broken.txt", "oops\n")
		await manager.merge_to_buffer("r1", stream_id)
		tip = _tip(repo_path)

		outcome = await manager.report_stabilization("r1", "red", tip, breaking_stream_id=stream_id)
		assert outcome.reverted_commit is None
		assert _tip(repo_path) == tip

	async def test_unknown_result(self, manager: WorkspaceManager, repo_path: Path) -> None:
		with pytest.raises(ValueError):
			await manager.report_stabilization("r1", "yellow", _tip(repo_path))
