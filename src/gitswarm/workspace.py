"""Repository workspace manager: clones, agent worktrees, buffer merges and promotion.

Layout per repository under ``repos_dir``::

	<repo_id>/                    canonical clone, buffer branch checked out
	<repo_id>/.gitswarm-cascade.db embedded stream/worktree store
	<repo_id>/worktrees/<agent>/  one worktree per agent

Every operation that checks out, merges or promotes in the canonical clone
holds the repository lock. Agent file edits and commits happen in the
agent's own worktree and do not take the lock.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from gitswarm.config import GitswarmConfig
from gitswarm.constants import (
	EVENT_MERGE_CONFLICT,
	EVENT_PROMOTION_COMPLETED,
	EVENT_REPO_INITIALIZED,
	EVENT_STABILIZATION,
	EVENT_STREAM_CREATED,
	EVENT_STREAM_MERGED,
	STREAM_ABANDONED,
	STREAM_MERGED,
	TRACKER_DB_NAME,
	WORKTREES_DIR_NAME,
)
from gitswarm.db import Database
from gitswarm.errors import (
	GitCommandError,
	GitTimeoutError,
	PromotionDivergedError,
	RepoNotFoundError,
	RepoNotInitializedError,
	StreamStateError,
)
from gitswarm.event_stream import EventStream
from gitswarm.locks import RepoLockRegistry
from gitswarm.models import (
	BufferState,
	CommitResult,
	ConflictFile,
	FileResolution,
	MergeOutcome,
	MergeRecord,
	PromotionRecord,
	PromotionResult,
	Repository,
	Stabilization,
	StabilizationResult,
	Stream,
	StreamCommit,
	StreamHandle,
	TrackedStream,
	Worktree,
	_new_id,
)
from gitswarm.streams import StreamLifecycle
from gitswarm.tracker import StreamTracker

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")
_EXCLUDE_ENTRIES = (f"/{WORKTREES_DIR_NAME}/", f"/{TRACKER_DB_NAME}*")


def _validate_id(kind: str, value: str) -> None:
	if not value or not _SAFE_ID.match(value) or value in (".", ".."):
		raise ValueError(f"Invalid {kind}: {value!r}")


def _resolve_inside(root: Path, rel_path: str) -> Path:
	"""Resolve ``rel_path`` under ``root``, refusing escapes and the .git dir."""
	if not rel_path or Path(rel_path).is_absolute():
		raise ValueError(f"Path must be relative: {rel_path!r}")
	if ".git" in Path(rel_path).parts:
		raise ValueError(f"Path may not touch .git: {rel_path!r}")
	base = root.resolve()
	target = (base / rel_path).resolve()
	try:
		target.relative_to(base)
	except ValueError:
		raise ValueError(f"Path escapes the worktree: {rel_path!r}") from None
	return target


@dataclass
class RepoWorkspace:
	"""An attached repository clone and its embedded store.

	Branch names are not cached here; they are re-read from the
	relational store on every operation.
	"""

	repo_id: str
	path: Path
	tracker: StreamTracker

	@property
	def worktrees_dir(self) -> Path:
		return self.path / WORKTREES_DIR_NAME

	def worktree_path(self, agent_id: str) -> Path:
		return self.worktrees_dir / agent_id


class WorkspaceManager:
	"""Owns one clone per repository and one worktree per (repository, agent)."""

	def __init__(
		self,
		config: GitswarmConfig,
		db: Database,
		events: EventStream | None = None,
		streams: StreamLifecycle | None = None,
	) -> None:
		self._config = config
		self._db = db
		self._events = events
		self.streams = streams or StreamLifecycle(db, events)
		self.repos_dir = config.storage.resolved_repos_dir
		self.locks = RepoLockRegistry()
		self._workspaces: dict[str, RepoWorkspace] = {}
		self._env = self._git_env()

	def _git_env(self) -> dict[str, str]:
		env = os.environ.copy()
		git = self._config.git
		env["GIT_AUTHOR_NAME"] = git.author_name
		env["GIT_AUTHOR_EMAIL"] = git.author_email
		env["GIT_COMMITTER_NAME"] = git.author_name
		env["GIT_COMMITTER_EMAIL"] = git.author_email
		env["GIT_TERMINAL_PROMPT"] = "0"
		return env

	# -- git plumbing --

	async def _run_git_in(
		self,
		cwd: str | Path,
		*args: str,
		timeout: float | None = None,
		merge_stderr: bool = True,
	) -> tuple[bool, str]:
		"""Run a git command in ``cwd``. Raises GitTimeoutError on timeout."""
		limit = timeout or self._config.git.command_timeout
		proc = await asyncio.create_subprocess_exec(
			"git", *args,
			cwd=str(cwd),
			env=self._env,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
		)
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=limit)
		except asyncio.TimeoutError:
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
			raise GitTimeoutError(args, limit) from None
		except asyncio.CancelledError:
			try:
				proc.kill()
			except ProcessLookupError:
				pass
			raise
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode == 0, output)

	async def _require_git(self, cwd: str | Path, *args: str, timeout: float | None = None) -> str:
		ok, output = await self._run_git_in(cwd, *args, timeout=timeout)
		if not ok:
			raise GitCommandError(args, output)
		return output

	async def _rev_parse(self, cwd: str | Path, ref: str) -> str:
		output = await self._require_git(cwd, "rev-parse", "--verify", f"{ref}^{{commit}}")
		return output.strip()

	async def _ref_exists(self, cwd: str | Path, ref: str) -> bool:
		ok, _ = await self._run_git_in(cwd, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
		return ok

	def _emit(
		self,
		event_type: str,
		repo_id: str,
		stream_id: str = "",
		agent_id: str = "",
		details: dict[str, object] | None = None,
	) -> None:
		if self._events is not None:
			self._events.emit(
				event_type, repo_id=repo_id, stream_id=stream_id, agent_id=agent_id, details=details,
			)

	def _repo(self, repo_id: str) -> Repository:
		repo = self._db.get_repo(repo_id)
		if repo is None:
			raise RepoNotFoundError(repo_id)
		return repo

	# -- initialization --

	async def init_repo(self, repo_id: str, clone_source: str | None = None) -> RepoWorkspace:
		"""Create or reuse the clone for ``repo_id``. Safe to call repeatedly."""
		_validate_id("repo id", repo_id)
		repo = self._repo(repo_id)
		source = clone_source or repo.clone_url

		async with self.locks.hold(repo_id):
			cached = self._workspaces.get(repo_id)
			if cached is not None:
				return cached

			path = self.repos_dir / repo_id
			if (path / ".git").exists():
				logger.info("Reusing existing clone for %s at %s", repo_id, path)
			elif source:
				await self._clone(repo_id, source, path)
			else:
				await self._init_empty(path, repo.promote_target)

			await self._ensure_branch(path, repo.promote_target, fallback="HEAD")
			await self._ensure_branch(path, repo.buffer_branch, fallback=repo.promote_target)
			await self._require_git(path, "checkout", repo.buffer_branch)
			self._write_excludes(path)

			ws = RepoWorkspace(repo_id=repo_id, path=path, tracker=StreamTracker(path / TRACKER_DB_NAME))
			self._workspaces[repo_id] = ws

		logger.info("Initialized repository %s at %s", repo_id, path)
		self._emit(
			EVENT_REPO_INITIALIZED,
			repo_id=repo_id,
			details={"path": str(path), "cloned_from": source or ""},
		)
		return ws

	async def _clone(self, repo_id: str, source: str, path: Path) -> None:
		path.parent.mkdir(parents=True, exist_ok=True)
		try:
			await self._require_git(
				path.parent, "clone", source, str(path), timeout=self._config.git.clone_timeout,
			)
		except BaseException:
			shutil.rmtree(path, ignore_errors=True)
			raise
		logger.info("Cloned %s from %s", repo_id, source)

	async def _init_empty(self, path: Path, trunk: str) -> None:
		path.mkdir(parents=True, exist_ok=True)
		await self._require_git(path, "init", f"--initial-branch={trunk}")
		(path / ".gitkeep").write_text("")
		await self._require_git(path, "add", ".gitkeep")
		await self._require_git(path, "commit", "-m", "Initial commit")

	async def _ensure_branch(self, path: Path, branch: str, fallback: str) -> None:
		if await self._ref_exists(path, f"refs/heads/{branch}"):
			return
		if await self._ref_exists(path, f"refs/remotes/origin/{branch}"):
			await self._require_git(path, "branch", branch, f"origin/{branch}")
		else:
			await self._require_git(path, "branch", branch, fallback)
		logger.debug("Created branch %s in %s", branch, path)

	@staticmethod
	def _write_excludes(path: Path) -> None:
		exclude = path / ".git" / "info" / "exclude"
		exclude.parent.mkdir(parents=True, exist_ok=True)
		existing = exclude.read_text().splitlines() if exclude.exists() else []
		missing = [e for e in _EXCLUDE_ENTRIES if e not in existing]
		if missing:
			with exclude.open("a", encoding="utf-8") as f:
				for entry in missing:
					f.write(entry + "\n")

	async def get_or_init_workspace(self, repo_id: str) -> RepoWorkspace:
		"""Attach to an existing clone. Never initializes one implicitly."""
		ws = self._workspaces.get(repo_id)
		if ws is not None:
			return ws
		_validate_id("repo id", repo_id)
		self._repo(repo_id)
		async with self.locks.hold(repo_id):
			ws = self._workspaces.get(repo_id)
			if ws is not None:
				return ws
			path = self.repos_dir / repo_id
			tracker_path = path / TRACKER_DB_NAME
			if not (path / ".git").exists() or not tracker_path.exists():
				raise RepoNotInitializedError(repo_id)
			self._write_excludes(path)
			ws = RepoWorkspace(repo_id=repo_id, path=path, tracker=StreamTracker(tracker_path))
			self._workspaces[repo_id] = ws
			logger.debug("Re-attached workspace for %s", repo_id)
			return ws

	# -- streams and worktrees --

	async def create_stream(
		self,
		repo_id: str,
		agent_id: str,
		name: str = "",
		base_branch: str | None = None,
		parent_stream_id: str | None = None,
	) -> StreamHandle:
		"""Branch a new stream and point the agent's worktree at it."""
		_validate_id("agent id", agent_id)
		ws = await self.get_or_init_workspace(repo_id)
		repo = self._repo(repo_id)

		async with self.locks.hold(repo_id):
			if parent_stream_id is not None:
				parent = self.streams.require(parent_stream_id)
				if parent.repo_id != repo_id:
					raise ValueError(f"Parent stream {parent_stream_id} belongs to another repository")
				start = parent.branch
			else:
				start = base_branch or repo.buffer_branch
			if not await self._ref_exists(ws.path, start):
				raise ValueError(f"Base branch {start!r} does not exist in {repo_id}")

			stream_id = _new_id()
			branch = f"stream/{stream_id}"
			await self._require_git(ws.path, "branch", branch, start)
			worktree_path = await self._checkout_worktree(ws, agent_id, branch)

			stream = self.streams.create(
				repo_id=repo_id,
				agent_id=agent_id,
				branch=branch,
				base_branch=start,
				name=name,
				parent_stream_id=parent_stream_id,
				stream_id=stream_id,
			)
			ws.tracker.record_stream(TrackedStream(
				id=stream.id,
				name=stream.name,
				agent_id=agent_id,
				branch=branch,
				base_branch=start,
				parent_stream_id=parent_stream_id,
			))
			ws.tracker.upsert_worktree(Worktree(
				agent_id=agent_id, path=str(worktree_path), branch=branch, current_stream=stream.id,
			))

		logger.info("Created stream %s for %s on %s from %s", stream.id, agent_id, repo_id, start)
		self._emit(
			EVENT_STREAM_CREATED,
			repo_id=repo_id,
			stream_id=stream.id,
			agent_id=agent_id,
			details={"branch": branch, "base_branch": start, "parent_stream_id": parent_stream_id},
		)
		return StreamHandle(
			stream_id=stream.id,
			branch=branch,
			worktree_path=str(worktree_path),
			parent_stream_id=parent_stream_id,
		)

	async def _checkout_worktree(self, ws: RepoWorkspace, agent_id: str, branch: str) -> Path:
		"""Retarget the agent's worktree to ``branch``, creating it on first use."""
		path = ws.worktree_path(agent_id)
		existing = ws.tracker.get_worktree(agent_id)
		if existing is not None and Path(existing.path).exists():
			await self._require_git(existing.path, "checkout", branch)
			return Path(existing.path)

		await self._run_git_in(ws.path, "worktree", "prune")
		if path.exists():
			shutil.rmtree(path)
		path.parent.mkdir(parents=True, exist_ok=True)
		await self._require_git(ws.path, "worktree", "add", str(path), branch)
		return path

	def _worktree(self, ws: RepoWorkspace, agent_id: str) -> Worktree:
		worktree = ws.tracker.get_worktree(agent_id)
		if worktree is None or not Path(worktree.path).exists():
			raise LookupError(f"Agent {agent_id} has no worktree in {ws.repo_id}")
		return worktree

	# -- file operations (agent worktree only, no repository lock) --

	async def write_file(self, repo_id: str, agent_id: str, path: str, content: str) -> None:
		"""Write and stage a file in the agent's worktree."""
		ws = await self.get_or_init_workspace(repo_id)
		root = Path(self._worktree(ws, agent_id).path)
		target = _resolve_inside(root, path)
		target.parent.mkdir(parents=True, exist_ok=True)
		target.write_text(content, encoding="utf-8")
		await self._require_git(root, "add", "--", str(target.relative_to(root.resolve())))

	async def read_file(self, repo_id: str, agent_id: str, path: str) -> str:
		ws = await self.get_or_init_workspace(repo_id)
		root = Path(self._worktree(ws, agent_id).path)
		return _resolve_inside(root, path).read_text(encoding="utf-8")

	async def delete_file(self, repo_id: str, agent_id: str, path: str) -> None:
		"""Remove a file from the agent's worktree and stage the deletion."""
		ws = await self.get_or_init_workspace(repo_id)
		root = Path(self._worktree(ws, agent_id).path)
		target = _resolve_inside(root, path)
		rel = str(target.relative_to(root.resolve()))
		await self._require_git(root, "rm", "-f", "--ignore-unmatch", "--", rel)
		if target.exists():
			target.unlink()

	async def list_files(self, repo_id: str, agent_id: str, subdir: str = "") -> list[str]:
		ws = await self.get_or_init_workspace(repo_id)
		root = Path(self._worktree(ws, agent_id).path)
		args = ["-c", "core.quotepath=off", "ls-files", "-z", "--cached", "--others", "--exclude-standard"]
		if subdir:
			args += ["--", str(_resolve_inside(root, subdir).relative_to(root.resolve()))]
		output = await self._require_git(root, *args)
		return sorted({p for p in output.split("\0") if p})

	async def commit_changes(
		self,
		repo_id: str,
		agent_id: str,
		message: str,
		stream_id: str | None = None,
	) -> CommitResult:
		"""Commit staged changes in the agent's worktree to its stream."""
		ws = await self.get_or_init_workspace(repo_id)
		worktree = self._worktree(ws, agent_id)
		target_id = stream_id or worktree.current_stream
		if not target_id:
			raise StreamStateError(f"Agent {agent_id} has no active stream in {repo_id}")
		stream = self.streams.ensure_active(target_id)
		if stream.repo_id != repo_id:
			raise StreamStateError(f"Stream {target_id} does not belong to {repo_id}")

		if stream.branch != worktree.branch:
			await self._require_git(worktree.path, "checkout", stream.branch)
			worktree.branch = stream.branch
			worktree.current_stream = stream.id
			ws.tracker.upsert_worktree(worktree)

		ok, _ = await self._run_git_in(worktree.path, "diff", "--cached", "--quiet")
		if ok:
			raise ValueError(f"Nothing staged to commit for {agent_id} in {repo_id}")

		agent = self._db.get_agent(agent_id)
		author = f"{agent.name if agent and agent.name else agent_id} <{agent_id}@gitswarm.local>"
		await self._require_git(worktree.path, "commit", "--author", author, "-m", message)
		commit = await self._rev_parse(worktree.path, "HEAD")

		ws.tracker.record_commit(StreamCommit(
			stream_id=stream.id, agent_id=agent_id, commit_hash=commit, message=message,
		))
		self._db.touch_stream(stream.id)
		logger.info("Committed %s on stream %s for %s", commit[:8], stream.id, agent_id)
		return CommitResult(commit=commit, stream_id=stream.id, branch=stream.branch)

	# -- buffer merges --

	async def _prepare_clone(self, ws: RepoWorkspace, branch: str) -> None:
		"""Leave the canonical clone clean with ``branch`` checked out."""
		await self._require_git(ws.path, "reset", "--hard", "HEAD")
		await self._require_git(ws.path, "checkout", branch)

	async def _abort_merge(self, ws: RepoWorkspace) -> None:
		try:
			ok, output = await self._run_git_in(ws.path, "merge", "--abort")
		except GitTimeoutError:
			logger.error("Timed out aborting merge in %s", ws.repo_id)
			return
		if not ok and "MERGE_HEAD missing" not in output and "no merge to abort" not in output.lower():
			logger.error("Failed to abort merge in %s: %s", ws.repo_id, output.strip()[:300])

	async def _unmerged_paths(self, ws: RepoWorkspace) -> list[str]:
		ok, output = await self._run_git_in(
			ws.path, "-c", "core.quotepath=off", "diff", "--name-only", "-z", "--diff-filter=U",
			merge_stderr=False,
		)
		if not ok:
			return []
		return [p for p in output.split("\0") if p]

	async def _rollback_merge(self, ws: RepoWorkspace, pre_merge_tip: str) -> None:
		"""Abort any in-progress merge and put the buffer back at ``pre_merge_tip``."""
		await self._abort_merge(ws)
		try:
			ok, head = await self._run_git_in(ws.path, "rev-parse", "HEAD", merge_stderr=False)
			if ok and head.strip() != pre_merge_tip:
				logger.warning("Resetting %s back to %s after a failed merge", ws.repo_id, pre_merge_tip[:8])
				await self._run_git_in(ws.path, "reset", "--hard", pre_merge_tip)
		except GitTimeoutError:
			logger.error("Timed out rolling back merge in %s", ws.repo_id)

	async def _stage_content(self, ws: RepoWorkspace, stage: int, path: str) -> str | None:
		ok, output = await self._run_git_in(ws.path, "show", f":{stage}:{path}", merge_stderr=False)
		return output if ok else None

	async def _extract_conflicts(self, ws: RepoWorkspace) -> list[ConflictFile]:
		"""Collect base/ours/theirs for every unmerged path. Must run before abort."""
		conflicts = []
		for path in await self._unmerged_paths(ws):
			conflicts.append(ConflictFile(
				path=path,
				base=await self._stage_content(ws, 1, path),
				ours=await self._stage_content(ws, 2, path),
				theirs=await self._stage_content(ws, 3, path),
			))
		return conflicts

	def _already_merged(self, stream: Stream, buffer_branch: str) -> MergeOutcome:
		record = self._db.get_merge_for_stream(stream.id)
		return MergeOutcome.merged_at(
			stream.id, buffer_branch, record.merge_commit if record else "", already_merged=True,
		)

	def _load_stream(self, repo_id: str, stream_id: str) -> Stream | None:
		stream = self.streams.get(stream_id)
		if stream is None or stream.repo_id != repo_id:
			return None
		return stream

	def _finish_merge(
		self, ws: RepoWorkspace, stream: Stream, buffer_branch: str, commit: str, resolved: bool,
	) -> MergeOutcome:
		self.streams.mark_merged(stream.id)
		self._db.insert_merge(MergeRecord(
			repo_id=ws.repo_id,
			stream_id=stream.id,
			agent_id=stream.agent_id,
			merge_commit=commit,
			target_branch=buffer_branch,
			conflict_resolved=resolved,
		))
		logger.info("Merged stream %s into %s at %s", stream.id, buffer_branch, commit[:8])
		self._emit(
			EVENT_STREAM_MERGED,
			repo_id=ws.repo_id,
			stream_id=stream.id,
			agent_id=stream.agent_id,
			details={"merge_commit": commit, "buffer_branch": buffer_branch, "conflict_resolved": resolved},
		)
		return MergeOutcome.merged_at(stream.id, buffer_branch, commit)

	def _report_conflict(
		self, ws: RepoWorkspace, stream: Stream, buffer_branch: str, conflicts: list[ConflictFile],
	) -> MergeOutcome:
		paths = [c.path for c in conflicts]
		logger.warning("Merge conflict merging %s into %s: %s", stream.id, buffer_branch, paths)
		self._emit(
			EVENT_MERGE_CONFLICT,
			repo_id=ws.repo_id,
			stream_id=stream.id,
			agent_id=stream.agent_id,
			details={"paths": paths},
		)
		return MergeOutcome.conflict(stream.id, buffer_branch, conflicts)

	def _merge_message(self, stream: Stream, buffer_branch: str) -> str:
		return f"Merge stream {stream.id} ({stream.name}) into {buffer_branch}"

	async def merge_to_buffer(self, repo_id: str, stream_id: str) -> MergeOutcome:
		"""Merge a stream into the buffer branch with --no-ff.

		Conflicts come back as structured data and the merge is aborted,
		so the buffer tip is unchanged after a conflict.
		"""
		ws = await self.get_or_init_workspace(repo_id)
		async with self.locks.hold(repo_id):
			repo = self._repo(repo_id)
			buffer_branch = repo.buffer_branch
			stream = self._load_stream(repo_id, stream_id)
			if stream is None:
				return MergeOutcome.failed(stream_id, buffer_branch, "stream_not_found")
			if stream.status == STREAM_MERGED:
				return self._already_merged(stream, buffer_branch)
			if stream.status == STREAM_ABANDONED:
				return MergeOutcome.failed(stream_id, buffer_branch, "stream_abandoned")

			await self._prepare_clone(ws, buffer_branch)
			pre_merge_tip = await self._rev_parse(ws.path, "HEAD")
			try:
				ok, output = await self._run_git_in(
					ws.path, "merge", "--no-ff", "-m", self._merge_message(stream, buffer_branch),
					stream.branch,
					timeout=self._config.git.merge_timeout,
				)
				if ok:
					commit = await self._rev_parse(ws.path, "HEAD")
					return self._finish_merge(ws, stream, buffer_branch, commit, resolved=False)

				conflicts = await self._extract_conflicts(ws)
				await self._abort_merge(ws)
			except BaseException:
				await self._rollback_merge(ws, pre_merge_tip)
				raise

			if conflicts:
				return self._report_conflict(ws, stream, buffer_branch, conflicts)
			logger.warning("Merge of %s into %s failed: %s", stream_id, buffer_branch, output.strip()[:300])
			return MergeOutcome.failed(stream_id, buffer_branch, output.strip()[:2000] or "merge_failed")

	async def resolve_conflict(
		self,
		repo_id: str,
		stream_id: str,
		resolutions: list[FileResolution],
	) -> MergeOutcome:
		"""Redo the merge, apply the resolved contents, and commit it.

		A stream that is already merged (for example by a concurrent call)
		returns its recorded merge instead of merging twice.
		"""
		ws = await self.get_or_init_workspace(repo_id)
		async with self.locks.hold(repo_id):
			repo = self._repo(repo_id)
			buffer_branch = repo.buffer_branch
			stream = self._load_stream(repo_id, stream_id)
			if stream is None:
				return MergeOutcome.failed(stream_id, buffer_branch, "stream_not_found")
			if stream.status == STREAM_MERGED:
				return self._already_merged(stream, buffer_branch)
			if stream.status == STREAM_ABANDONED:
				return MergeOutcome.failed(stream_id, buffer_branch, "stream_abandoned")

			await self._prepare_clone(ws, buffer_branch)
			pre_merge_tip = await self._rev_parse(ws.path, "HEAD")
			try:
				ok, output = await self._run_git_in(
					ws.path, "merge", "--no-ff", "-m", self._merge_message(stream, buffer_branch),
					stream.branch,
					timeout=self._config.git.merge_timeout,
				)
				if ok:
					commit = await self._rev_parse(ws.path, "HEAD")
					return self._finish_merge(ws, stream, buffer_branch, commit, resolved=False)

				unmerged = set(await self._unmerged_paths(ws))
				if not unmerged:
					await self._abort_merge(ws)
					return MergeOutcome.failed(stream_id, buffer_branch, output.strip()[:2000] or "merge_failed")

				unexpected = sorted({r.path for r in resolutions} - unmerged)
				if unexpected:
					raise ValueError(f"Resolutions given for paths that are not in conflict: {unexpected}")

				for resolution in resolutions:
					target = _resolve_inside(ws.path, resolution.path)
					target.parent.mkdir(parents=True, exist_ok=True)
					target.write_text(resolution.content, encoding="utf-8")
					await self._require_git(ws.path, "add", "--", resolution.path)

				remaining = await self._extract_conflicts(ws)
				if remaining:
					await self._abort_merge(ws)
					return self._report_conflict(ws, stream, buffer_branch, remaining)

				await self._require_git(ws.path, "commit", "--no-edit")
				commit = await self._rev_parse(ws.path, "HEAD")
				return self._finish_merge(ws, stream, buffer_branch, commit, resolved=True)
			except BaseException:
				await self._rollback_merge(ws, pre_merge_tip)
				raise

	# -- promotion --

	async def promote(
		self, repo_id: str, agent_id: str | None = None, triggered_by: str = "manual",
	) -> PromotionResult:
		"""Fast-forward trunk to the buffer tip. Never creates a merge commit."""
		ws = await self.get_or_init_workspace(repo_id)
		async with self.locks.hold(repo_id):
			return await self._promote_locked(ws, self._repo(repo_id), agent_id, triggered_by)

	async def _promote_locked(
		self, ws: RepoWorkspace, repo: Repository, agent_id: str | None, triggered_by: str,
	) -> PromotionResult:
		buffer_branch, trunk = repo.buffer_branch, repo.promote_target
		await self._require_git(ws.path, "reset", "--hard", "HEAD")
		buffer_commit = await self._rev_parse(ws.path, buffer_branch)
		trunk_commit = await self._rev_parse(ws.path, trunk)
		result = PromotionResult(
			promoted=False,
			from_branch=buffer_branch,
			to_branch=trunk,
			from_commit=trunk_commit,
			to_commit=buffer_commit,
		)
		if buffer_commit == trunk_commit:
			return result

		ok, _ = await self._run_git_in(ws.path, "merge-base", "--is-ancestor", trunk, buffer_branch)
		if not ok:
			raise PromotionDivergedError(
				f"{trunk} ({trunk_commit[:8]}) is not an ancestor of {buffer_branch} "
				f"({buffer_commit[:8]}) in {repo.id}; manual intervention required"
			)

		try:
			await self._require_git(ws.path, "checkout", trunk)
			await self._require_git(ws.path, "merge", "--ff-only", buffer_branch)
		finally:
			await self._run_git_in(ws.path, "checkout", buffer_branch)

		result.promoted = True
		self._db.insert_promotion(PromotionRecord(
			repo_id=repo.id,
			from_branch=buffer_branch,
			to_branch=trunk,
			from_commit=trunk_commit,
			to_commit=buffer_commit,
			triggered_by=triggered_by,
			agent_id=agent_id,
		))
		logger.info(
			"Promoted %s -> %s in %s (%s..%s, %s)",
			buffer_branch, trunk, repo.id, trunk_commit[:8], buffer_commit[:8], triggered_by,
		)
		self._emit(
			EVENT_PROMOTION_COMPLETED,
			repo_id=repo.id,
			agent_id=agent_id or "",
			details={
				"from_commit": trunk_commit,
				"to_commit": buffer_commit,
				"triggered_by": triggered_by,
			},
		)
		return result

	async def get_buffer_state(self, repo_id: str) -> BufferState:
		ws = await self.get_or_init_workspace(repo_id)
		async with self.locks.hold(repo_id):
			buffer_branch = self._repo(repo_id).buffer_branch
			return BufferState(
				buffer_branch=buffer_branch,
				buffer_commit=await self._rev_parse(ws.path, buffer_branch),
			)

	async def push_to_remote(self, repo_id: str, branch: str | None = None) -> bool:
		"""Push a branch (default: buffer) to origin. Failures are logged, not raised."""
		ws = await self.get_or_init_workspace(repo_id)
		async with self.locks.hold(repo_id):
			target = branch or self._repo(repo_id).buffer_branch
			ok, remotes = await self._run_git_in(ws.path, "remote")
			if not ok or "origin" not in remotes.split():
				logger.debug("No origin remote for %s; skipping push", repo_id)
				return False
			try:
				ok, output = await self._run_git_in(
					ws.path, "push", "origin", target, timeout=self._config.git.push_timeout,
				)
			except GitTimeoutError as exc:
				logger.warning("Push of %s for %s timed out: %s", target, repo_id, exc)
				return False
			if not ok:
				logger.warning("Push of %s for %s failed: %s", target, repo_id, output.strip()[:300])
				return False
			return True

	# -- stabilization --

	async def report_stabilization(
		self,
		repo_id: str,
		result: str,
		buffer_commit: str,
		breaking_stream_id: str | None = None,
		output: str = "",
	) -> StabilizationResult:
		"""Record an external test run and apply auto-promote or auto-revert."""
		if result not in ("green", "red"):
			raise ValueError(f"Stabilization result must be 'green' or 'red', got {result!r}")
		ws = await self.get_or_init_workspace(repo_id)
		repo = self._repo(repo_id)

		record = Stabilization(
			repo_id=repo_id,
			result=result,
			buffer_commit=buffer_commit,
			breaking_stream_id=breaking_stream_id,
			output=output[:10_000],
		)
		self._db.insert_stabilization(record)
		outcome = StabilizationResult(record=record)

		if result == "green" and repo.auto_promote_on_green:
			async with self.locks.hold(repo_id):
				tip = await self._rev_parse(ws.path, repo.buffer_branch)
				if tip != buffer_commit:
					logger.info(
						"Buffer moved past %s (now %s); skipping auto-promote", buffer_commit[:8], tip[:8],
					)
				else:
					try:
						outcome.promotion = await self._promote_locked(ws, repo, None, "auto")
					except PromotionDivergedError as exc:
						logger.error("Auto-promote of %s failed: %s", repo_id, exc)
						outcome.promotion_error = str(exc)

		elif result == "red" and breaking_stream_id and repo.auto_revert_on_red:
			outcome.reverted_commit = await self._revert_stream(ws, repo, breaking_stream_id)

		self._emit(
			EVENT_STABILIZATION,
			repo_id=repo_id,
			stream_id=breaking_stream_id or "",
			details={
				"result": result,
				"buffer_commit": buffer_commit,
				"promoted": bool(outcome.promotion and outcome.promotion.promoted),
				"reverted_commit": outcome.reverted_commit,
			},
		)
		return outcome

	async def _revert_stream(self, ws: RepoWorkspace, repo: Repository, stream_id: str) -> str | None:
		"""Revert a stream's merge commit on the buffer. The stream stays merged."""
		merge = self._db.get_merge_for_stream(stream_id)
		if merge is None or merge.repo_id != repo.id:
			logger.warning("No merge recorded for breaking stream %s; nothing to revert", stream_id)
			return None

		async with self.locks.hold(repo.id):
			await self._prepare_clone(ws, repo.buffer_branch)
			ok, output = await self._run_git_in(
				ws.path, "revert", "--no-edit", "-m", "1", merge.merge_commit,
				timeout=self._config.git.merge_timeout,
			)
			if not ok:
				logger.error("Failed to revert %s for stream %s: %s", merge.merge_commit[:8], stream_id, output.strip()[:300])
				await self._run_git_in(ws.path, "revert", "--abort")
				return None
			commit = await self._rev_parse(ws.path, "HEAD")
		logger.info("Reverted stream %s (merge %s) as %s", stream_id, merge.merge_commit[:8], commit[:8])
		return commit

	# -- shutdown --

	async def close_repo(self, repo_id: str) -> None:
		"""Release the embedded store handle once in-flight operations finish."""
		async with self.locks.hold(repo_id):
			ws = self._workspaces.pop(repo_id, None)
			if ws is not None:
				ws.tracker.close()
		self.locks.discard(repo_id)

	async def close_all(self) -> None:
		for repo_id in list(self._workspaces):
			await self.close_repo(repo_id)
