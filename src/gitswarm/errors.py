"""Exceptions raised by gitswarm. Expected outcomes are returned as values instead."""

from __future__ import annotations


class RepoNotInitializedError(RuntimeError):
	"""The repository has no clone or embedded store on disk."""

	def __init__(self, repo_id: str) -> None:
		super().__init__(f"Repository {repo_id} is not initialized")
		self.repo_id = repo_id


class RepoNotFoundError(LookupError):
	"""No repository row exists in the relational store."""

	def __init__(self, repo_id: str) -> None:
		super().__init__(f"Repository {repo_id} not found")
		self.repo_id = repo_id


class UnknownGovernanceModeError(ValueError):
	pass


class StreamStateError(RuntimeError):
	"""An illegal stream lifecycle transition was requested."""


class PromotionDivergedError(RuntimeError):
	"""Trunk is not an ancestor of the buffer tip, so a fast-forward is impossible."""


class GitCommandError(RuntimeError):
	"""A required git command exited non-zero."""

	def __init__(self, args: tuple[str, ...] | list[str], output: str = "") -> None:
		cmd = " ".join(args)
		super().__init__(f"git {cmd} failed: {output.strip()[:500]}")
		self.git_args = tuple(args)
		self.output = output


class GitTimeoutError(GitCommandError):
	"""A git command exceeded its timeout and was killed."""

	def __init__(self, args: tuple[str, ...] | list[str], timeout: float) -> None:
		super().__init__(args, f"timed out after {timeout}s")
		self.timeout = timeout
