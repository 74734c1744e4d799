"""In-memory per-repository lock registry for serializing clone mutations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class RepoLockRegistry:
	"""One asyncio.Lock per repository id.

	Checkout, merge and promote share a single working tree per clone, so
	they must not interleave. Different repositories never contend.
	"""

	def __init__(self) -> None:
		self._locks: dict[str, asyncio.Lock] = {}

	def get(self, repo_id: str) -> asyncio.Lock:
		lock = self._locks.get(repo_id)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[repo_id] = lock
		return lock

	@asynccontextmanager
	async def hold(self, repo_id: str) -> AsyncIterator[None]:
		"""Hold the repository lock for the duration of the block."""
		lock = self.get(repo_id)
		if lock.locked():
			logger.debug("Waiting for lock on %s", repo_id)
		async with lock:
			yield

	def is_locked(self, repo_id: str) -> bool:
		lock = self._locks.get(repo_id)
		return lock is not None and lock.locked()

	def discard(self, repo_id: str) -> None:
		"""Forget an idle lock. A held lock is kept."""
		lock = self._locks.get(repo_id)
		if lock is not None and not lock.locked():
			del self._locks[repo_id]

	@property
	def known_repos(self) -> list[str]:
		return list(self._locks)
