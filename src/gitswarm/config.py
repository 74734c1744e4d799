"""TOML config loader for gitswarm.toml."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gitswarm.constants import DEFAULT_LIMITS

logger = logging.getLogger(__name__)

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class StorageConfig:
	"""Where the relational store and repository clones live."""

	db_path: str = "~/.gitswarm/gitswarm.db"
	repos_dir: str = "/var/lib/gitswarm/repos"

	@property
	def resolved_db_path(self) -> Path:
		if self.db_path == ":memory:":
			return Path(self.db_path)
		return Path(self.db_path).expanduser()

	@property
	def resolved_repos_dir(self) -> Path:
		return Path(self.repos_dir).expanduser()


@dataclass
class GitConfig:
	"""Timeouts (seconds) and identity for git subprocesses."""

	command_timeout: int = DEFAULT_LIMITS["command_timeout"]
	clone_timeout: int = DEFAULT_LIMITS["clone_timeout"]
	merge_timeout: int = DEFAULT_LIMITS["merge_timeout"]
	push_timeout: int = DEFAULT_LIMITS["push_timeout"]
	author_name: str = "gitswarm"
	author_email: str = "gitswarm@localhost"


@dataclass
class DefaultsConfig:
	"""Branch names used when a repository row does not set its own."""

	buffer_branch: str = "buffer"
	promote_target: str = "main"


@dataclass
class StreamsConfig:
	stale_after_days: int = DEFAULT_LIMITS["stale_after_days"]


@dataclass
class EventsConfig:
	path: str = ""  # empty = disabled


@dataclass
class LoggingConfig:
	level: str = "INFO"


@dataclass
class GitswarmConfig:
	"""Top-level gitswarm configuration."""

	storage: StorageConfig = field(default_factory=StorageConfig)
	git: GitConfig = field(default_factory=GitConfig)
	defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
	streams: StreamsConfig = field(default_factory=StreamsConfig)
	events: EventsConfig = field(default_factory=EventsConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_storage(data: dict[str, Any]) -> StorageConfig:
	cfg = StorageConfig()
	if "db_path" in data:
		cfg.db_path = str(data["db_path"])
	if "repos_dir" in data:
		cfg.repos_dir = str(data["repos_dir"])
	return cfg


def _build_git(data: dict[str, Any]) -> GitConfig:
	cfg = GitConfig()
	for key in ("command_timeout", "clone_timeout", "merge_timeout", "push_timeout"):
		if key in data:
			setattr(cfg, key, int(data[key]))
	if "author_name" in data:
		cfg.author_name = str(data["author_name"])
	if "author_email" in data:
		cfg.author_email = str(data["author_email"])
	return cfg


def _build_defaults(data: dict[str, Any]) -> DefaultsConfig:
	cfg = DefaultsConfig()
	if "buffer_branch" in data:
		cfg.buffer_branch = str(data["buffer_branch"])
	if "promote_target" in data:
		cfg.promote_target = str(data["promote_target"])
	return cfg


def _build_streams(data: dict[str, Any]) -> StreamsConfig:
	cfg = StreamsConfig()
	if "stale_after_days" in data:
		cfg.stale_after_days = int(data["stale_after_days"])
	return cfg


def _build_events(data: dict[str, Any]) -> EventsConfig:
	return EventsConfig(path=str(data.get("path", "")))


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	return LoggingConfig(level=str(data.get("level", "INFO")).upper())


def _apply_env_overrides(cfg: GitswarmConfig) -> None:
	repos_dir = os.environ.get("GITSWARM_REPOS_DIR")
	if repos_dir:
		logger.debug("Overriding repos_dir from environment: %s", repos_dir)
		cfg.storage.repos_dir = repos_dir


def load_config(path: str | Path) -> GitswarmConfig:
	"""Load and parse a gitswarm.toml file.

	Missing sections fall back to defaults. Raises FileNotFoundError
	when the file does not exist.
	"""
	p = Path(path)
	if not p.exists():
		raise FileNotFoundError(f"Config file not found: {p}")

	with open(p, "rb") as f:
		data = tomllib.load(f)

	cfg = GitswarmConfig()
	if "storage" in data:
		cfg.storage = _build_storage(data["storage"])
	if "git" in data:
		cfg.git = _build_git(data["git"])
	if "defaults" in data:
		cfg.defaults = _build_defaults(data["defaults"])
	if "streams" in data:
		cfg.streams = _build_streams(data["streams"])
	if "events" in data:
		cfg.events = _build_events(data["events"])
	if "logging" in data:
		cfg.logging = _build_logging(data["logging"])
	_apply_env_overrides(cfg)
	return cfg


def validate_config(config: GitswarmConfig) -> list[tuple[str, str]]:
	"""Check a loaded config for problems.

	Returns (level, message) pairs where level is "error" or "warning".
	An empty list means the config is usable.
	"""
	issues: list[tuple[str, str]] = []

	for key in ("command_timeout", "clone_timeout", "merge_timeout", "push_timeout"):
		value = getattr(config.git, key)
		if value <= 0:
			issues.append(("error", f"git.{key} must be positive (got {value})"))

	buffer = config.defaults.buffer_branch.strip()
	trunk = config.defaults.promote_target.strip()
	if not buffer:
		issues.append(("error", "defaults.buffer_branch is empty"))
	if not trunk:
		issues.append(("error", "defaults.promote_target is empty"))
	if buffer and buffer == trunk:
		issues.append(("error", f"defaults.buffer_branch and promote_target are both '{buffer}'"))

	if config.streams.stale_after_days <= 0:
		issues.append(("warning", "streams.stale_after_days is not positive; stale sweep will abandon every stream"))

	if config.logging.level not in _VALID_LOG_LEVELS:
		issues.append(("error", f"logging.level '{config.logging.level}' is not a valid level"))

	repos_dir = config.storage.resolved_repos_dir
	if repos_dir.exists() and not os.access(repos_dir, os.W_OK):
		issues.append(("error", f"storage.repos_dir {repos_dir} is not writable"))

	return issues
