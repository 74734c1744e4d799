"""Branch policy matching: pick the protection rule that applies to a branch."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

from gitswarm.models import BranchRule


@lru_cache(maxsize=256)
def pattern_to_regex(pattern: str) -> re.Pattern[str]:
	"""Compile a branch pattern into an anchored regex.

	``*`` matches any run of characters, including ``/``. Every other
	character is literal.
	"""
	parts = (re.escape(p) for p in pattern.split("*"))
	return re.compile("^" + ".*".join(parts) + "$")


def matches_branch_pattern(branch: str, pattern: str) -> bool:
	return pattern_to_regex(pattern).match(branch) is not None


def sort_rules(rules: Iterable[BranchRule]) -> list[BranchRule]:
	"""Order rules by priority, then by pattern length (longer first)."""
	return sorted(rules, key=lambda r: (-r.priority, -len(r.branch_pattern)))


def match_branch_rule(
	branch: str,
	rules: Iterable[BranchRule],
	presorted: bool = False,
) -> BranchRule | None:
	"""Return the first rule matching ``branch``, or None if no rule applies."""
	ordered = rules if presorted else sort_rules(rules)
	for rule in ordered:
		if matches_branch_pattern(branch, rule.branch_pattern):
			return rule
	return None
