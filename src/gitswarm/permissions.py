"""Permission resolution: effective access levels and branch push checks."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from gitswarm.branch_rules import match_branch_rule
from gitswarm.constants import (
	ACCESS_ADMIN,
	ACCESS_MAINTAIN,
	ACCESS_NONE,
	ACCESS_READ,
	ACCESS_WRITE,
	ACTION_LEVELS,
	MAINTAINER_ROLE_LEVELS,
	REASON_ALLOWED,
	REASON_BRANCH_PROTECTED,
	REASON_INSUFFICIENT_PERMISSIONS,
	REASON_MAINTAINER,
	REASON_MAINTAINERS_ONLY,
	REASON_NO_BRANCH_RULE,
)
from gitswarm.db import Database
from gitswarm.models import ActionDecision, BranchRule, PermissionResult, PushDecision

logger = logging.getLogger(__name__)


class PermissionResolver:
	"""Resolves what an agent may do on a repository.

	Resolution order, first match wins:
	1. An unexpired explicit access grant (expired grants are deleted).
	2. A maintainer role (owner -> admin, maintainer -> maintain).
	3. The repository's default access mode, falling back to its org's.
	"""

	def __init__(self, db: Database) -> None:
		self._db = db

	def resolve(self, agent_id: str, repo_id: str, now: datetime | None = None) -> PermissionResult:
		grant = self._db.get_access_grant(repo_id, agent_id)
		if grant is not None:
			if grant.is_expired(now or datetime.now(timezone.utc)):
				logger.warning(
					"Removing expired %s grant for %s on %s", grant.access_level, agent_id, repo_id,
				)
				self._db.delete_access_grant(repo_id, agent_id)
			else:
				return PermissionResult(level=grant.access_level, source="explicit")

		maintainer = self._db.get_maintainer(repo_id, agent_id)
		if maintainer is not None:
			level = MAINTAINER_ROLE_LEVELS.get(maintainer.role, ACCESS_MAINTAIN)
			return PermissionResult(level=level, source="maintainer", role=maintainer.role)

		repo = self._db.get_repo(repo_id)
		if repo is None:
			return PermissionResult(level=ACCESS_NONE, source="not_found")

		org = self._db.get_org(repo.org_id) if repo.org_id else None
		agent = self._db.get_agent(agent_id)
		karma = agent.karma if agent else 0

		access_mode = repo.agent_access or (org.default_agent_access if org else None) or "none"
		if repo.min_karma is not None:
			threshold = repo.min_karma
		elif org is not None:
			threshold = org.default_min_karma
		else:
			threshold = 0

		if access_mode == "public":
			return PermissionResult(level=ACCESS_WRITE, source="public")

		if access_mode == "karma_threshold":
			if karma >= threshold:
				return PermissionResult(level=ACCESS_WRITE, source="karma", threshold=threshold, karma=karma)
			level = ACCESS_NONE if repo.is_private else ACCESS_READ
			return PermissionResult(
				level=level, source="karma_below_threshold", threshold=threshold, karma=karma,
			)

		if access_mode == "allowlist":
			return PermissionResult(level=ACCESS_NONE, source="not_allowlisted")

		if org is not None and org.is_platform_org and not repo.is_private:
			return PermissionResult(level=ACCESS_READ, source="platform_public")
		return PermissionResult(level=ACCESS_NONE, source="private")

	def can_perform(self, agent_id: str, repo_id: str, action: str) -> ActionDecision:
		permissions = self.resolve(agent_id, repo_id)
		allowed = permissions.level in ACTION_LEVELS.get(action, frozenset())
		return ActionDecision(allowed=allowed, action=action, permissions=permissions)

	def can_push_to_branch(self, agent_id: str, repo_id: str, branch: str) -> PushDecision:
		permissions = self.resolve(agent_id, repo_id)
		if permissions.level in (ACCESS_NONE, ACCESS_READ):
			return PushDecision(
				allowed=False, reason=REASON_INSUFFICIENT_PERMISSIONS, permissions=permissions,
			)

		rule = self.applicable_rule(repo_id, branch)
		if rule is None:
			return PushDecision(allowed=True, reason=REASON_NO_BRANCH_RULE, permissions=permissions)

		if rule.direct_push == "all":
			return PushDecision(allowed=True, reason=REASON_ALLOWED, rule=rule, permissions=permissions)
		if rule.direct_push == "maintainers":
			ok = permissions.level in (ACCESS_MAINTAIN, ACCESS_ADMIN)
			return PushDecision(
				allowed=ok,
				reason=REASON_MAINTAINER if ok else REASON_MAINTAINERS_ONLY,
				rule=rule,
				permissions=permissions,
			)
		return PushDecision(allowed=False, reason=REASON_BRANCH_PROTECTED, rule=rule, permissions=permissions)

	# -- Branch rule helpers --

	def applicable_rule(self, repo_id: str, branch: str) -> BranchRule | None:
		return match_branch_rule(branch, self._db.get_branch_rules(repo_id), presorted=True)

	def requires_tests_pass(self, repo_id: str, branch: str) -> bool:
		rule = self.applicable_rule(repo_id, branch)
		return rule.require_tests_pass if rule else False

	def get_required_approvals(self, repo_id: str, branch: str) -> int:
		rule = self.applicable_rule(repo_id, branch)
		if rule is not None:
			return rule.required_approvals
		repo = self._db.get_repo(repo_id)
		return repo.min_reviews if repo else 1

	def is_maintainer(self, agent_id: str, repo_id: str) -> bool:
		return self._db.get_maintainer(repo_id, agent_id) is not None

	def is_owner(self, agent_id: str, repo_id: str) -> bool:
		maintainer = self._db.get_maintainer(repo_id, agent_id)
		return maintainer is not None and maintainer.role == "owner"
