"""Merge consensus under solo, guild and open governance.

Each governance model is a strategy with a single ``compute`` method taking
the partitioned approvals and rejections. ``compute_consensus`` is pure:
given the same reviews and config it always returns the same decision, so
callers may poll it freely.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from gitswarm.branch_rules import match_branch_rule
from gitswarm.constants import (
	DEFAULT_CONSENSUS_THRESHOLD,
	DEFAULT_HUMAN_REVIEW_WEIGHT,
	REASON_AWAITING_OWNER,
	REASON_BELOW_THRESHOLD,
	REASON_CONSENSUS_REACHED,
	REASON_INSUFFICIENT_REVIEWS,
	REASON_NO_MAINTAINER_REVIEWS,
	REASON_NO_REVIEWS,
	REASON_OWNER_APPROVED,
	REASON_REPO_NOT_FOUND,
	REASON_STREAM_NOT_FOUND,
	REASON_SWARM_MODE,
	REJECTION_VERDICTS,
	VERDICT_APPROVE,
)
from gitswarm.db import Database
from gitswarm.errors import UnknownGovernanceModeError
from gitswarm.models import ConsensusDecision, Repository, ReviewVote

logger = logging.getLogger(__name__)


@dataclass
class ConsensusConfig:
	"""The repository settings consensus depends on."""

	ownership_model: str = "guild"
	consensus_threshold: float = DEFAULT_CONSENSUS_THRESHOLD
	min_reviews: int = 1
	human_review_weight: float = DEFAULT_HUMAN_REVIEW_WEIGHT
	merge_mode: str = "review"

	@classmethod
	def from_repo(cls, repo: Repository, threshold_override: float | None = None) -> ConsensusConfig:
		return cls(
			ownership_model=repo.ownership_model,
			consensus_threshold=(
				threshold_override if threshold_override is not None else repo.consensus_threshold
			),
			min_reviews=repo.min_reviews,
			human_review_weight=repo.human_review_weight,
			merge_mode=repo.merge_mode,
		)


def _display(value: float) -> float:
	return round(value, 2)


def review_weight(review: ReviewVote, human_review_weight: float) -> float:
	"""Humans carry a fixed weight; agents carry sqrt(karma + 1)."""
	if review.is_human:
		return human_review_weight or DEFAULT_HUMAN_REVIEW_WEIGHT
	return math.sqrt(max(review.karma, 0) + 1)


class SoloGovernance:
	"""Any maintainer or owner approval is enough."""

	name = "solo"

	def compute(
		self, approvals: list[ReviewVote], rejections: list[ReviewVote], config: ConsensusConfig,
	) -> ConsensusDecision:
		owner_approval = any(r.is_maintainer for r in approvals)
		return ConsensusDecision(
			reached=owner_approval,
			reason=REASON_OWNER_APPROVED if owner_approval else REASON_AWAITING_OWNER,
			approvals=len(approvals),
			rejections=len(rejections),
		)


class GuildGovernance:
	"""Maintainer approval ratio must meet the threshold. Other reviews are ignored."""

	name = "guild"

	def compute(
		self, approvals: list[ReviewVote], rejections: list[ReviewVote], config: ConsensusConfig,
	) -> ConsensusDecision:
		ma = sum(1 for r in approvals if r.is_maintainer)
		mr = sum(1 for r in rejections if r.is_maintainer)
		total = ma + mr
		if total == 0:
			return ConsensusDecision(
				reached=False,
				reason=REASON_NO_MAINTAINER_REVIEWS,
				threshold=config.consensus_threshold,
				maintainer_approvals=0,
				maintainer_rejections=0,
			)
		ratio = ma / total
		reached = ratio >= config.consensus_threshold
		return ConsensusDecision(
			reached=reached,
			reason=REASON_CONSENSUS_REACHED if reached else REASON_BELOW_THRESHOLD,
			ratio=_display(ratio),
			threshold=config.consensus_threshold,
			maintainer_approvals=ma,
			maintainer_rejections=mr,
		)


class OpenGovernance:
	"""Karma-weighted vote across every reviewer."""

	name = "open"

	def compute(
		self, approvals: list[ReviewVote], rejections: list[ReviewVote], config: ConsensusConfig,
	) -> ConsensusDecision:
		approval_weight = sum(review_weight(r, config.human_review_weight) for r in approvals)
		rejection_weight = sum(review_weight(r, config.human_review_weight) for r in rejections)
		total = approval_weight + rejection_weight
		if total == 0:
			return ConsensusDecision(reached=False, reason=REASON_NO_REVIEWS, threshold=config.consensus_threshold)
		ratio = approval_weight / total
		reached = ratio >= config.consensus_threshold
		return ConsensusDecision(
			reached=reached,
			reason=REASON_CONSENSUS_REACHED if reached else REASON_BELOW_THRESHOLD,
			ratio=_display(ratio),
			threshold=config.consensus_threshold,
			approval_weight=_display(approval_weight),
			rejection_weight=_display(rejection_weight),
			approvals=len(approvals),
			rejections=len(rejections),
		)


Governance = SoloGovernance | GuildGovernance | OpenGovernance

_STRATEGIES: dict[str, Governance] = {
	"solo": SoloGovernance(),
	"guild": GuildGovernance(),
	"open": OpenGovernance(),
}


def governance_for(mode: str) -> Governance:
	try:
		return _STRATEGIES[mode]
	except KeyError:
		raise UnknownGovernanceModeError(f"Unknown governance mode: {mode!r}") from None


def compute_consensus(reviews: list[ReviewVote], config: ConsensusConfig) -> ConsensusDecision:
	"""Decide whether ``reviews`` satisfy the repository's governance rule."""
	strategy = governance_for(config.ownership_model)

	if config.merge_mode == "swarm":
		return ConsensusDecision(reached=True, reason=REASON_SWARM_MODE)

	if len(reviews) < config.min_reviews:
		return ConsensusDecision(
			reached=False,
			reason=REASON_INSUFFICIENT_REVIEWS,
			current=len(reviews),
			required=config.min_reviews,
		)

	approvals = [r for r in reviews if r.verdict == VERDICT_APPROVE]
	rejections = [r for r in reviews if r.verdict in REJECTION_VERDICTS]
	return strategy.compute(approvals, rejections, config)


class ConsensusEngine:
	"""Loads reviews and repository settings, then delegates to compute_consensus."""

	def __init__(self, db: Database) -> None:
		self._db = db

	def config_for(self, repo: Repository) -> ConsensusConfig:
		rules = self._db.get_branch_rules(repo.id)
		rule = match_branch_rule(repo.buffer_branch, rules, presorted=True)
		override = rule.consensus_threshold if rule is not None else None
		return ConsensusConfig.from_repo(repo, threshold_override=override)

	def check_consensus(self, stream_id: str, repo_id: str) -> ConsensusDecision:
		repo = self._db.get_repo(repo_id)
		if repo is None:
			return ConsensusDecision(reached=False, reason=REASON_REPO_NOT_FOUND)
		stream = self._db.get_stream(stream_id)
		if stream is None or stream.repo_id != repo_id:
			return ConsensusDecision(reached=False, reason=REASON_STREAM_NOT_FOUND)

		votes = self._db.get_review_votes(stream_id, repo_id)
		decision = compute_consensus(votes, self.config_for(repo))
		logger.debug("Consensus for %s on %s: %s", stream_id, repo_id, decision.reason)
		return decision
