import logging
from enum import Enum
from typing import Optional

from .metrics import branch_updates_total
from .models import BranchUpdateOutcome, PullRequestInfo, PullRequestTarget

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_REQUESTED = "update_requested"
    UPDATE_FAILED = "update_failed"


def sync_branch(gh, target: PullRequestTarget, pr: PullRequestInfo, requested_for: Optional[str] = None) -> SyncStatus:
    """Bring the PR branch up to date with its base.

    ``requested_for`` is the head SHA an update was last requested for; while
    the head has not moved since, the update is still in flight and is not
    requested again.
    """
    if not pr.source_branch_behind:
        return SyncStatus.UP_TO_DATE
    if requested_for and requested_for == pr.head_sha:
        logger.debug("Update already requested for %s at %s; waiting", target, pr.head_sha)
        return SyncStatus.UPDATE_REQUESTED
    logger.info("%s is behind %s; requesting branch update", target, pr.base_ref)
    outcome = gh.request_branch_update(target, pr.head_sha)
    branch_updates_total.labels(result="success" if outcome == BranchUpdateOutcome.OK else "conflict").inc()
    if outcome == BranchUpdateOutcome.CONFLICT:
        return SyncStatus.UPDATE_FAILED
    return SyncStatus.UPDATE_REQUESTED
