import logging
from typing import List, Tuple

from .errors import MergeRejectedRace, NoAllowedMergeMethod
from .metrics import merge_attempts_total, merges_failed_total, merges_success_total
from .models import EffectivePolicy, MergeAttempt, MergeOutcome, PullRequestInfo, PullRequestTarget

logger = logging.getLogger(__name__)


def render_commit(policy: EffectivePolicy, target: PullRequestTarget, pr: PullRequestInfo) -> Tuple[str, str]:
    fields = {
        "number": target.number,
        "title": pr.title or f"PR #{target.number}",
        "body": pr.body or "",
        "head": pr.head_ref,
        "base": pr.base_ref,
        "user": pr.user,
    }
    return policy.commit_title_template.format(**fields), policy.commit_message_template.format(**fields)


def merge_pull_request(
    gh, target: PullRequestTarget, pr: PullRequestInfo, policy: EffectivePolicy, log: List[MergeAttempt]
) -> MergeAttempt:
    """Try each merge method in policy order until the host accepts one.

    Every attempt is appended to ``log``. A method the host does not allow
    moves on to the next one; any other rejection raises ``MergeRejectedRace``.
    Raises ``NoAllowedMergeMethod`` when every method was refused as not allowed.
    """
    title, message = render_commit(policy, target, pr)
    tried: List[str] = []
    for method in policy.merge_method_order:
        if method not in pr.allowed_merge_methods:
            logger.debug("Repository settings do not list %s for %s; trying anyway", method.value, target)
        logger.info("Attempting to merge %s using '%s'", target, method.value)
        attempt = gh.attempt_merge(target, method, pr.head_sha, title, message)
        log.append(attempt)
        tried.append(method.value)
        merge_attempts_total.labels(method=method.value, result=attempt.outcome.value).inc()
        if attempt.outcome == MergeOutcome.ACCEPTED:
            merges_success_total.labels(method=method.value).inc()
            logger.info("Merged %s via %s", target, method.value)
            return attempt
        if attempt.outcome == MergeOutcome.REJECTED_METHOD_NOT_ALLOWED:
            logger.warning("Merge method '%s' not allowed for %s", method.value, target)
            continue
        merges_failed_total.labels(reason="rejected").inc()
        raise MergeRejectedRace(attempt.message or f"merge via {method.value} rejected")
    merges_failed_total.labels(reason="no_allowed_method").inc()
    raise NoAllowedMergeMethod(tried)
