from dataclasses import dataclass

from .models import EffectivePolicy, PullRequestInfo, ReviewState


@dataclass
class ReviewResult:
    approved: bool
    review: ReviewState

    @property
    def current(self) -> int:
        return self.review.current_approvals

    @property
    def required(self) -> int:
        return self.review.effective_min_approvals


def evaluate_reviews(pr: PullRequestInfo, policy: EffectivePolicy) -> ReviewResult:
    """Compare approvals against the stricter of policy and branch protection."""
    review = ReviewState(
        current_approvals=pr.current_approvals,
        branch_protection_min_approvals=pr.branch_protection_min_approvals,
        policy_min_approvals=policy.required_approvals,
    )
    return ReviewResult(approved=review.current_approvals >= review.effective_min_approvals, review=review)
