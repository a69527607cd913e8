import re
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class MergeMethod(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


class CheckState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class MergeOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED_METHOD_NOT_ALLOWED = "rejected_method_not_allowed"
    REJECTED_OTHER = "rejected_other"


class BranchUpdateOutcome(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class RetriggerOutcome(str, Enum):
    OK = "ok"
    UNSUPPORTED = "unsupported"


_URL_RE = re.compile(r"^https?://([^/]+)/([\w.-]+)/([\w.-]+)/pull/(\d+)/?$")
_SHORT_RE = re.compile(r"^([\w.-]+)/([\w.-]+)#(\d+)$")


class PullRequestTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    @classmethod
    def parse(cls, value: str) -> Tuple[str, "PullRequestTarget"]:
        """Parse ``https://host/owner/repo/pull/N`` or ``owner/repo#N``.

        Returns the code host name alongside the target. Raises ValueError when
        the value matches neither form.
        """
        value = value.strip()
        m = _URL_RE.match(value)
        if m:
            host, owner, repo, number = m.groups()
            return host, cls(owner=owner, repo=repo, number=int(number))
        m = _SHORT_RE.match(value)
        if m:
            owner, repo, number = m.groups()
            return "github.com", cls(owner=owner, repo=repo, number=int(number))
        raise ValueError(f"malformed pull request identifier: {value!r}")


class PullRequestInfo(BaseModel):
    """Snapshot of a pull request as the code host reports it on one poll."""

    state: str = "open"
    merged: bool = False
    draft: bool = False
    mergeable_state: str = "unknown"  # clean, unstable, blocked, behind, dirty, unknown
    head_sha: str = ""
    head_ref: Optional[str] = None
    base_ref: Optional[str] = None
    title: str = ""
    body: str = ""
    user: Optional[str] = None
    current_approvals: int = 0
    branch_protection_min_approvals: Optional[int] = None
    allowed_merge_methods: FrozenSet[MergeMethod] = frozenset(MergeMethod)

    @property
    def source_branch_behind(self) -> bool:
        return self.mergeable_state == "behind"


class CheckStatus(BaseModel):
    """A named check as one CI provider reports it."""

    name: str
    state: CheckState
    provider: Optional[str] = None
    url: Optional[str] = None
    # Identifies one execution of the check; a re-run reports a new value
    run_id: Optional[str] = None


class CheckObservation(BaseModel):
    name: str
    state: CheckState
    failure_count_seen_so_far: int = 0


class ReviewState(BaseModel):
    current_approvals: int
    branch_protection_min_approvals: Optional[int] = None
    policy_min_approvals: int = 0

    @property
    def effective_min_approvals(self) -> int:
        return max(self.policy_min_approvals, self.branch_protection_min_approvals or 0)


class MergeAttempt(BaseModel):
    method: MergeMethod
    outcome: MergeOutcome
    message: str = ""


# --- Policy file schema ---


class MergeSection(BaseModel):
    default_method: Optional[MergeMethod] = None
    methods: Optional[List[MergeMethod]] = None
    commit_title_template: Optional[str] = None
    commit_message_template: Optional[str] = None


class ReviewsSection(BaseModel):
    approvals: Optional[int] = None


class ChecksSection(BaseModel):
    # When true and no CI provider reports any check for the PR head, the
    # checks gate is considered satisfied (still subject to host protections).
    allow_merge_when_no_checks: Optional[bool] = None
    default_max_failures: Optional[int] = None


class StatusRule(BaseModel):
    name: str
    max_failures: int


class RepoOverride(BaseModel):
    repo: str
    merge: MergeSection = Field(default_factory=MergeSection)
    reviews: ReviewsSection = Field(default_factory=ReviewsSection)
    checks: ChecksSection = Field(default_factory=ChecksSection)
    statuses: Optional[List[StatusRule]] = None


class GithubCredentials(BaseModel):
    token: Optional[str] = None


class CircleCiCredentials(BaseModel):
    token: Optional[str] = None


class WorkflowsSection(BaseModel):
    circleci: Optional[CircleCiCredentials] = None


class PolicyConfig(BaseModel):
    """Global policy plus the ordered repo overrides, as loaded from the policy file."""

    github: GithubCredentials = Field(default_factory=GithubCredentials)
    workflows: WorkflowsSection = Field(default_factory=WorkflowsSection)
    # Unset fields fall back to the built-in defaults at resolution time.
    merge: MergeSection = Field(default_factory=MergeSection)
    reviews: ReviewsSection = Field(default_factory=ReviewsSection)
    checks: ChecksSection = Field(default_factory=ChecksSection)
    statuses: List[StatusRule] = Field(default_factory=list)
    repos: List[RepoOverride] = Field(default_factory=list)


class EffectivePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_approvals: int
    merge_method_order: Tuple[MergeMethod, ...]
    per_check_flakiness: Dict[str, int] = Field(default_factory=dict)
    default_max_failures: Optional[int] = None
    allow_merge_when_no_checks: bool = True
    commit_title_template: str = "{title} (#{number})"
    commit_message_template: str = "{body}"
    matched_pattern: Optional[str] = None

    def max_failures_for(self, check_name: str) -> Optional[int]:
        """Allowed failures for a check; None means unlimited."""
        return self.per_check_flakiness.get(check_name, self.default_max_failures)
