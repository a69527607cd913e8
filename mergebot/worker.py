import time
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .branch import SyncStatus, sync_branch
from .checks import ChecksResult, ChecksVerdict, StatusAggregator
from .config import SETTINGS
from .errors import (
    AbortError,
    ApiError,
    Cancelled,
    CheckHardFailure,
    ConfigError,
    InsufficientApprovalsTimeout,
    MergeBotError,
    MergeConflict,
    MergeRejectedRace,
    PullRequestNotOpen,
    RateLimitError,
    Timeout,
    TransientError,
    TransientFailureExhausted,
)
from .merge import merge_pull_request
from .metrics import (
    phase_processing_seconds,
    poll_wait_seconds,
    retries_total,
    runs_total,
    state_transitions_total,
)
from .models import EffectivePolicy, MergeAttempt, MergeMethod, PolicyConfig, PullRequestInfo, PullRequestTarget
from .policy import resolve_policy
from .providers import CIProvider
from .reviews import ReviewResult, evaluate_reviews

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    INIT = "init"
    RESOLVING_POLICY = "resolving_policy"
    SYNCING_BRANCH = "syncing_branch"
    AWAITING_CHECKS = "awaiting_checks"
    AWAITING_REVIEWS = "awaiting_reviews"
    MERGING = "merging"
    MERGED = "merged"
    ABORTED = "aborted"


TERMINAL_PHASES = (Phase.MERGED, Phase.ABORTED)


@dataclass
class LoopSettings:
    poll_interval_seconds: float = 10.0
    max_poll_interval_seconds: float = 120.0
    backoff_factor: float = 2.0
    max_transient_retries: int = 5
    timeout_seconds: Optional[float] = 3600.0
    dry_run: bool = False

    @classmethod
    def from_settings(cls, settings=SETTINGS, **overrides: Any) -> "LoopSettings":
        values = dict(
            poll_interval_seconds=settings.poll_interval_seconds,
            max_poll_interval_seconds=settings.max_poll_interval_seconds,
            backoff_factor=settings.backoff_factor,
            max_transient_retries=settings.max_transient_retries,
            timeout_seconds=settings.max_wait_minutes * 60 if settings.max_wait_minutes > 0 else None,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class OrchestrationState:
    phase: Phase = Phase.INIT
    policy: Optional[EffectivePolicy] = None
    pr: Optional[PullRequestInfo] = None
    checks: Optional[ChecksResult] = None
    review: Optional[ReviewResult] = None
    # Attempts of the current merge phase only
    merge_attempts: List[MergeAttempt] = field(default_factory=list)
    # Method whose merge request got no answer; the PR may have merged anyway
    merge_in_flight: Optional[MergeMethod] = None
    merged_method: Optional[MergeMethod] = None
    update_requested_for: Optional[str] = None
    error: Optional[MergeBotError] = None
    aborted_in: Optional[Phase] = None
    cycles: int = 0
    rewinds: int = 0
    transient_failures: int = 0
    backoff_seconds: float = 0.0

    @property
    def merged(self) -> bool:
        return self.phase == Phase.MERGED

    def report(self) -> Dict[str, Any]:
        """Last observed state, for operators reading an abort."""
        out: Dict[str, Any] = {"phase": self.phase.value, "cycles": self.cycles}
        if self.error is not None:
            out["reason"] = self.error.reason
            out["detail"] = str(self.error)
        if self.aborted_in is not None:
            out["aborted_in"] = self.aborted_in.value
        if self.pr is not None:
            out["head_sha"] = self.pr.head_sha
            out["mergeable_state"] = self.pr.mergeable_state
        if self.checks is not None:
            out["checks"] = {
                o.name: {"state": o.state.value, "failures": o.failure_count_seen_so_far}
                for o in self.checks.observations
            }
        if self.review is not None:
            out["approvals"] = {"current": self.review.current, "required": self.review.required}
        if self.merge_attempts:
            out["merge_attempts"] = [
                {"method": a.method.value, "outcome": a.outcome.value, "message": a.message} for a in self.merge_attempts
            ]
        return out


class Orchestrator:
    """Drives one pull request from policy resolution to a terminal outcome.

    Each loop iteration evaluates exactly one phase. Phases that advance the
    machine are followed immediately by the next one; a phase that has to keep
    waiting suspends for the current backoff interval, which grows by
    ``backoff_factor`` up to ``max_poll_interval_seconds`` and resets to the
    base interval on the next advance. Transport and API errors are retried
    with their own exponential backoff, up to ``max_transient_retries``
    consecutive failures. The overall deadline and the cancellation event are
    checked before every phase and interrupt any wait.
    """

    def __init__(
        self,
        gh,
        providers: Sequence[CIProvider],
        policy_config: PolicyConfig,
        target: PullRequestTarget,
        loop: Optional[LoopSettings] = None,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Optional[Callable[[float], bool]] = None,
    ):
        self.gh = gh
        self.policy_config = policy_config
        self.target = target
        self.loop = loop or LoopSettings()
        self.cancel = cancel or threading.Event()
        self.clock = clock
        # Returns True when the wait was interrupted by cancellation
        self.sleeper = sleeper or self.cancel.wait
        self.aggregator = StatusAggregator(providers)
        self.state = OrchestrationState(backoff_seconds=self.loop.poll_interval_seconds)
        self._deadline: Optional[float] = None
        self._snapshot: Optional[PullRequestInfo] = None

    # --- loop ---
    def run(self) -> OrchestrationState:
        state = self.state
        if self.loop.timeout_seconds is not None:
            self._deadline = self.clock() + self.loop.timeout_seconds
        try:
            while state.phase not in TERMINAL_PHASES:
                if self.cancel.is_set():
                    self._abort(Cancelled("run cancelled"))
                    break
                if self._deadline is not None and self.clock() >= self._deadline:
                    self._abort(self._timeout_error())
                    break
                state.cycles += 1
                phase = state.phase
                try:
                    with phase_processing_seconds.labels(phase=phase.value).time():
                        advanced = self.step()
                    state.transient_failures = 0
                except (TransientError, ApiError) as e:
                    state.transient_failures += 1
                    retries_total.labels(phase=phase.value, reason=e.reason).inc()
                    if state.transient_failures > self.loop.max_transient_retries:
                        self._abort(TransientFailureExhausted(state.transient_failures, e))
                        break
                    delay = self._transient_delay(e)
                    logger.warning(
                        "Transient error in %s (attempt %d/%d), retrying in %.1fs: %s",
                        phase.value,
                        state.transient_failures,
                        self.loop.max_transient_retries,
                        delay,
                        e,
                    )
                    self._wait(delay)
                    continue
                except (AbortError, ConfigError) as e:
                    self._abort(e)
                    break
                if state.phase in TERMINAL_PHASES:
                    break
                if advanced:
                    state.backoff_seconds = self.loop.poll_interval_seconds
                else:
                    self._wait(state.backoff_seconds)
                    state.backoff_seconds = min(
                        state.backoff_seconds * self.loop.backoff_factor, self.loop.max_poll_interval_seconds
                    )
        finally:
            self.aggregator.discard()
        runs_total.labels(outcome=state.error.reason if state.error else state.phase.value).inc()
        return state

    def _transient_delay(self, e: MergeBotError) -> float:
        n = self.state.transient_failures
        delay = min(
            self.loop.poll_interval_seconds * (self.loop.backoff_factor ** (n - 1)),
            self.loop.max_poll_interval_seconds,
        )
        if isinstance(e, RateLimitError) and e.retry_after:
            # Honor the server's reset time; the deadline still bounds the wait
            delay = max(delay, e.retry_after)
        return delay

    def _wait(self, seconds: float) -> None:
        if self._deadline is not None:
            seconds = min(seconds, max(0.0, self._deadline - self.clock()))
        self._snapshot = None
        if seconds <= 0:
            return
        logger.debug("Waiting %.1fs in %s", seconds, self.state.phase.value)
        poll_wait_seconds.labels(phase=self.state.phase.value).observe(seconds)
        if self.sleeper(seconds):
            logger.debug("Wait interrupted by cancellation")

    def _timeout_error(self) -> AbortError:
        review = self.state.review
        if self.state.phase == Phase.AWAITING_REVIEWS and review is not None and not review.approved:
            return InsufficientApprovalsTimeout(review.current, review.required)
        return Timeout(f"deadline reached while in {self.state.phase.value}")

    def _abort(self, error: MergeBotError) -> None:
        self.state.error = error
        self.state.aborted_in = self.state.phase
        self._transition(Phase.ABORTED)
        logger.error("Aborting %s: %s (%s)", self.target, error.reason, error)

    def _transition(self, to: Phase) -> None:
        frm = self.state.phase
        state_transitions_total.labels(from_phase=frm.value, to_phase=to.value).inc()
        logger.info("%s: %s -> %s", self.target, frm.value, to.value)
        self.state.phase = to

    # --- phases ---
    def _refresh(self) -> PullRequestInfo:
        """Fetch the PR once per poll cycle and reject states that can never merge.

        A PR found merged after this run issued a merge request is returned
        as is; the merge phase treats it as its own merge whose response was lost.
        """
        if self._snapshot is None:
            self._snapshot = self.gh.get_pull_request(self.target)
        pr = self._snapshot
        self.state.pr = pr
        if pr.merged and self.state.phase == Phase.MERGING and self.state.merge_in_flight is not None:
            return pr
        if pr.merged:
            raise PullRequestNotOpen("pull request is already merged")
        if pr.state != "open":
            raise PullRequestNotOpen(f"pull request is {pr.state}")
        if pr.draft:
            raise PullRequestNotOpen("pull request is a draft")
        if pr.mergeable_state == "dirty":
            raise MergeConflict("pull request has conflicts with its base branch")
        return pr

    def step(self) -> bool:
        """Evaluate the current phase once. Returns True when the machine advanced."""
        state = self.state
        if state.phase == Phase.INIT:
            self._transition(Phase.RESOLVING_POLICY)
            return True
        if state.phase == Phase.RESOLVING_POLICY:
            state.policy = resolve_policy(self.policy_config, self.target)
            self._transition(Phase.SYNCING_BRANCH)
            return True

        policy = state.policy
        if policy is None:
            raise RuntimeError(f"{state.phase.value} reached without a resolved policy")
        pr = self._refresh()

        if state.phase == Phase.SYNCING_BRANCH:
            status = sync_branch(self.gh, self.target, pr, state.update_requested_for)
            if status == SyncStatus.UPDATE_FAILED:
                raise MergeConflict(f"branch update rejected by the host for {pr.head_ref} onto {pr.base_ref}")
            if status == SyncStatus.UPDATE_REQUESTED:
                state.update_requested_for = pr.head_sha
                return False
            state.update_requested_for = None
            self._transition(Phase.AWAITING_CHECKS)
            return True

        if state.phase == Phase.AWAITING_CHECKS:
            result = self.aggregator.poll(self.target, pr.head_sha, policy)
            state.checks = result
            if result.verdict == ChecksVerdict.HARD_FAILURE:
                raise CheckHardFailure(result.failed_check or "", result.failure_count)
            if result.verdict == ChecksVerdict.STILL_WAITING:
                logger.info("Waiting on checks for %s: %s", self.target, ", ".join(result.pending) or "none reported")
                return False
            self._transition(Phase.AWAITING_REVIEWS)
            return True

        if state.phase == Phase.AWAITING_REVIEWS:
            review = evaluate_reviews(pr, policy)
            state.review = review
            if not review.approved:
                logger.info("Waiting on reviews for %s: %d of %d approvals", self.target, review.current, review.required)
                return False
            state.merge_attempts = []
            state.merge_in_flight = None
            self._transition(Phase.MERGING)
            return True

        if state.phase == Phase.MERGING:
            if pr.merged:
                # An earlier attempt landed but its response never arrived
                logger.info("%s is merged; the response to the merge request was lost", self.target)
                state.merged_method = state.merge_in_flight
                self._transition(Phase.MERGED)
                return True
            if self.loop.dry_run:
                logger.info(
                    "Dry run: would merge %s trying %s",
                    self.target,
                    [m.value for m in policy.merge_method_order],
                )
                self._transition(Phase.MERGED)
                return True
            answered = len(state.merge_attempts)
            state.merge_in_flight = None
            try:
                attempt = merge_pull_request(self.gh, self.target, pr, policy, state.merge_attempts)
            except MergeRejectedRace as e:
                # The target most likely moved under us; re-validate from the branch sync
                logger.warning("Merge of %s rejected (%s); re-validating branch and checks", self.target, e)
                state.rewinds += 1
                state.update_requested_for = None
                self._transition(Phase.SYNCING_BRANCH)
                return False
            except (TransientError, ApiError):
                # Methods are tried in order, so the unanswered one follows the answered ones
                order = policy.merge_method_order
                tried = len(state.merge_attempts) - answered
                state.merge_in_flight = order[min(tried, len(order) - 1)]
                raise
            state.merged_method = attempt.method
            self._transition(Phase.MERGED)
            return True

        raise RuntimeError(f"unexpected phase {state.phase}")
