import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ConfigError
from .metrics import check_failures_total, check_retriggers_total
from .models import CheckObservation, CheckState, CheckStatus, EffectivePolicy, PullRequestTarget, RetriggerOutcome
from .providers import CIProvider

logger = logging.getLogger(__name__)


class ChecksVerdict(str, Enum):
    ALL_SATISFIED = "all_satisfied"
    STILL_WAITING = "still_waiting"
    HARD_FAILURE = "hard_failure"


@dataclass
class ChecksResult:
    verdict: ChecksVerdict
    observations: List[CheckObservation] = field(default_factory=list)
    failed_check: Optional[str] = None
    failure_count: int = 0
    retriggered: List[str] = field(default_factory=list)

    @property
    def pending(self) -> List[str]:
        return [o.name for o in self.observations if o.state != CheckState.SUCCESS]


class StatusAggregator:
    """Merges CI provider checks into one namespace and tracks flakiness.

    Failure counters live for the lifetime of one orchestration run and only
    ever grow: a counter increments when a check is seen moving from a
    non-failure state (or from not being seen at all) into ``failure``, or when
    a failed check reports a run identity different from the last one seen,
    which is how a re-run that fails again before the next poll shows up. A check
    whose counter exceeds its configured allowance is a hard failure; below
    that, the check is re-triggered at most once per counter value and treated
    as pending until it reports again.
    """

    def __init__(self, providers: Sequence[CIProvider]):
        self.providers = list(providers)
        self._failure_counts: Dict[str, int] = {}
        self._last_state: Dict[str, CheckState] = {}
        self._last_run: Dict[str, Optional[str]] = {}
        self._retriggered_at: Dict[str, int] = {}

    def failure_count(self, name: str) -> int:
        return self._failure_counts.get(name, 0)

    def discard(self) -> None:
        self._failure_counts.clear()
        self._last_state.clear()
        self._last_run.clear()
        self._retriggered_at.clear()

    def collect(self, target: PullRequestTarget, head_sha: str) -> List[Tuple[CIProvider, CheckStatus]]:
        """Query every provider; a check name reported by two providers is a configuration error."""
        owners: Dict[str, CIProvider] = {}
        collected: List[Tuple[CIProvider, CheckStatus]] = []
        for provider in self.providers:
            for check in provider.list_checks(target, head_sha):
                other = owners.get(check.name)
                if other is not None and other is not provider:
                    raise ConfigError(
                        f"check name {check.name!r} is reported by both {other.kind.value} and {provider.kind.value}"
                    )
                if other is None:
                    owners[check.name] = provider
                    collected.append((provider, check))
        return collected

    def _record(self, check: CheckStatus) -> int:
        previous = self._last_state.get(check.name)
        rerun = check.run_id is not None and check.run_id != self._last_run.get(check.name)
        if check.state == CheckState.FAILURE and (previous != CheckState.FAILURE or rerun):
            self._failure_counts[check.name] = self._failure_counts.get(check.name, 0) + 1
            check_failures_total.labels(check=check.name).inc()
            logger.info("Check '%s' failed (failure #%d)", check.name, self._failure_counts[check.name])
        self._last_state[check.name] = check.state
        self._last_run[check.name] = check.run_id
        return self._failure_counts.get(check.name, 0)

    def poll(self, target: PullRequestTarget, head_sha: str, policy: EffectivePolicy) -> ChecksResult:
        collected = self.collect(target, head_sha)
        counts = {check.name: self._record(check) for _, check in collected}

        # Crossing the allowance is one-way, whatever the check reports now
        for _, check in collected:
            limit = policy.max_failures_for(check.name)
            if limit is not None and counts[check.name] > limit:
                return ChecksResult(
                    verdict=ChecksVerdict.HARD_FAILURE,
                    observations=self._observations(collected, counts),
                    failed_check=check.name,
                    failure_count=counts[check.name],
                )

        retriggered: List[str] = []
        observations: List[CheckObservation] = []
        for provider, check in collected:
            state = check.state
            if state == CheckState.FAILURE:
                count = counts[check.name]
                if self._retriggered_at.get(check.name) != count:
                    self._retriggered_at[check.name] = count
                    outcome = provider.retrigger_check(target, check.name)
                    check_retriggers_total.labels(provider=provider.kind.value, result=outcome.value).inc()
                    if outcome == RetriggerOutcome.OK:
                        retriggered.append(check.name)
                    else:
                        logger.warning("Check '%s' cannot be re-run by %s; waiting for it to change", check.name, provider.kind.value)
                state = CheckState.PENDING
            observations.append(
                CheckObservation(name=check.name, state=state, failure_count_seen_so_far=counts[check.name])
            )

        if not observations:
            logger.debug("No checks reported for %s@%s; allow_merge_when_no_checks=%s", target, head_sha, policy.allow_merge_when_no_checks)
            verdict = ChecksVerdict.ALL_SATISFIED if policy.allow_merge_when_no_checks else ChecksVerdict.STILL_WAITING
            return ChecksResult(verdict=verdict)
        if all(o.state == CheckState.SUCCESS for o in observations):
            verdict = ChecksVerdict.ALL_SATISFIED
        else:
            verdict = ChecksVerdict.STILL_WAITING
        return ChecksResult(verdict=verdict, observations=observations, retriggered=retriggered)

    @staticmethod
    def _observations(collected: List[Tuple[CIProvider, CheckStatus]], counts: Dict[str, int]) -> List[CheckObservation]:
        return [
            CheckObservation(name=check.name, state=check.state, failure_count_seen_so_far=counts[check.name])
            for _, check in collected
        ]
