import pytest

from fakes import FakeProvider

from mergebot.checks import ChecksVerdict, StatusAggregator
from mergebot.errors import ConfigError
from mergebot.github import GitHubActionsProvider
from mergebot.models import EffectivePolicy, MergeMethod, PullRequestTarget, RetriggerOutcome
from mergebot.providers import ProviderKind

TARGET = PullRequestTarget(owner="octo", repo="repo", number=3)


def policy(**kw):
    base = {"required_approvals": 1, "merge_method_order": (MergeMethod.MERGE,)}
    base.update(kw)
    return EffectivePolicy(**base)


def test_failure_counter_is_monotonic():
    provider = FakeProvider([{"ci": "failure"}, {"ci": "success"}, {"ci": "failure"}, {"ci": "failure"}])
    agg = StatusAggregator([provider])
    seen = []
    for _ in range(4):
        agg.poll(TARGET, "sha", policy())
        seen.append(agg.failure_count("ci"))
    assert seen == [1, 1, 2, 2]


def test_retrigger_once_per_failure_count():
    provider = FakeProvider([{"ci": "failure"}, {"ci": "failure"}, {"ci": "pending"}, {"ci": "failure"}])
    agg = StatusAggregator([provider])
    results = [agg.poll(TARGET, "sha", policy()) for _ in range(4)]
    assert provider.retriggers == ["ci", "ci"]
    assert results[0].retriggered == ["ci"]
    assert results[1].retriggered == []
    # A re-triggered failure counts as pending for the verdict
    assert all(r.verdict == ChecksVerdict.STILL_WAITING for r in results)
    assert results[0].observations[0].state.value == "pending"


def test_exceeding_allowance_is_hard_failure_without_retrigger():
    provider = FakeProvider([{"lint": "failure", "unit": "failure"}, {"lint": "pending"}, {"lint": "failure"}])
    agg = StatusAggregator([provider])
    p = policy(per_check_flakiness={"lint": 1, "unit": 5})
    first = agg.poll(TARGET, "sha", p)
    assert first.verdict == ChecksVerdict.STILL_WAITING
    assert sorted(provider.retriggers) == ["lint", "unit"]
    agg.poll(TARGET, "sha", p)
    third = agg.poll(TARGET, "sha", p)
    assert third.verdict == ChecksVerdict.HARD_FAILURE
    assert third.failed_check == "lint"
    assert third.failure_count == 2
    assert sorted(provider.retriggers) == ["lint", "unit"]


def test_zero_allowance_fails_on_first_failure():
    provider = FakeProvider([{"ci": "failure"}])
    agg = StatusAggregator([provider])
    result = agg.poll(TARGET, "sha", policy(default_max_failures=0))
    assert result.verdict == ChecksVerdict.HARD_FAILURE
    assert provider.retriggers == []


def test_all_success_is_satisfied():
    agg = StatusAggregator([FakeProvider([{"a": "success", "b": "success"}])])
    assert agg.poll(TARGET, "sha", policy()).verdict == ChecksVerdict.ALL_SATISFIED


def test_no_checks_follows_policy():
    agg = StatusAggregator([FakeProvider([{}])])
    assert agg.poll(TARGET, "sha", policy()).verdict == ChecksVerdict.ALL_SATISFIED
    assert agg.poll(TARGET, "sha", policy(allow_merge_when_no_checks=False)).verdict == ChecksVerdict.STILL_WAITING


def test_providers_share_one_namespace():
    actions = FakeProvider([{"build": "success"}])
    circle = FakeProvider([{"ci/circleci: test": "failure"}], kind=ProviderKind.CIRCLECI)
    agg = StatusAggregator([actions, circle])
    result = agg.poll(TARGET, "sha", policy())
    assert {o.name for o in result.observations} == {"build", "ci/circleci: test"}
    assert circle.retriggers == ["ci/circleci: test"]
    assert actions.retriggers == []


def test_name_collision_across_providers_is_config_error():
    actions = FakeProvider([{"test": "success"}])
    circle = FakeProvider([{"test": "success"}], kind=ProviderKind.CIRCLECI)
    agg = StatusAggregator([actions, circle])
    with pytest.raises(ConfigError):
        agg.poll(TARGET, "sha", policy())


def test_unsupported_retrigger_is_not_repeated():
    provider = FakeProvider([{"ci": "failure"}], retrigger_outcome=RetriggerOutcome.UNSUPPORTED)
    agg = StatusAggregator([provider])
    for _ in range(3):
        assert agg.poll(TARGET, "sha", policy()).verdict == ChecksVerdict.STILL_WAITING
    assert provider.retriggers == ["ci"]


def test_discard_drops_counters():
    agg = StatusAggregator([FakeProvider([{"ci": "failure"}])])
    agg.poll(TARGET, "sha", policy())
    agg.discard()
    assert agg.failure_count("ci") == 0


class ScriptedActionsHost:
    """Each list_workflow_runs call serves the next batch of runs; the last batch repeats."""

    def __init__(self, batches):
        self.batches = list(batches)
        self.reruns = []

    def list_workflow_runs(self, owner, repo, head_sha):
        return self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]

    def rerun_workflow(self, owner, repo, run_id):
        self.reruns.append(run_id)
        return True


def lint_run(attempt):
    return [
        {
            "id": 5,
            "run_attempt": attempt,
            "workflow_id": 1,
            "name": "lint",
            "head_sha": "sha",
            "status": "completed",
            "conclusion": "failure",
        }
    ]


def test_rerun_failing_again_between_polls_counts_as_new_failure():
    host = ScriptedActionsHost([lint_run(1), lint_run(2), lint_run(2)])
    agg = StatusAggregator([GitHubActionsProvider(host)])
    p = policy(per_check_flakiness={"lint": 3})
    agg.poll(TARGET, "sha", p)
    assert agg.failure_count("lint") == 1
    agg.poll(TARGET, "sha", p)
    assert agg.failure_count("lint") == 2
    assert host.reruns == [5, 5]
    # Same attempt observed again: nothing new to count or re-run
    result = agg.poll(TARGET, "sha", p)
    assert result.verdict == ChecksVerdict.STILL_WAITING
    assert agg.failure_count("lint") == 2
    assert host.reruns == [5, 5]


def test_rerun_failing_past_allowance_is_hard_failure():
    host = ScriptedActionsHost([lint_run(1), lint_run(2)])
    agg = StatusAggregator([GitHubActionsProvider(host)])
    p = policy(per_check_flakiness={"lint": 1})
    agg.poll(TARGET, "sha", p)
    result = agg.poll(TARGET, "sha", p)
    assert result.verdict == ChecksVerdict.HARD_FAILURE
    assert result.failure_count == 2
    assert host.reruns == [5]
