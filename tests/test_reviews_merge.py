import pytest

from fakes import FakeGH, make_pr

from mergebot.errors import MergeRejectedRace, NoAllowedMergeMethod
from mergebot.github import compute_approvals
from mergebot.merge import merge_pull_request, render_commit
from mergebot.models import EffectivePolicy, MergeMethod, MergeOutcome, PullRequestTarget
from mergebot.reviews import evaluate_reviews

TARGET = PullRequestTarget(owner="octo", repo="repo", number=12)
ALL_METHODS = (MergeMethod.MERGE, MergeMethod.SQUASH, MergeMethod.REBASE)


def policy(**kw):
    base = {"required_approvals": 1, "merge_method_order": ALL_METHODS}
    base.update(kw)
    return EffectivePolicy(**base)


def review(login, state):
    return {"user": {"login": login}, "state": state}


def test_compute_approvals_uses_latest_decisive_review():
    reviews = [
        review("alice", "APPROVED"),
        review("bob", "APPROVED"),
        review("bob", "CHANGES_REQUESTED"),
        review("carol", "COMMENTED"),
        review("alice", "COMMENTED"),
        review("dave", "CHANGES_REQUESTED"),
        review("dave", "APPROVED"),
        {"user": None, "state": "APPROVED"},
    ]
    assert compute_approvals(reviews) == 2


def test_dismissed_review_revokes_approval():
    assert compute_approvals([review("alice", "APPROVED"), review("alice", "DISMISSED")]) == 0


@pytest.mark.parametrize(
    "policy_min,current,protection,required,approved",
    [
        (1, 1, None, 1, True),
        (1, 0, None, 1, False),
        (1, 1, 2, 2, False),
        (1, 2, 2, 2, True),
        (3, 3, 1, 3, True),
    ],
)
def test_review_gate_uses_stricter_minimum(policy_min, current, protection, required, approved):
    pr = make_pr(current_approvals=current, branch_protection_min_approvals=protection)
    result = evaluate_reviews(pr, policy(required_approvals=policy_min))
    assert result.required == required
    assert result.current == current
    assert result.approved is approved


def test_zero_required_approvals_passes_immediately():
    result = evaluate_reviews(make_pr(current_approvals=0), policy(required_approvals=0))
    assert result.approved


def test_render_commit_templates():
    pr = make_pr(title="Fix parser", body="Closes #3", head_ref="fix", base_ref="main", user="dev")
    title, message = render_commit(policy(), TARGET, pr)
    assert title == "Fix parser (#12)"
    assert message == "Closes #3"
    custom = policy(commit_title_template="[{base}] {title}", commit_message_template="{user}: {head}")
    assert render_commit(custom, TARGET, pr) == ("[main] Fix parser", "dev: fix")


def test_merge_falls_back_on_method_not_allowed():
    not_allowed = MergeOutcome.REJECTED_METHOD_NOT_ALLOWED
    gh = FakeGH(merge_outcomes={"merge": not_allowed})
    log = []
    attempt = merge_pull_request(gh, TARGET, make_pr(), policy(), log)
    assert attempt.method == MergeMethod.SQUASH
    assert attempt.outcome == MergeOutcome.ACCEPTED
    assert [a.method for a in log] == [MergeMethod.MERGE, MergeMethod.SQUASH]


def test_merge_stops_on_other_rejection():
    gh = FakeGH(merge_outcomes={"merge": MergeOutcome.REJECTED_OTHER})
    log = []
    with pytest.raises(MergeRejectedRace):
        merge_pull_request(gh, TARGET, make_pr(), policy(), log)
    assert gh.merges() == ["merge"]
    assert len(log) == 1


def test_merge_exhausts_all_methods():
    not_allowed = MergeOutcome.REJECTED_METHOD_NOT_ALLOWED
    gh = FakeGH(merge_outcomes={m.value: not_allowed for m in ALL_METHODS})
    with pytest.raises(NoAllowedMergeMethod) as exc:
        merge_pull_request(gh, TARGET, make_pr(), policy(merge_method_order=(MergeMethod.REBASE, MergeMethod.MERGE)), [])
    assert exc.value.tried == ["rebase", "merge"]
