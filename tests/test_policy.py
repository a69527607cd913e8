import pytest

from mergebot.errors import ConfigError
from mergebot.models import (
    ChecksSection,
    MergeMethod,
    MergeSection,
    PolicyConfig,
    PullRequestTarget,
    RepoOverride,
    ReviewsSection,
    StatusRule,
)
from mergebot.policy import load_policy, parse_repo_pattern, resolve_policy


def target(full_name: str, number: int = 1) -> PullRequestTarget:
    owner, repo = full_name.split("/")
    return PullRequestTarget(owner=owner, repo=repo, number=number)


def test_defaults_without_policy_file():
    policy = resolve_policy(load_policy(None), target("other/repo"))
    assert policy.required_approvals == 1
    assert policy.merge_method_order == (MergeMethod.MERGE, MergeMethod.SQUASH, MergeMethod.REBASE)
    assert policy.per_check_flakiness == {}
    assert policy.max_failures_for("anything") is None
    assert policy.matched_pattern is None


def test_owner_wildcard_applies_only_to_that_owner():
    cfg = PolicyConfig(
        reviews=ReviewsSection(approvals=1),
        repos=[RepoOverride(repo="rust-lang/*", reviews=ReviewsSection(approvals=3))],
    )
    assert resolve_policy(cfg, target("rust-lang/anything")).required_approvals == 3
    assert resolve_policy(cfg, target("other/repo")).required_approvals == 1


def test_exact_match_beats_wildcard_regardless_of_order():
    cfg = PolicyConfig(
        repos=[
            RepoOverride(repo="acme/*", reviews=ReviewsSection(approvals=2)),
            RepoOverride(repo="acme/api", reviews=ReviewsSection(approvals=4)),
        ]
    )
    assert resolve_policy(cfg, target("acme/api")).required_approvals == 4
    assert resolve_policy(cfg, target("acme/web")).required_approvals == 2


def test_override_fields_inherit_individually():
    cfg = PolicyConfig(
        merge=MergeSection(default_method=MergeMethod.SQUASH),
        reviews=ReviewsSection(approvals=2),
        statuses=[StatusRule(name="lint", max_failures=3)],
        repos=[
            RepoOverride(
                repo="acme/api",
                statuses=[StatusRule(name="some non flaky CI step", max_failures=1)],
            )
        ],
    )
    policy = resolve_policy(cfg, target("acme/api"))
    assert policy.required_approvals == 2
    assert policy.merge_method_order[0] == MergeMethod.SQUASH
    # Only the single best match applies; its statuses replace the global list
    assert policy.per_check_flakiness == {"some non flaky CI step": 1}
    assert resolve_policy(cfg, target("acme/web")).per_check_flakiness == {"lint": 3}


def test_override_narrowing_methods_drops_inherited_default():
    cfg = PolicyConfig(
        merge=MergeSection(default_method=MergeMethod.SQUASH),
        repos=[RepoOverride(repo="acme/api", merge=MergeSection(methods=[MergeMethod.REBASE, MergeMethod.MERGE]))],
    )
    policy = resolve_policy(cfg, target("acme/api"))
    assert policy.merge_method_order == (MergeMethod.REBASE, MergeMethod.MERGE)


def test_matching_is_case_insensitive():
    cfg = PolicyConfig(repos=[RepoOverride(repo="Rust-Lang/*", reviews=ReviewsSection(approvals=3))])
    assert resolve_policy(cfg, target("rust-lang/cargo")).required_approvals == 3


@pytest.mark.parametrize(
    "cfg",
    [
        PolicyConfig(merge=MergeSection(methods=[])),
        PolicyConfig(merge=MergeSection(methods=[MergeMethod.MERGE, MergeMethod.MERGE])),
        PolicyConfig(merge=MergeSection(default_method=MergeMethod.SQUASH, methods=[MergeMethod.MERGE])),
        PolicyConfig(reviews=ReviewsSection(approvals=-1)),
        PolicyConfig(checks=ChecksSection(default_max_failures=-2)),
        PolicyConfig(statuses=[StatusRule(name="ci", max_failures=-1)]),
        PolicyConfig(statuses=[StatusRule(name="ci", max_failures=1), StatusRule(name="ci", max_failures=2)]),
        PolicyConfig(merge=MergeSection(commit_title_template="{nope}")),
        PolicyConfig(repos=[RepoOverride(repo="acme/api"), RepoOverride(repo="ACME/api")]),
        PolicyConfig(repos=[RepoOverride(repo="acme/*"), RepoOverride(repo="acme/*")]),
        PolicyConfig(repos=[RepoOverride(repo="acme/api", reviews=ReviewsSection(approvals=-3))]),
    ],
)
def test_invalid_policies_raise_config_error(cfg):
    with pytest.raises(ConfigError):
        resolve_policy(cfg, target("acme/api"))


@pytest.mark.parametrize("pattern", ["owner", "owner/", "/repo", "/", "*/repo", "owner/repo/extra", "owner/re*", "owner/[ab]"])
def test_malformed_patterns(pattern):
    with pytest.raises(ConfigError):
        parse_repo_pattern(pattern)


def test_pattern_parsing():
    assert parse_repo_pattern("Owner/Repo") == ("owner", "repo")
    assert parse_repo_pattern("owner/*") == ("owner", None)


def test_unmatched_malformed_override_still_rejected():
    cfg = PolicyConfig(repos=[RepoOverride(repo="elsewhere/**")])
    with pytest.raises(ConfigError):
        resolve_policy(cfg, target("acme/api"))


def test_load_policy_yaml(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        """
github:
  token: abc
workflows:
  circleci:
    token: circle
merge:
  default_method: squash
reviews:
  approvals: 1
repos:
  - repo: mfontanini/mergebro
    reviews:
      approvals: 2
    statuses:
      - name: some non flaky CI step
        max_failures: 1
  - repo: rust-lang/*
    reviews:
      approvals: 3
""",
        encoding="utf-8",
    )
    cfg = load_policy(str(path))
    assert cfg.github.token == "abc"
    assert cfg.workflows.circleci.token == "circle"
    policy = resolve_policy(cfg, target("mfontanini/mergebro"))
    assert policy.required_approvals == 2
    assert policy.per_check_flakiness == {"some non flaky CI step": 1}
    assert policy.merge_method_order == (MergeMethod.SQUASH, MergeMethod.MERGE, MergeMethod.REBASE)
    assert resolve_policy(cfg, target("rust-lang/rust")).required_approvals == 3


def test_load_policy_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_policy(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("merge: [unterminated", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_policy(str(bad))
    wrong = tmp_path / "wrong.yaml"
    wrong.write_text("reviews:\n  approvals: lots\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_policy(str(wrong))
    listy = tmp_path / "list.yaml"
    listy.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_policy(str(listy))


def test_empty_policy_file_uses_defaults(tmp_path):
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    policy = resolve_policy(load_policy(str(empty)), target("a/b"))
    assert policy.required_approvals == 1
