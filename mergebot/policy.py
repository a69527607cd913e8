import logging
import os
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import (
    ChecksSection,
    EffectivePolicy,
    MergeMethod,
    MergeSection,
    PolicyConfig,
    PullRequestTarget,
    RepoOverride,
    ReviewsSection,
    StatusRule,
)

logger = logging.getLogger(__name__)

DEFAULT_MERGE = MergeSection(
    default_method=MergeMethod.MERGE,
    methods=[MergeMethod.SQUASH, MergeMethod.MERGE, MergeMethod.REBASE],
    commit_title_template="{title} (#{number})",
    commit_message_template="{body}",
)
DEFAULT_REVIEWS = ReviewsSection(approvals=1)
DEFAULT_CHECKS = ChecksSection(allow_merge_when_no_checks=True, default_max_failures=None)

_GLOB_CHARS = set("*?[]{}")


def load_policy(path: Optional[str]) -> PolicyConfig:
    """Load the policy file; no path means built-in defaults only."""
    if not path:
        return PolicyConfig()
    path = os.path.expanduser(path)
    if not os.path.isfile(path):
        raise ConfigError(f"policy file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"policy file {path} must contain a mapping at the top level")
    try:
        cfg = PolicyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid policy in {path}: {e}") from e
    logger.debug("Loaded policy from %s: overrides=%s", path, [o.repo for o in cfg.repos])
    return cfg


def parse_repo_pattern(pattern: str) -> Tuple[str, Optional[str]]:
    """Split an override pattern into (owner, repo); repo is None for ``owner/*``."""
    parts = pattern.strip().split("/")
    if len(parts) != 2:
        raise ConfigError(f"malformed repo pattern {pattern!r}: expected 'owner/repo' or 'owner/*'")
    owner, repo = parts
    if not owner or not repo:
        raise ConfigError(f"malformed repo pattern {pattern!r}: empty owner or repo name")
    if _GLOB_CHARS & set(owner):
        raise ConfigError(f"malformed repo pattern {pattern!r}: owner cannot be a wildcard")
    if repo == "*":
        return owner.lower(), None
    if _GLOB_CHARS & set(repo):
        raise ConfigError(f"unsupported repo pattern {pattern!r}: only a trailing '/*' is allowed")
    return owner.lower(), repo.lower()


def find_override(overrides: List[RepoOverride], target: PullRequestTarget) -> Optional[RepoOverride]:
    """Pick the single best override for a repo: exact match first, then owner wildcard."""
    seen: Dict[Tuple[str, Optional[str]], str] = {}
    exact: Optional[RepoOverride] = None
    wildcard: Optional[RepoOverride] = None
    owner, repo = target.owner.lower(), target.repo.lower()
    for override in overrides:
        key = parse_repo_pattern(override.repo)
        if key in seen:
            raise ConfigError(f"duplicate repo pattern {override.repo!r} (already given as {seen[key]!r})")
        seen[key] = override.repo
        if key[0] != owner:
            continue
        if key[1] == repo and exact is None:
            exact = override
        elif key[1] is None and wildcard is None:
            wildcard = override
    return exact or wildcard


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def _merge_method_order(
    global_merge: MergeSection, override_merge: Optional[MergeSection]
) -> Tuple[MergeMethod, ...]:
    om = override_merge or MergeSection()
    methods = _first(om.methods, global_merge.methods, DEFAULT_MERGE.methods)
    default = _first(om.default_method, global_merge.default_method, DEFAULT_MERGE.default_method)
    if not methods:
        raise ConfigError("merge methods cannot be empty")
    if len(set(methods)) != len(methods):
        raise ConfigError(f"duplicate merge methods in {[m.value for m in methods]}")
    if default is not None and default not in methods:
        if om.methods is not None and om.default_method is None:
            # The override narrowed the allowed set without restating a default.
            logger.debug("Inherited default merge method %s not in override methods; ignoring it", default.value)
            default = None
        else:
            raise ConfigError(
                f"default merge method {default.value!r} is not one of {[m.value for m in methods]}"
            )
    if default is None:
        return tuple(methods)
    return (default,) + tuple(m for m in methods if m != default)


def _flakiness(rules: List[StatusRule]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for rule in rules:
        if rule.max_failures < 0:
            raise ConfigError(f"max_failures for status {rule.name!r} cannot be negative")
        if rule.name in out:
            raise ConfigError(f"status {rule.name!r} configured more than once")
        out[rule.name] = rule.max_failures
    return out


_TEMPLATE_FIELDS = {"number": 1, "title": "", "body": "", "head": "", "base": "", "user": ""}


def _template(value: str, what: str) -> str:
    try:
        value.format(**_TEMPLATE_FIELDS)
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigError(f"invalid {what} {value!r}: {e}") from e
    return value


def resolve_policy(cfg: PolicyConfig, target: PullRequestTarget) -> EffectivePolicy:
    """Overlay built-in defaults, the global policy and the best repo override."""
    override = find_override(cfg.repos, target)
    om = override.merge if override else MergeSection()
    orv = override.reviews if override else ReviewsSection()
    oc = override.checks if override else ChecksSection()

    approvals = _first(orv.approvals, cfg.reviews.approvals, DEFAULT_REVIEWS.approvals)
    if approvals < 0:
        raise ConfigError(f"required approvals cannot be negative (got {approvals})")
    default_max = _first(oc.default_max_failures, cfg.checks.default_max_failures)
    if default_max is not None and default_max < 0:
        raise ConfigError(f"default_max_failures cannot be negative (got {default_max})")
    statuses = override.statuses if override and override.statuses is not None else cfg.statuses

    policy = EffectivePolicy(
        required_approvals=approvals,
        merge_method_order=_merge_method_order(cfg.merge, om),
        per_check_flakiness=_flakiness(statuses),
        default_max_failures=default_max,
        allow_merge_when_no_checks=_first(
            oc.allow_merge_when_no_checks,
            cfg.checks.allow_merge_when_no_checks,
            DEFAULT_CHECKS.allow_merge_when_no_checks,
        ),
        commit_title_template=_template(
            _first(om.commit_title_template, cfg.merge.commit_title_template, DEFAULT_MERGE.commit_title_template),
            "commit title template",
        ),
        commit_message_template=_template(
            _first(om.commit_message_template, cfg.merge.commit_message_template, DEFAULT_MERGE.commit_message_template),
            "commit message template",
        ),
        matched_pattern=override.repo if override else None,
    )
    logger.info(
        "Resolved policy for %s: override=%s approvals=%s methods=%s flaky=%s",
        target,
        policy.matched_pattern,
        policy.required_approvals,
        [m.value for m in policy.merge_method_order],
        policy.per_check_flakiness,
    )
    return policy
