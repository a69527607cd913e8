"""CI provider capability interface.

The set of providers is closed: GitHub Actions and CircleCI. Supporting a new
CI system means adding a ``ProviderKind`` member and a ``CIProvider`` subclass.
"""
import abc
from enum import Enum
from typing import List

from .models import CheckStatus, PullRequestTarget, RetriggerOutcome


class ProviderKind(str, Enum):
    GITHUB_ACTIONS = "github_actions"
    CIRCLECI = "circleci"


class CIProvider(abc.ABC):
    kind: ProviderKind

    @abc.abstractmethod
    def list_checks(self, target: PullRequestTarget, head_sha: str) -> List[CheckStatus]:
        """Return the latest state of every check this provider runs for the head commit."""

    @abc.abstractmethod
    def retrigger_check(self, target: PullRequestTarget, name: str) -> RetriggerOutcome:
        """Request a re-run of a check previously returned by ``list_checks``."""
