from typing import List, Optional

EXIT_MERGED = 0
EXIT_NEEDS_ATTENTION = 1
EXIT_CONFIG_ERROR = 2
EXIT_WILL_RETRY = 3
EXIT_CANCELLED = 130


class MergeBotError(Exception):
    """Base class for every error the orchestrator reports."""

    exit_code = EXIT_NEEDS_ATTENTION
    reason = "error"


class ConfigError(MergeBotError):
    exit_code = EXIT_CONFIG_ERROR
    reason = "config_error"


class ApiError(MergeBotError):
    """Unexpected HTTP response from a collaborator.

    The orchestrator retries it within the same bounded budget as transient
    errors before giving up.
    """

    reason = "api_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(MergeBotError):
    """Network failure, 5xx or rate limit; retried with backoff up to a bound."""

    exit_code = EXIT_WILL_RETRY
    reason = "transient"


class RateLimitError(TransientError):
    reason = "rate_limit"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MergeRejectedRace(MergeBotError):
    """The host refused a merge for a reason other than the method; the target likely moved."""

    reason = "merge_rejected_race"


class AbortError(MergeBotError):
    """Terminal failure; the run stops and reports this reason."""

    reason = "aborted"


class CheckHardFailure(AbortError):
    reason = "check_hard_failure"

    def __init__(self, name: str, count: int):
        super().__init__(f"check '{name}' failed {count} time(s), exceeding its flakiness allowance")
        self.name = name
        self.count = count


class MergeConflict(AbortError):
    reason = "merge_conflict"


class PullRequestNotOpen(AbortError):
    reason = "pull_request_not_open"


class InsufficientApprovalsTimeout(AbortError):
    reason = "insufficient_approvals_timeout"

    def __init__(self, current: int, required: int):
        super().__init__(f"deadline reached with {current} of {required} required approval(s)")
        self.current = current
        self.required = required


class NoAllowedMergeMethod(AbortError):
    reason = "no_allowed_merge_method"

    def __init__(self, tried: List[str]):
        super().__init__(f"no merge method allowed by the host (tried: {', '.join(tried)})")
        self.tried = tried


class Timeout(AbortError):
    exit_code = EXIT_WILL_RETRY
    reason = "timeout"


class TransientFailureExhausted(AbortError):
    exit_code = EXIT_WILL_RETRY
    reason = "transient_failure_exhausted"

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"giving up after {attempts} transient failure(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class Cancelled(AbortError):
    exit_code = EXIT_CANCELLED
    reason = "cancelled"
