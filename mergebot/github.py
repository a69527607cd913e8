import time
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS
from .errors import ApiError, ConfigError, RateLimitError, TransientError
from .http import ApiClient, _json_message, _safe_url
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
    github_rate_limit_reset,
    throttles_total,
)
from .models import (
    BranchUpdateOutcome,
    CheckState,
    CheckStatus,
    MergeAttempt,
    MergeMethod,
    MergeOutcome,
    PullRequestInfo,
    PullRequestTarget,
    RetriggerOutcome,
)
from .providers import CIProvider, ProviderKind

logger = logging.getLogger(__name__)

# Installation tokens are refreshed when they are this close to expiring.
TOKEN_SAFETY_MARGIN_SECONDS = 120


def compute_approvals(reviews: List[Dict[str, Any]]) -> int:
    """Count users whose latest decisive review is an approval.

    Reviews are expected in chronological order, as the API returns them.
    Comments and pending reviews neither grant nor revoke an approval.
    """
    approved = set()
    for review in reviews:
        login = (review.get("user") or {}).get("login")
        state = (review.get("state") or "").upper()
        if not login:
            continue
        if state == "APPROVED":
            approved.add(login)
        elif state in ("CHANGES_REQUESTED", "DISMISSED"):
            approved.discard(login)
    return len(approved)


class GitHubClient(ApiClient):
    api_name = "github"

    # Installation tokens shared by every client in the process: id -> (token, expiry epoch)
    _tok_cache: Dict[int, Tuple[str, float]] = {}

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        installation_id: Optional[int] = None,
    ):
        super().__init__(base_url or SETTINGS.api_url_for_host("github.com"))
        self.token = token if token is not None else SETTINGS.github_token
        self.installation_id = installation_id if installation_id is not None else SETTINGS.app_installation_id
        self.app_id = SETTINGS.app_id
        self.private_key_pem = SETTINGS.app_private_key.encode("utf-8")

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key_pem, algorithm="RS256")

    def _installation_token(self) -> str:
        inst = int(self.installation_id or 0)
        cached = self._tok_cache.get(inst)
        if cached and time.time() < cached[1] - TOKEN_SAFETY_MARGIN_SECONDS:
            return cached[0]
        url = f"{self.base_url}/app/installations/{inst}/access_tokens"
        try:
            app_jwt = self._app_jwt()
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigError(f"cannot sign GitHub App JWT with APP_PRIVATE_KEY: {e}") from e
        headers = {
            "Authorization": f"Bearer {app_jwt}",
            "Accept": "application/vnd.github+json",
        }
        endpoint = "POST /app/installations/{id}/access_tokens"
        start = time.perf_counter()
        logger.debug("github.request: method=POST path=%s installation=%s phase=token_exchange", _safe_url(url), inst)
        resp = httpx.post(url, headers=headers, timeout=30)
        self._observe(endpoint, str(resp.status_code), time.perf_counter() - start)
        self._check_token_response(resp, inst)
        data = resp.json()
        token = data.get("token")
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        else:
            expiry = time.time() + 3600
        self._tok_cache[inst] = (token, expiry)
        return token

    def _check_token_response(self, resp: httpx.Response, inst: int) -> None:
        status = resp.status_code
        if status in (200, 201):
            return
        message = _json_message(resp) or f"HTTP {status}"
        if status == 429 or (status == 403 and "rate limit" in message.lower()):
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitError(
                f"installation token exchange rate limited: {message}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise TransientError(f"installation token exchange failed: {status} {message}")
        if status in (401, 403, 404):
            # Wrong App id or key, or the App is not installed where we think it is
            raise ConfigError(f"GitHub App cannot act as installation {inst}: {status} {message}")
        raise ApiError(f"installation token exchange failed: {status} {message}", status)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": self.user_agent,
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        elif self.app_id and self.installation_id:
            headers["Authorization"] = f"token {self._installation_token()}"
        return headers

    def _observe(self, endpoint: str, status: str, duration: float) -> None:
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=status).inc()

    def _is_rate_limited(self, resp: httpx.Response) -> bool:
        if resp.status_code == 429:
            return True
        if resp.status_code != 403:
            return False
        if resp.headers.get("X-RateLimit-Remaining") == "0":
            return True
        return "rate limit" in _json_message(resp).lower()

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        low_budget = False
        if remaining is not None:
            try:
                rem_i = int(remaining)
                github_rate_limit_remaining.set(rem_i)
                low_budget = rem_i <= SETTINGS.rate_limit_min_remaining
            except ValueError:
                pass
        if reset is not None:
            try:
                github_rate_limit_reset.set(int(reset))
            except ValueError:
                pass
        if not (self._is_rate_limited(resp) or low_budget):
            return
        if resp.status_code == 429:
            reason = "retry_after"
        elif resp.status_code == 403 and "secondary" in _json_message(resp).lower():
            reason = "secondary"
        else:
            reason = "primary"
        now = time.time()
        until = None
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                until = now + int(retry_after)
            except ValueError:
                until = None
        if until is None and reset is not None:
            try:
                until = float(reset)
            except ValueError:
                until = None
        if until is None:
            until = now + SETTINGS.rate_limit_cooldown_seconds
        # Add small jitter to avoid thundering herd
        until = until + min(SETTINGS.rate_limit_jitter_seconds, 15)
        self._throttle_until = max(self._throttle_until, until)
        throttles_total.labels(api=self.api_name, reason=reason).inc()
        logger.warning("GitHub rate limit backpressure (%s) for %ds", reason, int(until - now))

    # --- Code-host operations ---
    def get_pr(self, owner: str, repo: str, number: int) -> Dict[str, Any]:
        r = self.request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        if r.status_code != 200:
            raise ApiError(f"failed to fetch PR {owner}/{repo}#{number}: {r.status_code}", r.status_code)
        return r.json()

    def get_repo(self, owner: str, repo: str) -> Dict[str, Any]:
        r = self.request("GET", f"/repos/{owner}/{repo}")
        if r.status_code != 200:
            raise ApiError(f"failed to fetch repo {owner}/{repo}: {r.status_code}", r.status_code)
        return r.json()

    def list_reviews(self, owner: str, repo: str, number: int) -> List[Dict[str, Any]]:
        reviews: List[Dict[str, Any]] = []
        page = 1
        while True:
            params = {"per_page": 100, "page": page}
            r = self.request("GET", f"/repos/{owner}/{repo}/pulls/{number}/reviews", params=params)
            if r.status_code != 200:
                raise ApiError(f"failed to list reviews for {owner}/{repo}#{number}: {r.status_code}", r.status_code)
            batch = r.json()
            reviews.extend(batch)
            if len(batch) < 100:
                break
            page += 1
        return reviews

    def get_required_approvals(self, owner: str, repo: str, branch: str) -> Optional[int]:
        """Required approving review count from branch protection, or None when not visible."""
        r = self.request("GET", f"/repos/{owner}/{repo}/branches/{quote(branch, safe='')}/protection")
        if r.status_code in (403, 404):
            # Unprotected branch, or protection settings not readable with these credentials
            return None
        if r.status_code != 200:
            raise ApiError(f"failed to fetch branch protection for {owner}/{repo}@{branch}: {r.status_code}", r.status_code)
        reviews = r.json().get("required_pull_request_reviews") or {}
        count = reviews.get("required_approving_review_count")
        return int(count) if count is not None else None

    def get_pull_request(self, target: PullRequestTarget) -> PullRequestInfo:
        owner, repo, number = target.owner, target.repo, target.number
        pr = self.get_pr(owner, repo, number)
        repo_data = self.get_repo(owner, repo)
        allowed = set()
        if repo_data.get("allow_merge_commit", True):
            allowed.add(MergeMethod.MERGE)
        if repo_data.get("allow_squash_merge", True):
            allowed.add(MergeMethod.SQUASH)
        if repo_data.get("allow_rebase_merge", True):
            allowed.add(MergeMethod.REBASE)
        base_ref = (pr.get("base") or {}).get("ref")
        protection_min = self.get_required_approvals(owner, repo, base_ref) if base_ref else None
        info = PullRequestInfo(
            state=pr.get("state") or "open",
            merged=bool(pr.get("merged")),
            draft=bool(pr.get("draft")),
            mergeable_state=pr.get("mergeable_state") or "unknown",
            head_sha=(pr.get("head") or {}).get("sha") or "",
            head_ref=(pr.get("head") or {}).get("ref"),
            base_ref=base_ref,
            title=pr.get("title") or "",
            body=pr.get("body") or "",
            user=(pr.get("user") or {}).get("login"),
            current_approvals=compute_approvals(self.list_reviews(owner, repo, number)),
            branch_protection_min_approvals=protection_min,
            allowed_merge_methods=frozenset(allowed),
        )
        logger.debug(
            "Fetched %s: state=%s mergeable_state=%s head=%s approvals=%s protection_min=%s",
            target,
            info.state,
            info.mergeable_state,
            info.head_sha,
            info.current_approvals,
            info.branch_protection_min_approvals,
        )
        return info

    def request_branch_update(self, target: PullRequestTarget, head_sha: str) -> BranchUpdateOutcome:
        r = self.request(
            "PUT",
            f"/repos/{target.owner}/{target.repo}/pulls/{target.number}/update-branch",
            data={"expected_head_sha": head_sha},
        )
        if r.status_code in (200, 202):
            return BranchUpdateOutcome.OK
        message = _json_message(r)
        if r.status_code == 422 and "expected head sha" in message.lower():
            # The head moved under us; someone else is already updating it.
            logger.debug("update-branch for %s raced with a head change: %s", target, message)
            return BranchUpdateOutcome.OK
        if r.status_code in (409, 422):
            logger.debug("update-branch for %s rejected: %s %s", target, r.status_code, message)
            return BranchUpdateOutcome.CONFLICT
        raise ApiError(f"update-branch failed for {target}: {r.status_code} {message}", r.status_code)

    def attempt_merge(
        self,
        target: PullRequestTarget,
        method: MergeMethod,
        head_sha: Optional[str] = None,
        commit_title: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> MergeAttempt:
        data: Dict[str, Any] = {"merge_method": method.value}
        if head_sha:
            data["sha"] = head_sha
        if commit_title is not None:
            data["commit_title"] = commit_title
        if commit_message is not None:
            data["commit_message"] = commit_message
        r = self.request("PUT", f"/repos/{target.owner}/{target.repo}/pulls/{target.number}/merge", data=data)
        if r.status_code in (200, 201):
            return MergeAttempt(method=method, outcome=MergeOutcome.ACCEPTED, message=f"Merged {target} via {method.value}")
        message = _json_message(r) or r.text
        if r.status_code == 405 and "not allowed" in message.lower():
            outcome = MergeOutcome.REJECTED_METHOD_NOT_ALLOWED
        elif r.status_code in (405, 409, 422):
            outcome = MergeOutcome.REJECTED_OTHER
        else:
            raise ApiError(f"merge failed for {target}: {r.status_code} {message}", r.status_code)
        return MergeAttempt(method=method, outcome=outcome, message=f"{r.status_code} {message}")

    # --- CI operations ---
    def list_workflow_runs(self, owner: str, repo: str, head_sha: str) -> List[Dict[str, Any]]:
        params = {"head_sha": head_sha, "per_page": 100}
        r = self.request("GET", f"/repos/{owner}/{repo}/actions/runs", params=params)
        if r.status_code != 200:
            raise ApiError(f"failed to list workflow runs for {owner}/{repo}@{head_sha}: {r.status_code}", r.status_code)
        return r.json().get("workflow_runs", [])

    def rerun_workflow(self, owner: str, repo: str, run_id: int) -> bool:
        r = self.request("POST", f"/repos/{owner}/{repo}/actions/runs/{run_id}/rerun")
        if r.status_code in (201, 202, 204):
            return True
        logger.debug("Rerun of workflow run %s refused: %s %s", run_id, r.status_code, _json_message(r))
        return False

    def list_commit_statuses(self, owner: str, repo: str, sha: str) -> List[Dict[str, Any]]:
        params = {"per_page": 100}
        r = self.request("GET", f"/repos/{owner}/{repo}/commits/{sha}/statuses", params=params)
        if r.status_code != 200:
            raise ApiError(f"failed to list statuses for {owner}/{repo}@{sha}: {r.status_code}", r.status_code)
        return r.json()


_RUN_FAILURES = ("failure", "timed_out", "cancelled", "startup_failure")
_RUN_SUCCESSES = ("success", "neutral", "skipped")


def _run_state(run: Dict[str, Any]) -> CheckState:
    if run.get("status") != "completed":
        return CheckState.PENDING
    conclusion = run.get("conclusion")
    if conclusion in _RUN_FAILURES:
        return CheckState.FAILURE
    if conclusion in _RUN_SUCCESSES:
        return CheckState.SUCCESS
    # action_required, stale, or not yet reported
    return CheckState.PENDING


class GitHubActionsProvider(CIProvider):
    kind = ProviderKind.GITHUB_ACTIONS

    def __init__(self, gh: GitHubClient):
        self.gh = gh
        self._run_ids: Dict[str, int] = {}

    def list_checks(self, target: PullRequestTarget, head_sha: str) -> List[CheckStatus]:
        runs = self.gh.list_workflow_runs(target.owner, target.repo, head_sha)
        latest: Dict[Any, Dict[str, Any]] = {}
        # Runs come newest first; keep the latest run of each workflow
        for run in runs:
            if run.get("head_sha") and run.get("head_sha") != head_sha:
                continue
            latest.setdefault(run.get("workflow_id") or run.get("name"), run)
        checks: List[CheckStatus] = []
        for run in latest.values():
            name = run.get("name") or str(run.get("workflow_id"))
            self._run_ids[name] = int(run["id"])
            checks.append(
                CheckStatus(
                    name=name,
                    state=_run_state(run),
                    provider=self.kind.value,
                    url=run.get("html_url"),
                    run_id=f"{run['id']}/{run.get('run_attempt') or 1}",
                )
            )
        return checks

    def retrigger_check(self, target: PullRequestTarget, name: str) -> RetriggerOutcome:
        run_id = self._run_ids.get(name)
        if run_id is None:
            return RetriggerOutcome.UNSUPPORTED
        logger.info("Actions workflow '%s' failed, re-running run %s", name, run_id)
        ok = self.gh.rerun_workflow(target.owner, target.repo, run_id)
        return RetriggerOutcome.OK if ok else RetriggerOutcome.UNSUPPORTED
