import time
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import SETTINGS
from .errors import ApiError
from .github import GitHubClient
from .http import ApiClient, _json_message
from .metrics import circleci_api_latency_seconds, circleci_api_requests_total, throttles_total
from .models import CheckState, CheckStatus, PullRequestTarget, RetriggerOutcome
from .providers import CIProvider, ProviderKind

logger = logging.getLogger(__name__)

_STATUS_STATES = {
    "pending": CheckState.PENDING,
    "success": CheckState.SUCCESS,
    "failure": CheckState.FAILURE,
    "error": CheckState.FAILURE,
}

_VCS_SLUGS = {"gh": "gh", "github": "gh", "bb": "bb", "bitbucket": "bb"}


class CircleCIClient(ApiClient):
    api_name = "circleci"

    def __init__(self, token: Optional[str] = None, base_url: Optional[str] = None):
        super().__init__(base_url or SETTINGS.circleci_api_url)
        self.token = token if token is not None else SETTINGS.circleci_token

    def _headers(self) -> Dict[str, str]:
        return {
            "Circle-Token": self.token,
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    def _observe(self, endpoint: str, status: str, duration: float) -> None:
        circleci_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        circleci_api_requests_total.labels(endpoint=endpoint, status=status).inc()

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        if resp.status_code != 429:
            return
        delay = float(SETTINGS.rate_limit_cooldown_seconds)
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                pass
        self._throttle_until = max(self._throttle_until, time.time() + delay)
        throttles_total.labels(api=self.api_name, reason="retry_after").inc()

    def job_info(self, project_slug: str, job_number: int) -> Dict[str, Any]:
        r = self.request("GET", f"/project/{project_slug}/job/{job_number}")
        if r.status_code != 200:
            raise ApiError(f"failed to fetch CircleCI job {project_slug}/{job_number}: {r.status_code}", r.status_code)
        return r.json()

    def rerun_workflow(self, workflow_id: str) -> bool:
        r = self.request("POST", f"/workflow/{workflow_id}/rerun", data={"from_failed": True})
        if r.status_code in (200, 201, 202):
            return True
        logger.debug("CircleCI refused rerun of workflow %s: %s %s", workflow_id, r.status_code, _json_message(r))
        return False


def parse_job_url(url: str) -> Optional[Tuple[str, Optional[int], Optional[str]]]:
    """Extract (project slug, job number, workflow id) from a CircleCI status URL.

    Handles legacy ``https://circleci.com/gh/owner/repo/123`` links and the
    ``https://app.circleci.com/pipelines/github/owner/repo/7/workflows/<id>/jobs/123``
    form. Returns None for URLs that do not point at CircleCI.
    """
    try:
        u = httpx.URL(url)
    except Exception:
        return None
    host = u.host or ""
    if host != "circleci.com" and not host.endswith(".circleci.com"):
        return None
    segments = [s for s in u.path.split("/") if s]
    if len(segments) == 4 and segments[0] in _VCS_SLUGS and segments[3].isdigit():
        vcs, owner, repo, job = segments
        return f"{_VCS_SLUGS[vcs]}/{owner}/{repo}", int(job), None
    if len(segments) >= 5 and segments[0] == "pipelines" and segments[1] in _VCS_SLUGS:
        slug = f"{_VCS_SLUGS[segments[1]]}/{segments[2]}/{segments[3]}"
        workflow_id = None
        job = None
        if "workflows" in segments:
            i = segments.index("workflows")
            if i + 1 < len(segments):
                workflow_id = segments[i + 1]
        if "jobs" in segments:
            i = segments.index("jobs")
            if i + 1 < len(segments) and segments[i + 1].isdigit():
                job = int(segments[i + 1])
        if workflow_id or job is not None:
            return slug, job, workflow_id
    return None


class CircleCIProvider(CIProvider):
    """CircleCI jobs as reported through GitHub commit statuses."""

    kind = ProviderKind.CIRCLECI

    def __init__(self, gh: GitHubClient, circle: CircleCIClient):
        self.gh = gh
        self.circle = circle
        self._urls: Dict[str, str] = {}

    def list_checks(self, target: PullRequestTarget, head_sha: str) -> List[CheckStatus]:
        statuses = self.gh.list_commit_statuses(target.owner, target.repo, head_sha)
        checks: Dict[str, CheckStatus] = {}
        # Statuses come newest first; keep the latest per context
        for status in statuses:
            name = status.get("context")
            url = status.get("target_url") or ""
            if not name or name in checks or parse_job_url(url) is None:
                continue
            state = _STATUS_STATES.get(status.get("state") or "", CheckState.PENDING)
            self._urls[name] = url
            run_id = status.get("id")
            checks[name] = CheckStatus(
                name=name,
                state=state,
                provider=self.kind.value,
                url=url,
                run_id=str(run_id) if run_id is not None else None,
            )
        return list(checks.values())

    def retrigger_check(self, target: PullRequestTarget, name: str) -> RetriggerOutcome:
        parsed = parse_job_url(self._urls.get(name, ""))
        if parsed is None:
            return RetriggerOutcome.UNSUPPORTED
        slug, job_number, workflow_id = parsed
        if workflow_id is None:
            job = self.circle.job_info(slug, job_number)
            workflow_id = (job.get("latest_workflow") or {}).get("id")
        if not workflow_id:
            return RetriggerOutcome.UNSUPPORTED
        logger.info("CircleCI job '%s' failed, re-running workflow %s", name, workflow_id)
        ok = self.circle.rerun_workflow(workflow_id)
        return RetriggerOutcome.OK if ok else RetriggerOutcome.UNSUPPORTED
