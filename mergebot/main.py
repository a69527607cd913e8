import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .circleci import CircleCIClient, CircleCIProvider
from .config import SETTINGS
from .errors import EXIT_CONFIG_ERROR, EXIT_MERGED, EXIT_NEEDS_ATTENTION, ConfigError
from .github import GitHubActionsProvider, GitHubClient
from .metrics import config_load_failures_total, write_metrics
from .models import PolicyConfig, PullRequestTarget
from .policy import load_policy
from .providers import CIProvider
from .worker import LoopSettings, Orchestrator

logger = logging.getLogger(__name__)


def build_providers(gh: GitHubClient, cfg: PolicyConfig) -> List[CIProvider]:
    providers: List[CIProvider] = [GitHubActionsProvider(gh)]
    token = SETTINGS.circleci_token or (cfg.workflows.circleci.token if cfg.workflows.circleci else None)
    if token:
        providers.append(CircleCIProvider(gh, CircleCIClient(token=token)))
    return providers


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mergebot",
        description="Keep a pull request current, babysit its CI and merge it once approved.",
    )
    parser.add_argument("pr", help="pull request URL (https://github.com/owner/repo/pull/N) or owner/repo#N")
    parser.add_argument("--policy", default=SETTINGS.policy_file or None, help="path to the YAML policy file")
    parser.add_argument("--log-level", default=SETTINGS.log_level, help="logging level (default: %(default)s)")
    parser.add_argument(
        "--timeout-minutes",
        type=float,
        default=None,
        help="overall deadline in minutes, 0 for none (default: MAX_WAIT_MINUTES)",
    )
    parser.add_argument("--poll-interval", type=float, default=None, help="base poll interval in seconds")
    parser.add_argument("--metrics-file", default=None, help="write Prometheus metrics here when the run ends")
    parser.add_argument("--dry-run", action="store_true", help="evaluate every gate but do not merge")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def install_signal_handlers(cancel: threading.Event) -> None:
    def _cancel(signum, frame):
        logger.warning("Received signal %s; cancelling", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        host, target = PullRequestTarget.parse(args.pr)
        cfg = load_policy(args.policy)
    except (ValueError, ConfigError) as e:
        config_load_failures_total.inc()
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR

    token = SETTINGS.github_token or cfg.github.token or ""
    if not token and not (SETTINGS.app_id and SETTINGS.app_private_key and SETTINGS.app_installation_id):
        logger.error("Configuration error: set GITHUB_TOKEN or APP_ID/APP_PRIVATE_KEY/APP_INSTALLATION_ID")
        return EXIT_CONFIG_ERROR

    gh = GitHubClient(base_url=SETTINGS.api_url_for_host(host), token=token)
    cancel = threading.Event()
    install_signal_handlers(cancel)
    timeout = None
    if args.timeout_minutes is not None:
        timeout = args.timeout_minutes * 60 if args.timeout_minutes > 0 else 0
    loop = LoopSettings.from_settings(
        poll_interval_seconds=args.poll_interval,
        timeout_seconds=timeout,
        dry_run=args.dry_run,
    )
    if loop.timeout_seconds == 0:
        loop.timeout_seconds = None

    logger.info("Orchestrating %s (version=%s)", target, SETTINGS.service_version)
    state = Orchestrator(gh, build_providers(gh, cfg), cfg, target, loop=loop, cancel=cancel).run()

    if args.metrics_file:
        try:
            write_metrics(args.metrics_file)
        except OSError as e:
            logger.warning("Failed to write metrics to %s: %s", args.metrics_file, e)

    report = state.report()
    if state.merged:
        method = state.merged_method.value if state.merged_method else "dry-run"
        print(f"{target}: merged ({method})")
        return EXIT_MERGED
    print(f"{target}: aborted: {json.dumps(report, indent=2, sort_keys=True)}", file=sys.stderr)
    return state.error.exit_code if state.error is not None else EXIT_NEEDS_ATTENTION


if __name__ == "__main__":
    sys.exit(main())
