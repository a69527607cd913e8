import os
from typing import Optional


class Settings:
    # GitHub credentials: a plain token, or GitHub App config
    github_token: str
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    app_installation_id: Optional[int]

    # CircleCI
    circleci_token: str
    circleci_api_url: str

    # General
    github_api_url: str
    service_version: str
    log_level: str
    policy_file: str

    # HTTP retry config
    http_max_attempts: int
    backoff_base_seconds: float
    backoff_factor: float
    max_backoff_seconds: int

    # Rate limit/backpressure config
    rate_limit_min_remaining: int
    rate_limit_cooldown_seconds: int
    rate_limit_jitter_seconds: int

    # Orchestration loop
    poll_interval_seconds: float
    max_poll_interval_seconds: float
    max_transient_retries: int
    max_wait_minutes: float

    def __init__(self) -> None:
        self.github_token = os.getenv("GITHUB_TOKEN", "").strip()
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY is expected to be a filesystem path to the PEM file.
        # If a PEM string is provided directly, it will be used as-is.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        installation = os.getenv("APP_INSTALLATION_ID", "").strip()
        self.app_installation_id = int(installation) if installation else None

        self.circleci_token = os.getenv("CIRCLECI_TOKEN", "").strip()
        self.circleci_api_url = os.getenv("CIRCLECI_API_URL", "https://circleci.com/api/v2").rstrip("/")

        self.github_api_url = os.getenv("GITHUB_API_URL", "").strip().rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.policy_file = os.getenv("POLICY_FILE", "").strip()

        self.http_max_attempts = int(os.getenv("HTTP_MAX_ATTEMPTS", "3"))
        self.backoff_base_seconds = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2"))
        self.max_backoff_seconds = int(os.getenv("MAX_BACKOFF_SECONDS", "120"))

        self.rate_limit_min_remaining = int(os.getenv("RATE_LIMIT_MIN_REMAINING", "50"))
        self.rate_limit_cooldown_seconds = int(os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "60"))
        self.rate_limit_jitter_seconds = int(os.getenv("RATE_LIMIT_JITTER_SECONDS", "15"))

        self.poll_interval_seconds = float(os.getenv("POLL_INTERVAL_SECONDS", "10"))
        self.max_poll_interval_seconds = float(os.getenv("MAX_POLL_INTERVAL_SECONDS", "120"))
        self.max_transient_retries = int(os.getenv("MAX_TRANSIENT_RETRIES", "5"))
        self.max_wait_minutes = float(os.getenv("MAX_WAIT_MINUTES", "60"))

    def api_url_for_host(self, host: str) -> str:
        """Return the REST API base for a code host, honoring an explicit GITHUB_API_URL."""
        if self.github_api_url:
            return self.github_api_url
        if host in ("", "github.com", "www.github.com"):
            return "https://api.github.com"
        return f"https://{host}/api/v3"


SETTINGS = Settings()
