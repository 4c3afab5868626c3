"""Configuration constants for the CPNU case-sync engine."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("CPNU_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
RUNS_DIR: Path = DATA_DIR / "runs"
EXPORTS_DIR: Path = DATA_DIR / "exports"
REPLAY_FIXTURES_DIR: Path = DATA_DIR / "replay_fixtures"
DB_PATH: Path = DATA_DIR / "cpnu_sync.db"

CPNU_BASE_URL: str = os.getenv(
    "CPNU_BASE_URL",
    "https://consultaprocesos.ramajudicial.gov.co/Procesos/NumeroRadicacion",
)
CPNU_HEADLESS: bool = os.getenv("CPNU_HEADLESS", "true").strip().lower() != "false"
# Optional Chromium binary; defaults to the one bundled with Playwright.
CPNU_CHROME_PATH: str = os.getenv("CPNU_CHROME_PATH", "").strip()

USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIEWPORT: dict[str, int] = {"width": 1920, "height": 1080}


def _parse_timeout_seconds(env_var: str, default: float, *, minimum: float = 1) -> float:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = float(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Hard limit for a whole portal session, raced against the session task.
SESSION_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_SESSION_TIMEOUT_SECONDS", 90)
# Orchestrator-side race per case (scrape + change detection + persistence).
CASE_TIMEOUT_SECONDS: float = _parse_timeout_seconds(
    "CPNU_CASE_TIMEOUT_SECONDS", SESSION_TIMEOUT_SECONDS + 15
)
NAV_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_NAV_TIMEOUT_SECONDS", 30)

# Step waits (seconds)
ELEMENT_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_ELEMENT_TIMEOUT_SECONDS", 3)
RESULTS_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_RESULTS_TIMEOUT_SECONDS", 20)
DETAIL_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_DETAIL_TIMEOUT_SECONDS", 15)
TAB_TIMEOUT_SECONDS: float = _parse_timeout_seconds("CPNU_TAB_TIMEOUT_SECONDS", 10)
ACTUACIONES_TIMEOUT_SECONDS: float = _parse_timeout_seconds(
    "CPNU_ACTUACIONES_TIMEOUT_SECONDS", 20
)
POLL_INTERVAL_SECONDS: float = float(os.getenv("CPNU_POLL_INTERVAL_SECONDS", "0.25"))
BROWSER_CLOSE_TIMEOUT_SECONDS: float = _parse_timeout_seconds(
    "CPNU_BROWSER_CLOSE_TIMEOUT_SECONDS", 10
)
BROWSER_STARTUP_TIMEOUT_SECONDS: float = _parse_timeout_seconds(
    "CPNU_BROWSER_STARTUP_TIMEOUT_SECONDS", 20
)

SCRAPE_MAX_ATTEMPTS: int = int(os.getenv("CPNU_SCRAPE_MAX_ATTEMPTS", "2"))
BACKOFF_CAP_SECONDS: float = float(os.getenv("CPNU_BACKOFF_CAP_SECONDS", "30"))

RESOURCE_TYPE: str = os.getenv("CPNU_RESOURCE_TYPE", "cpnuScrapes")
ENFORCE_QUOTA: bool = os.getenv("CPNU_ENFORCE_QUOTA", "0").strip().lower() not in {"0", "false"}

WEBHOOK_SHARED_SECRET: str = os.getenv("CPNU_WEBHOOK_SECRET", "").strip()

RECORD_REPLAY_FIXTURES: bool = os.getenv("CPNU_RECORD_REPLAY_FIXTURES", "0").strip().lower() not in {
    "0",
    "false",
}

HEALTH_PORTAL_TIMEOUT_SECONDS: float = _parse_timeout_seconds(
    "CPNU_HEALTH_PORTAL_TIMEOUT_SECONDS", 5
)
HEALTH_CHECK_PORTAL: bool = os.getenv("CPNU_HEALTH_CHECK_PORTAL", "1").strip().lower() not in {
    "0",
    "false",
}
MIN_FREE_MB: int = int(os.getenv("CPNU_MIN_FREE_MB", "100"))
EXPORTS_KEEP_MAX: int = int(os.getenv("EXPORTS_KEEP_MAX", "5"))

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
    "Accept-Language": "es-CO,es;q=0.9,en;q=0.8",
}


def browser_launch_args() -> list[str]:
    """Return Chromium flags used for every portal session."""

    return [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--disable-blink-features=AutomationControlled",
        f"--window-size={VIEWPORT['width']},{VIEWPORT['height']}",
    ]
