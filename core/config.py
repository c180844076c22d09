"""
Runtime settings, read once from the environment (and `.env` for local runs).
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv


class ConfigError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


_REQUIRED = ("LOGIN_USERNAME", "LOGIN_PASSWORD", "EMAIL_ADDRESS", "EMAIL_PASSWORD")
_SECRETS = ("login_password", "email_password")


@dataclass(frozen=True)
class Settings:
    login_username: str
    login_password: str
    email_address: str
    email_password: str
    notify_email: str
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    job_sender: str = "job@studenten-umzugshilfe.com"
    base_url: str = "https://studenten-umzugshilfe.com"
    auth_state_path: str = "auth.json"
    headless: bool = True
    browser_timeout_ms: int = 25000
    poll_interval_seconds: int = 15
    max_email_retries: int = 3
    keep_alive_minutes: int = 4
    port: int = 3000
    log_level: str = "INFO"

    @property
    def login_url(self) -> str:
        return f"{self.base_url}/login"

    @property
    def jobs_url(self) -> str:
        return f"{self.base_url}/intern/meine-jobs"

    @property
    def profile_url(self) -> str:
        return f"{self.base_url}/intern/meine-daten"

    @property
    def sender_domain(self) -> str:
        return self.job_sender.rsplit("@", 1)[-1]

    def redacted(self) -> Dict[str, object]:
        """Settings as a dict that is safe to log."""
        data = asdict(self)
        for key in _SECRETS:
            data[key] = "***" if data.get(key) else ""
        return data


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def settings_from_mapping(env: Mapping[str, str]) -> Settings:
    """Build validated settings from an environment-like mapping."""
    missing = [name for name in _REQUIRED if not (env.get(name) or "").strip()]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    email_address = env["EMAIL_ADDRESS"].strip()
    base_url = (env.get("BASE_URL") or "https://studenten-umzugshilfe.com").strip().rstrip("/")
    job_sender = (env.get("JOB_SENDER") or "job@studenten-umzugshilfe.com").strip()
    if "@" not in job_sender:
        raise ConfigError(f"JOB_SENDER must be an email address, got {job_sender!r}")

    return Settings(
        login_username=env["LOGIN_USERNAME"].strip(),
        login_password=env["LOGIN_PASSWORD"],
        email_address=email_address,
        email_password=env["EMAIL_PASSWORD"],
        notify_email=(env.get("NOTIFY_EMAIL") or email_address).strip(),
        smtp_host=(env.get("SMTP_HOST") or "smtp.gmail.com").strip(),
        smtp_port=_int(env, "SMTP_PORT", 587),
        imap_host=(env.get("IMAP_HOST") or "imap.gmail.com").strip(),
        imap_port=_int(env, "IMAP_PORT", 993),
        job_sender=job_sender,
        base_url=base_url,
        auth_state_path=(env.get("AUTH_STATE_PATH") or "auth.json").strip(),
        headless=_bool(env, "PLAYWRIGHT_HEADLESS", True),
        browser_timeout_ms=_int(env, "BROWSER_TIMEOUT_MS", 25000),
        poll_interval_seconds=max(1, _int(env, "POLL_INTERVAL_SECONDS", 15)),
        max_email_retries=max(1, _int(env, "MAX_EMAIL_RETRIES", 3)),
        keep_alive_minutes=_int(env, "KEEP_ALIVE_MINUTES", 4),
        port=_int(env, "PORT", 3000),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from the process environment.

    `.env` is loaded with override=True so edits take effect after a restart,
    matching how the API and worker are launched locally.
    """
    if env is None:
        load_dotenv(override=True)
        env = os.environ
    return settings_from_mapping(env)
