"""Runtime configuration loaded from environment variables."""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Tuple

from .resilience import CircuitBreakerConfig, RetryPolicy


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    return int(value) if value is not None else default


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    return float(value) if value is not None else default


def _env_optional_int(name: str) -> Optional[int]:
    value = _env_str(name)
    return int(value) if value is not None else None


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    value = _env_str(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class UploadPolicy:
    """Limits applied to uploaded slip images."""
    max_bytes: int = 5 * 1024 * 1024
    allowed_content_types: Tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")
    storage_timeout: float = 10.0  # seconds


@dataclass(frozen=True)
class VerificationPolicy:
    """Provider call bounds and the optional post-verification checks."""
    call_timeout: float = 15.0  # seconds
    receiver_account: Optional[str] = None
    max_slip_age_days: Optional[int] = None


@dataclass(frozen=True)
class MatchingPolicy:
    """Which outstanding payments a verified slip may settle.

    A payment qualifies when its expected amount is within ``amount_tolerance``
    minor units of the verified amount and its due date lies no more than
    ``lookback_days`` before or ``lookahead_days`` after the settlement.
    """
    amount_tolerance: int = 0
    lookback_days: int = 30
    lookahead_days: int = 7


@dataclass(frozen=True)
class NotificationPolicy:
    retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=30.0)
    )
    rate_per_second: float = 10.0
    send_timeout: float = 10.0  # seconds
    admin_recipients: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SweepPolicy:
    """Thresholds used by the daily and monthly reconciliation sweeps."""
    slip_stale_after: timedelta = timedelta(minutes=30)
    max_reverify_attempts: int = 3
    expiry_grace: timedelta = timedelta(days=7)
    mismatch_review: timedelta = timedelta(days=14)
    batch_size: int = 200
    concurrency: int = 4
    run_stale_after: timedelta = timedelta(hours=6)


@dataclass(frozen=True)
class Settings:
    """Top-level settings for the API, the pipeline and the sweeps."""
    api_key: Optional[str] = None
    cron_secret: Optional[str] = None
    slip_provider: str = "easyslip"
    easyslip_api_key: Optional[str] = None
    easyslip_base_url: str = "https://developer.easyslip.com/api/v1"
    line_channel_access_token: Optional[str] = None
    line_channel_secret: Optional[str] = None
    notification_channel: str = "line"
    default_currency: str = "THB"
    blob_dir: str = "./slips"
    upload_rate_limit: str = "30/minute"
    upload: UploadPolicy = field(default_factory=UploadPolicy)
    provider_retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    verification: VerificationPolicy = field(default_factory=VerificationPolicy)
    matching: MatchingPolicy = field(default_factory=MatchingPolicy)
    notification: NotificationPolicy = field(default_factory=NotificationPolicy)
    sweep: SweepPolicy = field(default_factory=SweepPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        upload_defaults = UploadPolicy()
        return cls(
            api_key=_env_str("API_KEY"),
            cron_secret=_env_str("CRON_SECRET"),
            slip_provider=_env_str("SLIP_PROVIDER", "easyslip").lower(),
            easyslip_api_key=_env_str("EASYSLIP_API_KEY"),
            easyslip_base_url=_env_str("EASYSLIP_BASE_URL", cls.easyslip_base_url),
            line_channel_access_token=_env_str("LINE_CHANNEL_ACCESS_TOKEN"),
            line_channel_secret=_env_str("LINE_CHANNEL_SECRET"),
            notification_channel=_env_str("NOTIFY_CHANNEL", "line").lower(),
            default_currency=_env_str("DEFAULT_CURRENCY", "THB").upper(),
            blob_dir=_env_str("BLOB_DIR", "./slips"),
            upload_rate_limit=_env_str("UPLOAD_RATE_LIMIT", "30/minute"),
            upload=UploadPolicy(
                max_bytes=_env_int("UPLOAD_MAX_BYTES", upload_defaults.max_bytes),
                allowed_content_types=_env_list(
                    "UPLOAD_ALLOWED_TYPES", upload_defaults.allowed_content_types
                ),
                storage_timeout=_env_float("STORAGE_TIMEOUT_SECONDS", 10.0),
            ),
            provider_retry=RetryPolicy(
                max_attempts=_env_int("PROVIDER_MAX_ATTEMPTS", 5),
                base_delay=_env_float("PROVIDER_BASE_DELAY", 0.5),
                multiplier=_env_float("PROVIDER_BACKOFF_MULTIPLIER", 2.0),
                max_delay=_env_float("PROVIDER_MAX_DELAY", 30.0),
                jitter=_env_float("PROVIDER_JITTER", 0.25),
            ),
            circuit=CircuitBreakerConfig(
                failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 5),
                failure_window=_env_float("CIRCUIT_FAILURE_WINDOW", 60.0),
                recovery_timeout=_env_float("CIRCUIT_RECOVERY_TIMEOUT", 30.0),
            ),
            verification=VerificationPolicy(
                call_timeout=_env_float("PROVIDER_TIMEOUT_SECONDS", 15.0),
                receiver_account=_env_str("RECEIVER_ACCOUNT_NO"),
                max_slip_age_days=_env_optional_int("MAX_SLIP_AGE_DAYS"),
            ),
            matching=MatchingPolicy(
                amount_tolerance=_env_int("MATCH_AMOUNT_TOLERANCE", 0),
                lookback_days=_env_int("MATCH_LOOKBACK_DAYS", 30),
                lookahead_days=_env_int("MATCH_LOOKAHEAD_DAYS", 7),
            ),
            notification=NotificationPolicy(
                retry=RetryPolicy(
                    max_attempts=_env_int("NOTIFY_MAX_ATTEMPTS", 4),
                    base_delay=_env_float("NOTIFY_BASE_DELAY", 1.0),
                    max_delay=_env_float("NOTIFY_MAX_DELAY", 30.0),
                ),
                rate_per_second=_env_float("NOTIFY_RATE_PER_SECOND", 10.0),
                admin_recipients=_env_list("LINE_ADMIN_IDS"),
            ),
            sweep=SweepPolicy(
                slip_stale_after=timedelta(minutes=_env_int("SLIP_STALE_MINUTES", 30)),
                max_reverify_attempts=_env_int("SWEEP_MAX_REVERIFY", 3),
                expiry_grace=timedelta(days=_env_int("EXPIRY_GRACE_DAYS", 7)),
                mismatch_review=timedelta(days=_env_int("MISMATCH_REVIEW_DAYS", 14)),
                batch_size=_env_int("SWEEP_BATCH_SIZE", 200),
                concurrency=_env_int("SWEEP_CONCURRENCY", 4),
                run_stale_after=timedelta(hours=_env_int("RUN_STALE_HOURS", 6)),
            ),
        )
