from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Storage backend: "memory" for local runs and tests, "postgres" in deployments
    STORAGE_BACKEND: str = "memory"
    DATABASE_URL: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # DNS ASSESSMENT
    # =================================================================
    DNS_QUERY_TIMEOUT_SECONDS: float = 5.0
    DNS_CACHE_TTL_SECONDS: float = 300.0  # 5 minutes
    ENABLED_BLACKLISTS: list[str] = ["spamhaus", "barracuda", "sorbs", "spamcop"]
    DKIM_SELECTORS: list[str] = ["default", "google", "selector1", "selector2", "s1", "s2"]

    # =================================================================
    # BOUNCE-RATE CLASSIFICATION (assessment)
    # =================================================================
    PAUSE_BOUNCE_RATE: float = 0.10
    WARNING_BOUNCE_RATE: float = 0.05
    CAMPAIGN_MIN_SENDS_FOR_ASSESSMENT: int = 20

    # =================================================================
    # GRADUATION CRITERIA
    # =================================================================
    FIRST_OFFENSE_COOLDOWN_HOURS: float = 24.0
    REPEAT_COOLDOWN_HOURS: float = 72.0
    THIRD_PLUS_COOLDOWN_HOURS: float = 168.0  # 7 days
    FIRST_OFFENSE_CLEAN_SENDS: int = 15
    REPEAT_CLEAN_SENDS: int = 25
    WARM_RECOVERY_MIN_SENDS: int = 50
    WARM_RECOVERY_MIN_DAYS: float = 3.0
    WARM_RECOVERY_MAX_BOUNCE_RATE: float = 0.02
    REHAB_SEND_MULTIPLIER: float = 2.0
    REHAB_TIME_MULTIPLIER: float = 1.5

    # Resilience score adjustments
    RESILIENCE_GRADUATION_BONUS: int = 10
    RESILIENCE_RELAPSE_PENALTY: int = 25
    RESILIENCE_PAUSE_PENALTY: int = 15
    RESILIENCE_REHAB_START: int = 40
    RESILIENCE_DEFAULT_START: int = 50

    # Per-phase daily volume bases (scaled by resilience)
    RESTRICTED_SEND_BASE_VOLUME: int = 5
    WARM_RECOVERY_BASE_VOLUME: int = 25

    # =================================================================
    # AGGREGATE THROTTLE + TRANSITION GATE
    # =================================================================
    DOMAIN_RECOVERY_CAP: int = 30
    TENANT_RECOVERY_CAP: int = 100
    GATE_AUTO_ALLOW_SCORE: int = 60
    GATE_HARD_FLOOR: int = 25

    # =================================================================
    # OPERATOR OVERRIDES
    # =================================================================
    OVERRIDE_ENTITY_WINDOW_HOURS: float = 48.0
    OVERRIDE_ENTITY_MAX: int = 3
    OVERRIDE_TENANT_WINDOW_DAYS: float = 7.0
    OVERRIDE_TENANT_MAX: int = 5
    OVERRIDE_LOW_RESILIENCE_THRESHOLD: int = 20
    OVERRIDE_MIN_JUSTIFICATION_LENGTH: int = 10
    OVERRIDE_QUARANTINE_HOLD_HOURS: float = 6.0

    # =================================================================
    # MONITORING (bounce/send events)
    # =================================================================
    MAILBOX_WARNING_BOUNCES: int = 3
    MAILBOX_WARNING_WINDOW: int = 60
    MAILBOX_PAUSE_BOUNCES: int = 5
    ROLLING_WINDOW_SIZE: int = 100
    DOMAIN_WARNING_RATIO: float = 0.3
    DOMAIN_PAUSE_RATIO: float = 0.5
    DOMAIN_MINIMUM_MAILBOXES: int = 3

    # =================================================================
    # PERIODIC DRIVER
    # =================================================================
    GRADUATION_INTERVAL_MINUTES: float = 15.0
    ASSESSMENT_INTERVAL_HOURS: float = 24.0
    MAX_CONCURRENT_GRADUATION_CHECKS: int = 10

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config

    def uses_postgres(self) -> bool:
        return self.STORAGE_BACKEND.strip().lower() == "postgres"


settings = Settings()
