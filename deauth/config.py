from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Backing stores
    DATABASE_URL: str = "postgresql://localhost:5432/deauth"
    REDIS_URL: str = "redis://localhost:6379/0"

    # API authentication
    JWT_SECRET: str | None = None
    JWT_AUDIENCE: str = "authenticated"
    ADMIN_ROLES: list[str] = ["admin"]

    # Identity used for scheduled runs
    SYSTEM_USER: str = "System"

    # Protected accounts
    ADMIN_USERNAMES: list[str] = ["admin"]
    GUEST_USERNAMES: list[str] = ["guest"]

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # RETRYING TRANSACTION POLICY
    # =================================================================
    TXN_MAX_RETRIES: int = 20
    TXN_MIN_RETRY_WAIT_MS: int = 100
    TXN_MAX_RETRY_WAIT_MS: int = 2000
    TXN_RETRY_WAIT_INCREMENT_MS: int = 100

    # =================================================================
    # DEAUTHORIZATION JOB
    # Values stay raw here; resolve_job_configuration() validates them.
    # =================================================================
    DEAUTH_JOB_INTERVAL_MINUTES: int = 1440
    DEAUTH_LOCK_ID: str = "deauth:DeauthorizeInactiveUsersJob"
    DEAUTH_LOCK_TTL_SECONDS: int = 300
    DEAUTH_LOOK_BACK_MODE: str | None = None
    DEAUTH_LOOK_BACK_AMOUNT: str | None = None
    DEAUTH_WORKER_THREADS: str | None = None
    DEAUTH_BATCH_SIZE: str | None = None
    DEAUTH_LOGGING_INTERVAL: str | None = None
    DEAUTH_DRY_RUN: str | None = None
    DEAUTH_AUDIT_APPLICATION_NAME: str = "alfresco-access"
    DEAUTH_USER_AUDIT_PATH: str = "/alfresco-access/transaction/user"
    DEAUTH_DATE_AUDIT_PATH: str | None = None
    DEAUTH_DATE_FROM_AUDIT_PATH: str | None = None
    DEAUTH_DATE_TO_AUDIT_PATH: str | None = None

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
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config

    def get_transaction_retry_config(self) -> dict:
        """Retry policy handed to the RetryingTransactionExecutor."""
        return {
            "max_retries": self.TXN_MAX_RETRIES,
            "min_retry_wait_ms": self.TXN_MIN_RETRY_WAIT_MS,
            "max_retry_wait_ms": self.TXN_MAX_RETRY_WAIT_MS,
            "retry_wait_increment_ms": self.TXN_RETRY_WAIT_INCREMENT_MS,
        }

    def get_deauth_job_parameters(self) -> dict[str, Any]:
        """
        Named job parameters for the scheduled deauthorization run.

        Keys match the parameter names accepted by resolve_job_configuration;
        unset values are left out so the resolver applies its defaults.
        """
        params = {
            "lookBackMode": self.DEAUTH_LOOK_BACK_MODE,
            "lookBackAmount": self.DEAUTH_LOOK_BACK_AMOUNT,
            "workerThreads": self.DEAUTH_WORKER_THREADS,
            "batchSize": self.DEAUTH_BATCH_SIZE,
            "loggingInterval": self.DEAUTH_LOGGING_INTERVAL,
            "dryRun": self.DEAUTH_DRY_RUN,
            "auditApplicationName": self.DEAUTH_AUDIT_APPLICATION_NAME,
            "userAuditPath": self.DEAUTH_USER_AUDIT_PATH,
            "dateAuditPath": self.DEAUTH_DATE_AUDIT_PATH,
            "dateFromAuditPath": self.DEAUTH_DATE_FROM_AUDIT_PATH,
            "dateToAuditPath": self.DEAUTH_DATE_TO_AUDIT_PATH,
            "lockId": self.DEAUTH_LOCK_ID,
        }
        return {key: value for key, value in params.items() if value is not None}


settings = Settings()
