"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class StoreBackend(str, Enum):
    redis = "redis"
    memory = "memory"


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Monitoring
    SENTRY_DSN: str = ""

    # Store
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_BACKEND: StoreBackend = StoreBackend.redis
    STORE_FALLBACK_TO_MEMORY: bool = True
    STORE_KEY_PREFIX: str = "tasksync:"

    # Cron-triggered endpoints
    CRON_SECRET: str = ""

    # Business Central
    BC_TENANT_ID: str = ""
    BC_CLIENT_ID: str = ""
    BC_CLIENT_SECRET: str = ""
    BC_ENVIRONMENT: str = "Production"
    BC_COMPANY_ID: str = ""
    BC_API_BASE: str = "https://api.businesscentral.dynamics.com/v2.0"
    BC_API_PUBLISHER: str = "cornerstone"
    BC_API_GROUP: str = "plannerSync"
    BC_API_VERSION: str = "v1.0"
    BC_WEBHOOK_SHARED_SECRET: str = ""
    BC_WEBHOOK_NOTIFICATION_URL: str = ""
    BC_SUBSCRIPTION_ENTITY_SETS: str = "projectTasks"
    BC_SYNC_QUEUE_ENTITY_SET: str = "premiumSyncQueue"

    # Microsoft Graph / Planner
    GRAPH_TENANT_ID: str = ""
    GRAPH_CLIENT_ID: str = ""
    GRAPH_CLIENT_SECRET: str = ""
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_BETA_BASE_URL: str = "https://graph.microsoft.com/beta"
    GRAPH_SUBSCRIPTION_CLIENT_STATE: str = ""
    GRAPH_NOTIFICATION_URL: str = ""
    PLANNER_PLAN_IDS: str = ""

    # Dataverse ("Premium")
    DATAVERSE_URL: str = ""
    DATAVERSE_TENANT_ID: str = ""
    DATAVERSE_CLIENT_ID: str = ""
    DATAVERSE_CLIENT_SECRET: str = ""
    DATAVERSE_API_VERSION: str = "v9.2"
    DATAVERSE_WEBHOOK_SECRET: str = ""
    DATAVERSE_TASK_ENTITY_SET: str = "msdyn_projecttasks"
    DATAVERSE_TASK_ID_FIELD: str = "msdyn_projecttaskid"
    DATAVERSE_TASK_TITLE_FIELD: str = "msdyn_subject"
    DATAVERSE_TASK_PERCENT_FIELD: str = "msdyn_percentcomplete"
    DATAVERSE_TASK_START_FIELD: str = "msdyn_start"
    DATAVERSE_TASK_FINISH_FIELD: str = "msdyn_finish"
    DATAVERSE_TASK_MODIFIED_FIELD: str = "modifiedon"
    DATAVERSE_PERCENT_SCALE: float = 1.0

    # Sync behaviour
    SYNC_PREFER_BC: bool = True
    SYNC_LOOP_GRACE_MS: int = 60_000
    SYNC_BC_MODIFIED_GRACE_MS: int = 2_000
    SYNC_LOCK_TIMEOUT_MINUTES: int = 30
    SYNC_TASK_CONCURRENCY: int = 6
    SYNC_USE_SMART_POLLING: bool = False
    WRITE_ORIGIN_TTL_SECONDS: int = 120

    # Job queue
    QUEUE_MAX_JOBS: int = 25
    QUEUE_LOCK_TTL_SECONDS: int = 60
    QUEUE_DEDUPE_WINDOW_SECONDS: int = 300
    WEBHOOK_PROCESS_INLINE: bool = False

    # Push subscriptions
    SUBSCRIPTION_TTL_HOURS: int = 48
    SUBSCRIPTION_RENEWAL_BUFFER_HOURS: int = 6
    SUBSCRIPTION_EXPIRY_BUFFER_SECONDS: int = 60

    # Delta polling
    POLL_MAX_PAGES: int = 10
    POLL_PAGE_SIZE: int = 200

    # Webhook log
    WEBHOOK_LOG_MAX: int = 100
    WEBHOOK_LOG_REPLAY: int = 20
    WEBHOOK_LOG_KEEPALIVE_SECONDS: float = 25.0

    @property
    def bc_entity_sets(self) -> list[str]:
        """Entity sets that get BC webhook subscriptions."""
        return _split_list(self.BC_SUBSCRIPTION_ENTITY_SETS)

    @property
    def planner_plan_ids(self) -> list[str]:
        """Planner plans watched by subscriptions and delta polling."""
        return _split_list(self.PLANNER_PLAN_IDS)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.production


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance. Call get_settings.cache_clear() to reload."""
    return Settings()
