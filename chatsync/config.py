"""Runtime settings for the chat engine, read from the environment."""

import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "chatsync"
    redis_url: Optional[str] = None
    fcm_service_account_file: Optional[str] = None
    fcm_project_id: Optional[str] = None
    cache_namespace: str = "@chatsync"
    cache_ttl_seconds: int = Field(3600, gt=0)
    clock_skew_hours: float = Field(7.0, ge=0)
    future_tolerance_seconds: int = Field(300, ge=0)
    log_level: str = "INFO"

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(hours=self.clock_skew_hours)

    @property
    def future_tolerance(self) -> timedelta:
        return timedelta(seconds=self.future_tolerance_seconds)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        values = {
            "mongo_url": os.getenv("MONGO_URL"),
            "mongo_db_name": os.getenv("MONGO_DB_NAME"),
            "redis_url": os.getenv("REDIS_URL"),
            "fcm_service_account_file": os.getenv("FCM_SERVICE_ACCOUNT_FILE"),
            "fcm_project_id": os.getenv("FCM_PROJECT_ID"),
            "cache_namespace": os.getenv("CHAT_CACHE_NAMESPACE"),
            "cache_ttl_seconds": os.getenv("CHAT_CACHE_TTL_SECONDS"),
            "clock_skew_hours": os.getenv("CHAT_CLOCK_SKEW_HOURS"),
            "future_tolerance_seconds": os.getenv("CHAT_FUTURE_TOLERANCE_SECONDS"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{key: value for key, value in values.items() if value})
