# /driftly/config/settings.py

import sys
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/driftly"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Email delivery (SendGrid v3)
    sendgrid_api_key: str | None = None
    sendgrid_api_url: str = "https://api.sendgrid.com/v3"
    from_email: str = "no-reply@driftly.app"
    from_name: str | None = "Driftly"
    email_timeout_seconds: float = 15.0

    # Webhooks
    webhook_timeout_seconds: float = 10.0

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_minutes: int = 15
    scheduler_timezone: str = "UTC"
    max_concurrent_contacts: int = 5
    due_batch_limit: int = 500
    max_steps_per_contact: int = 1
    contact_lease_seconds: int = 900

    # Keep moving a contact forward after a transient email, webhook or
    # action failure instead of parking it in the error state.
    continue_on_step_failure: bool = True

    # Deployment
    environment: str = "production"
    api_key: str | None = None
    api_version: str = "v1"
    workers: int = 2

    # ---------------- Validators ---------------- #

    @field_validator("scheduler_interval_minutes", "max_concurrent_contacts", "max_steps_per_contact")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("webhook_timeout_seconds", "email_timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("timeouts must be greater than zero")
        return v

    @field_validator("from_email")
    @classmethod
    def from_email_must_look_valid(cls, v):
        if "@" not in v:
            raise ValueError("FROM_EMAIL must be an email address")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["sendgrid_api_key", "api_key"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
