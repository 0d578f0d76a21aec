from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/imagegen"
    REDIS_URL: str = "redis://redis:6379/0"

    KIE_API_BASE_URL: str = "https://api.kie.ai/api/v1/jobs"
    KIE_API_TOKEN: str = ""
    KIE_CALLBACK_URL: str = ""
    KIE_MODEL: str = "google/nano-banana"
    KIE_EDIT_MODEL: str = "google/nano-banana-edit"

    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_RETRY_MAX_ATTEMPTS: int = 3
    PROVIDER_RETRY_INITIAL_DELAY: float = 1.0
    PROVIDER_RETRY_MAX_DELAY: float = 30.0
    PROVIDER_RETRY_FACTOR: float = 2.0

    ASSET_STORAGE_DIR: str = "/var/imagegen/assets"
    ASSET_PUBLIC_BASE_URL: str = "https://cdn.example.com"
    ASSET_DOWNLOAD_TIMEOUT_SECONDS: float = 60.0

    TASK_CLAIM_TTL_SECONDS: int = 300
    STALE_TASK_AFTER_SECONDS: int = 900
    TASK_METADATA_TTL_SECONDS: int = 60 * 60 * 24 * 30

    GENERATION_CREDIT_COST: int = 5
    REFERRAL_SIGNUP_REWARD: int = 10
    REFERRAL_PURCHASE_REWARD: int = 30
    REFEREE_SIGNUP_REWARD: int = 0
    SOCIAL_SHARE_REWARD: int = 2

    SITE_URL: str = "http://localhost:3000"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    JWT_SECRET_KEY: str = ""
    JWT_AUDIENCE: str = "authenticated"
    ADMIN_API_TOKEN: str = ""

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
