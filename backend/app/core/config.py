from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/training_billing?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_TIMEOUT_SECONDS: int = 20
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # プランキャッシュ (memory / redis)
    PLAN_CACHE_BACKEND: str = "memory"
    PLAN_CACHE_TTL_SECONDS: int = 900

    # サービス設定
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Training Billing"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # セッション
    SESSION_TIMEOUT_MINUTES: int = 60

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
