import os
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PAYGUARD_", extra="ignore")

    service_name: str = "payment-guard"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "payguard")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    # One secret per upstream payment provider
    webhook_secrets: Dict[str, str] = {}
    yellowcard_webhook_secret: str = os.getenv("YELLOWCARD_WEBHOOK_SECRET", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    internal_webhook_secret: str = os.getenv("INTERNAL_WEBHOOK_SECRET", "")
    replay_tolerance_seconds: int = 300

    # endpoint class -> [requests, window_seconds]
    rate_limits: Dict[str, List[int]] = {}
    rate_limit_timeout_seconds: float = 2.0

    large_amount_threshold: float = 1000000
    unusual_amount_variance: float = 0.9
    velocity_threshold: int = 10
    suspicious_ips: List[str] = []
    # peers whose X-Forwarded-For header is honoured (IPs or CIDR ranges)
    trusted_proxies: List[str] = []
    history_window_seconds: int = 24 * 60 * 60
    history_timeout_seconds: float = 2.0

    counter_backend: str = os.getenv("COUNTER_BACKEND", "memory")  # memory | redis
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    redis_timeout_seconds: float = 2.0

    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./payguard.db")

    kafka_enabled: bool = False
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    behavior_queue_size: int = 1000
    provider_directory_path: Optional[str] = None

    def resolved_webhook_secrets(self) -> Dict[str, str]:
        """Secrets by source tag, explicit map entries win over the per-provider variables"""
        secrets = {
            "yellowcard": self.yellowcard_webhook_secret,
            "stripe": self.stripe_webhook_secret,
            "internal": self.internal_webhook_secret,
        }
        secrets.update(self.webhook_secrets)
        return {tag: secret for tag, secret in secrets.items() if secret}

settings = Settings()
