from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


# ---------------------- DATA CLASSES ----------------------

@dataclass
class DatabaseConfig:
    url: Optional[str]
    name: str


@dataclass
class AuthConfig:
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    bcrypt_rounds: int = 12


@dataclass
class PaymentConfig:
    checksum_key: str = ""
    min_amount: int = 1000
    max_amount: int = 500_000_000


@dataclass
class ChatbotConfig:
    rasa_url: str = ""
    gemini_api_key: str = ""
    gemini_models: List[str] = field(default_factory=list)
    cache_ttl_hours: int = 24


@dataclass
class AppConfig:
    database: DatabaseConfig
    auth: AuthConfig
    payment: PaymentConfig
    chatbot: ChatbotConfig
    log_level: str = "INFO"
    port: int = 8000


# ---------------------- LOADING ----------------------

def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config() -> AppConfig:
    load_dotenv()

    database_cfg = DatabaseConfig(
        url=os.getenv("DATABASE_URL"),
        name=os.getenv("DATABASE_NAME", "hospital"),
    )

    auth_cfg = AuthConfig(
        jwt_secret=os.getenv("JWT_SECRET", "hospital-dev-secret-change-me"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")),
        refresh_token_expire_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7")),
        bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
    )

    # Amounts are whole VND
    payment_cfg = PaymentConfig(
        checksum_key=os.getenv("PAYOS_CHECKSUM_KEY", ""),
        min_amount=int(os.getenv("PAYMENT_MIN_AMOUNT", "1000")),
        max_amount=int(os.getenv("PAYMENT_MAX_AMOUNT", "500000000")),
    )

    chatbot_cfg = ChatbotConfig(
        rasa_url=os.getenv("RASA_URL", ""),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_models=_split(os.getenv("GEMINI_MODELS", "gemini-2.0-flash,gemini-2.0-flash-lite")),
        cache_ttl_hours=int(os.getenv("CHATBOT_CACHE_TTL_HOURS", "24")),
    )

    return AppConfig(
        database=database_cfg,
        auth=auth_cfg,
        payment=payment_cfg,
        chatbot=chatbot_cfg,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        port=int(os.getenv("PORT", "8000")),
    )


settings = load_config()
