from decimal import Decimal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Configuracion general
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str

    # Base de datos (PostgreSQL + asyncpg en producción)
    DATABASE_URL: str

    # Redis — challenge OTP activo por usuario
    REDIS_URL: str
    REDIS_MAX_CONNECTIONS: int = 50
    # Segundos por operación; pasado eso el checkout responde 503
    REDIS_OPERATION_TIMEOUT: float = 0.5

    # Vault — si no se define ENCRYPTION_KEY se usa SECRET_KEY
    ENCRYPTION_KEY: str | None = None
    VAULT_KDF_SALT: str = "motor-pagos-vault-salt"

    # OTP
    OTP_LENGTH: int = 6
    OTP_EXPIRE_MINUTES: int = 5
    OTP_MAX_ATTEMPTS: int = 3

    # Motor de riesgo
    FRAUD_RISK_THRESHOLD: int = 2
    HIGH_AMOUNT_THRESHOLD: Decimal = Decimal("500")
    VELOCITY_WINDOW_MINUTES: int = 60
    VELOCITY_MAX_TRANSACTIONS: int = 5

    # Gateway y banco simulados
    GATEWAY_SUCCESS_RATE: float = 0.95
    GATEWAY_TIMEOUT_SECONDS: float = 5.0
    BANK_TIMEOUT_SECONDS: float = 5.0
    BANK_MAX_SINGLE_TRANSACTION: Decimal = Decimal("10000")
    BANK_DAILY_LIMIT: Decimal = Decimal("25000")
    DEFAULT_CURRENCY: str = "USD"

    # CORS — lista de orígenes permitidos separados por coma en el .env
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Email (envío del OTP)
    EMAIL_ENABLED: bool = False
    EMAIL_FROM: str = "no-reply@motorpagos.local"
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_origins(cls, v):
        """Permite definir ALLOWED_ORIGINS como string separado por comas en .env"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file          = ".env",
        env_file_encoding = "utf-8",
        case_sensitive    = True,
        extra             = "ignore",
    )


settings = Settings()
