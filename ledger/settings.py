import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.currency = _getenv("LEDGER_CURRENCY", "CNY") or "CNY"
        self.transaction_timeout = _getenv_float("LEDGER_TX_TIMEOUT", 5.0)
        self.balance_config_json = _getenv("BALANCE_CONFIG")
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None or raw.strip() == "*":
            return ["*"]
        return [o.strip() for o in raw.split(",") if o.strip()]


settings = Settings()
