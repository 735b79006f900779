import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Mirror database & cache
    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Network
    CHAIN_ID: int = 84532  # Base Sepolia
    RPC_URL: Optional[str] = None  # falls back to the network preset

    # Sponsoring account (relayer)
    RELAYER_PRIVATE_KEY: Optional[str] = None
    RELAYER_MIN_BALANCE_WEI: int = 10**15  # 0.001 ether

    # Contracts
    SUBSCRIPTION_MANAGER_ADDRESS: Optional[str] = None
    COLLECTION_FACTORY_ADDRESS: Optional[str] = None
    CLAIMABLE_FACTORY_ADDRESS: Optional[str] = None
    STABLE_TOKEN_ADDRESS: Optional[str] = None
    STABLE_TOKEN_DECIMALS: int = 6
    TREASURY_ADDRESS: Optional[str] = None
    LEDGER_SUPPORTS_PERMIT: bool = False

    # Confirmation polling
    CONFIRMATION_TIMEOUT_SECONDS: float = 90.0
    CONFIRMATION_POLL_SECONDS: float = 2.0

    # Rate limiting (relay-consuming endpoints)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    RELAY_RATE_LIMIT_PER_WINDOW: int = 8
    RELAY_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Admin access (drop authoring, reconciliation)
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def confirmation_timeout(cfg: Optional[Settings] = None) -> float:
    """Confirmation wait bound, kept inside 60..120s outside of tests."""
    cfg = cfg or settings
    timeout = float(cfg.CONFIRMATION_TIMEOUT_SECONDS)
    if cfg.ENV.lower() == "test":
        return timeout
    return min(120.0, max(60.0, timeout))


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("mintrelay")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "RELAYER_PRIVATE_KEY",
        "SUBSCRIPTION_MANAGER_ADDRESS",
        "COLLECTION_FACTORY_ADDRESS",
        "CLAIMABLE_FACTORY_ADDRESS",
        "STABLE_TOKEN_ADDRESS",
        "TREASURY_ADDRESS",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if cfg.RATE_LIMIT_BACKEND not in {"memory", "redis"}:
        missing.append("RATE_LIMIT_BACKEND(memory|redis)")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
