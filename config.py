# config.py
import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# .env file load karti hai (if present)
load_dotenv()

logger = logging.getLogger("neurogrid.config")

# Fallbacks keep the service bootable with an empty environment.
DEFAULT_TREASURY_WALLET = "5f0c6a9e2b7d4e81c3a95f60d2e8b4179ac3d5e6f7081a2b3c4d5e6f708192a3"
DEFAULT_TOKEN_MINT = "usdt-devnet-mint"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default


def _env_port_range(name: str, default: Tuple[int, int]) -> Tuple[int, int]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        low, high = (int(p) for p in raw.split("-", 1))
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    if low <= 0 or high < low:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    return low, high


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # Database / logging
    DATABASE_URL: str = "sqlite:///./neurogrid.db"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Wallet sessions
    JWT_SECRET_KEY: str = "neurogrid-dev-secret-change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440

    # Ledger
    NETWORK: str = "devnet"
    TREASURY_WALLET: str = DEFAULT_TREASURY_WALLET
    TOKEN_MINT: str = DEFAULT_TOKEN_MINT
    TOKEN_DECIMALS: int = 6
    PROTOCOL_FEE_BPS: int = 500
    CONFIRM_TIMEOUT_SECONDS: float = 60.0
    CONFIRM_POLL_SECONDS: float = 0.5

    # Upstream services
    NODES_API_URL: Optional[str] = None
    TOP_EARNERS_API_URL: Optional[str] = None
    ASSIGN_API_URL: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 10.0
    CATALOG_POLL_SECONDS: float = 15.0

    # Assignment
    DEPLOY_GATEWAY_TEMPLATE: Optional[str] = None
    DEPLOY_PORT: Optional[int] = None
    DEPLOY_PORT_RANGE: Tuple[int, int] = (7000, 7999)

    # Rental flow
    RENTAL_CONFIRM_TTL_SECONDS: float = 120.0

    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> "Settings":
        deploy_port = _env_int("DEPLOY_PORT", 0)
        treasury = os.getenv("TREASURY_WALLET") or os.getenv("NEXT_PUBLIC_TREASURY_WALLET")
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL") or "sqlite:///./neurogrid.db",
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FILE=os.getenv("LOG_FILE") or None,
            JWT_SECRET_KEY=os.getenv("JWT_SECRET_KEY") or "neurogrid-dev-secret-change-me",
            ALGORITHM=os.getenv("ALGORITHM", "HS256"),
            ACCESS_TOKEN_EXPIRE_MINUTES=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 1440),
            NETWORK=os.getenv("NETWORK", "devnet"),
            TREASURY_WALLET=treasury or DEFAULT_TREASURY_WALLET,
            TOKEN_MINT=os.getenv("TOKEN_MINT") or DEFAULT_TOKEN_MINT,
            TOKEN_DECIMALS=_env_int("TOKEN_DECIMALS", 6),
            PROTOCOL_FEE_BPS=_env_int("PROTOCOL_FEE_BPS", 500),
            CONFIRM_TIMEOUT_SECONDS=_env_float("CONFIRM_TIMEOUT_SECONDS", 60.0),
            CONFIRM_POLL_SECONDS=_env_float("CONFIRM_POLL_SECONDS", 0.5),
            NODES_API_URL=os.getenv("NODES_API_URL") or os.getenv("NEXT_PUBLIC_NODES_API_URL") or None,
            TOP_EARNERS_API_URL=os.getenv("TOP_EARNERS_API_URL") or None,
            ASSIGN_API_URL=os.getenv("ASSIGN_API_URL") or None,
            HTTP_TIMEOUT_SECONDS=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
            CATALOG_POLL_SECONDS=_env_float("CATALOG_POLL_SECONDS", 15.0),
            DEPLOY_GATEWAY_TEMPLATE=os.getenv("DEPLOY_GATEWAY_TEMPLATE") or None,
            DEPLOY_PORT=deploy_port if deploy_port > 0 else None,
            DEPLOY_PORT_RANGE=_env_port_range("DEPLOY_PORT_RANGE", (7000, 7999)),
            RENTAL_CONFIRM_TTL_SECONDS=_env_float("RENTAL_CONFIRM_TTL_SECONDS", 120.0),
            CORS_ORIGINS=_env_list("CORS_ORIGINS", ["http://localhost:3000"]),
        )


settings = Settings.from_env()
