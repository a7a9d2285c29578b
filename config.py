"""Configuration management for the agent cash/bitcoin exchange engine"""

import os
import logging
from decimal import Decimal
from typing import List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _csv_env(name: str, default: str) -> List[str]:
    """Read a comma separated environment variable into a list of upper-case values"""
    raw = os.getenv(name, default)
    return [item.strip().upper() for item in raw.split(",") if item.strip()]


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    if ENVIRONMENT:
        IS_PRODUCTION = ENVIRONMENT == "production"
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL")
    if DATABASE_URL:
        DATABASE_SOURCE = "PostgreSQL" if DATABASE_URL.startswith("postgresql") else "Custom"
    else:
        DATABASE_SOURCE = "NOT CONFIGURED"
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Ledger (base-chain custody) API
    LEDGER_API_URL = os.getenv("LEDGER_API_URL", "http://localhost:8332/api/v1")
    LEDGER_API_KEY = os.getenv("LEDGER_API_KEY", "")
    LEDGER_CALL_TIMEOUT_SECONDS = float(os.getenv("LEDGER_CALL_TIMEOUT_SECONDS", "30"))
    REQUIRED_CONFIRMATIONS = int(os.getenv("REQUIRED_CONFIRMATIONS", "3"))

    # Instant (Lightning-style) channel API
    INSTANT_CHANNEL_API_URL = os.getenv("INSTANT_CHANNEL_API_URL", "http://localhost:8080/v1")
    INSTANT_CHANNEL_API_KEY = os.getenv("INSTANT_CHANNEL_API_KEY", "")
    INSTANT_CHANNEL_TIMEOUT_SECONDS = float(os.getenv("INSTANT_CHANNEL_TIMEOUT_SECONDS", "15"))
    INSTANT_INVOICE_EXPIRY_SECONDS = int(os.getenv("INSTANT_INVOICE_EXPIRY_SECONDS", "3600"))

    # Exchange rate and network fee sources
    BTC_USD_RATE_URL = os.getenv(
        "BTC_USD_RATE_URL", "https://api.coinbase.com/v2/exchange-rates?currency=BTC"
    )
    FOREX_RATE_URL = os.getenv("FOREX_RATE_URL", "https://api.exchangerate-api.com/v4/latest/USD")
    FEE_ESTIMATE_URL = os.getenv("FEE_ESTIMATE_URL", "https://mempool.space/api/v1/fees/recommended")
    RATE_LOOKUP_TIMEOUT_SECONDS = float(os.getenv("RATE_LOOKUP_TIMEOUT_SECONDS", "3"))
    RATE_CACHE_TTL_SECONDS = int(os.getenv("RATE_CACHE_TTL_SECONDS", "300"))

    # Escrow lifecycle
    ESCROW_TIMEOUT_HOURS = int(os.getenv("ESCROW_TIMEOUT_HOURS", "24"))
    EXCHANGE_CODE_PREFIX = os.getenv("EXCHANGE_CODE_PREFIX", "BTC")
    EXCHANGE_CODE_MAX_ATTEMPTS = int(os.getenv("EXCHANGE_CODE_MAX_ATTEMPTS", "10"))
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5"))
    NOTIFICATION_BACKEND = os.getenv("NOTIFICATION_BACKEND", "outbox").lower()  # outbox | log
    # A fund-movement claim older than this is considered abandoned (far above any ledger timeout)
    STALE_CLAIM_SECONDS = int(os.getenv("STALE_CLAIM_SECONDS", "900"))
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "50"))
    SWEEP_MAX_PAGES = int(os.getenv("SWEEP_MAX_PAGES", "20"))
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    RUN_ESCROW_JOBS = os.getenv("RUN_ESCROW_JOBS", "true").lower() == "true"

    # Transfer routing thresholds (USD) and channel pricing
    INSTANT_CHANNEL_MIN_USD = Decimal(os.getenv("INSTANT_CHANNEL_MIN_USD", "0.01"))
    INSTANT_CHANNEL_MAX_USD = Decimal(os.getenv("INSTANT_CHANNEL_MAX_USD", "50"))
    INSTANT_BASE_FEE_SATS = int(os.getenv("INSTANT_BASE_FEE_SATS", "1"))
    INSTANT_FEE_RATE = Decimal(os.getenv("INSTANT_FEE_RATE", "0.0001"))  # 0.01%
    DEFAULT_NETWORK_FEE_SATS = int(os.getenv("DEFAULT_NETWORK_FEE_SATS", "10000"))
    TYPICAL_TX_VSIZE = int(os.getenv("TYPICAL_TX_VSIZE", "140"))

    SUPPORTED_CURRENCIES = _csv_env(
        "SUPPORTED_CURRENCIES",
        "UGX,KES,TZS,RWF,ETB,NGN,GHS,XOF,XAF,CDF,AOA,ZAR,BWP,EGP,MAD,TND,DZD,MUR,"
        "SLL,LRD,GMD,SZL,LSL,NAD,ZMW,ZWL,MWK,MZN,SCR,CVE,STN,KMF,DJF,ERN,MGA,SOS,"
        "LYD,SDG,BTC",
    )

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging (never logs secrets)"""
        logger.info("🔧 Engine Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")

        if Config.DATABASE_SOURCE == "NOT CONFIGURED":
            logger.error(f"   ❌ Database: {Config.DATABASE_SOURCE}")
            if Config.IS_PRODUCTION:
                logger.error("   🚨 PRODUCTION DATABASE NOT CONFIGURED - Check DATABASE_URL!")
        else:
            logger.info(f"   💾 Database: {Config.DATABASE_SOURCE}")

        logger.info(f"   Ledger API: {Config.LEDGER_API_URL} (key {'✅ set' if Config.LEDGER_API_KEY else '❌ not set'})")
        logger.info(
            f"   Instant channel API: {Config.INSTANT_CHANNEL_API_URL} "
            f"(key {'✅ set' if Config.INSTANT_CHANNEL_API_KEY else '❌ not set'})"
        )
        logger.info(f"   Escrow timeout: {Config.ESCROW_TIMEOUT_HOURS}h, sweep every {Config.SWEEP_INTERVAL_SECONDS}s")
        logger.info(
            f"   Instant channel window: ${Config.INSTANT_CHANNEL_MIN_USD} - ${Config.INSTANT_CHANNEL_MAX_USD}"
        )
