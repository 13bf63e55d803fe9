"""
Configuration module for Cardgate.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from typing import Dict
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CARDGATE_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = Path(os.getenv("CARDGATE_DB_PATH", "data/cardgate.db"))
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.05"))

# Reader attestation
READER_REGISTRY_PATH = os.getenv("READER_REGISTRY_PATH", "trust/reader_registry.json")
ENFORCE_READER_REGISTRY = _env_bool("ENFORCE_READER_REGISTRY", "true")
REQUIRE_READER_ATTESTATION = _env_bool("REQUIRE_READER_ATTESTATION", "true")
CHALLENGE_TTL_SECONDS = int(os.getenv("CHALLENGE_TTL_SECONDS", "120"))
CHALLENGE_GRACE_SECONDS = int(os.getenv("CHALLENGE_GRACE_SECONDS", "300"))
MAX_ATTESTATION_ATTEMPTS = int(os.getenv("MAX_ATTESTATION_ATTEMPTS", "5"))
ATTESTATION_TOKEN_TTL_SECONDS = int(os.getenv("ATTESTATION_TOKEN_TTL_SECONDS", "3600"))
ATTESTATION_TOKEN_MAX_USES = int(os.getenv("ATTESTATION_TOKEN_MAX_USES", "0"))  # 0 = unlimited

# Card lifecycle
MIN_CARD_TTL_SECONDS = int(os.getenv("MIN_CARD_TTL_SECONDS", "60"))
MAX_CARD_TTL_SECONDS = int(os.getenv("MAX_CARD_TTL_SECONDS", str(10 * 365 * 24 * 3600)))
CARD_KEK_B64 = os.getenv("CARD_KEK_B64", "")

# Verification
VERIFY_TIMEOUT_SECONDS = float(os.getenv("VERIFY_TIMEOUT_SECONDS", "3.0"))

# Rate limits (requests per minute)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "600"))
ATTEST_RPM = int(os.getenv("ATTEST_RPM", "60"))
ADMIN_RPM = int(os.getenv("ADMIN_RPM", "120"))

# Admin surface
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

# Audit sink
AUDIT_SINK = os.getenv("AUDIT_SINK", "sqlite_hash_chain")

# Simulator is on by default everywhere except prod
ENABLE_SIMULATOR = _env_bool("ENABLE_SIMULATOR", "false" if ENV == "prod" else "true")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", "true")
LOG_FILE = os.getenv("LOG_FILE") or None


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of name -> present.
    """
    checks = {
        "reader_registry": Path(READER_REGISTRY_PATH).exists(),
        "db_dir": DB_PATH.parent.exists(),
    }
    if is_production():
        checks["card_kek"] = bool(CARD_KEK_B64)
        checks["admin_api_key"] = bool(ADMIN_API_KEY)
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"
