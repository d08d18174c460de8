"""
Configuration module for docintegrity.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("DOCINTEGRITY_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("DOCINTEGRITY_DB_PATH", "data/docintegrity.db")
KEYSTORE_PATH = os.getenv("DOCINTEGRITY_KEYSTORE_PATH", "secrets/identities")

# Cryptography
SIGNATURE_ALGORITHM = os.getenv("DOCINTEGRITY_SIGNATURE_ALGORITHM", "rsa-sha256")  # rsa-sha256|ed25519
MIN_RSA_KEY_BITS = int(os.getenv("MIN_RSA_KEY_BITS", "2048"))

# Permission oracle
PERMISSION_ORACLE = os.getenv("PERMISSION_ORACLE", "none")  # none|opa
OPA_URL = os.getenv("OPA_URL", "")
OPA_TIMEOUT_SECONDS = float(os.getenv("OPA_TIMEOUT_SECONDS", "3"))

# Logging
LOG_LEVEL = os.getenv("DOCINTEGRITY_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("DOCINTEGRITY_LOG_JSON", "true").lower() in ("1", "true", "yes")

# SQLite busy timeout (seconds) while waiting for the write lock
DB_BUSY_TIMEOUT = float(os.getenv("DOCINTEGRITY_DB_BUSY_TIMEOUT", "30"))


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate configuration values and required paths.
    Returns dict of check name -> ok.
    """
    checks = {
        "signature_algorithm": SIGNATURE_ALGORITHM in ("rsa-sha256", "ed25519"),
        "min_rsa_key_bits": MIN_RSA_KEY_BITS >= 2048,
        "keystore": Path(KEYSTORE_PATH).is_dir(),
        "db_dir": Path(DB_PATH).parent.exists() or not is_production(),
    }

    if PERMISSION_ORACLE == "opa":
        checks["opa_url"] = bool(OPA_URL)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("DOCINTEGRITY_DEBUG", "").lower() in ("1", "true", "yes")
