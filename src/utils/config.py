"""
Runtime configuration, read once from the environment.
"""
import os
from decimal import Decimal

# Database
DB_PATH = os.environ.get("POS_DB_PATH", "data/pos.sqlite")
DB_TIMEOUT = float(os.environ.get("POS_DB_TIMEOUT", "5.0"))

# Business defaults used when the settings row is first created
DEFAULT_BUSINESS_NAME = os.environ.get("POS_BUSINESS_NAME", "Nigro Automobiles")
DEFAULT_BUSINESS_ADDRESS = os.environ.get(
    "POS_BUSINESS_ADDRESS", "56 Iwofe Road, Rumuopirikom, PHC"
)
CURRENCY_SYMBOL = os.environ.get("POS_CURRENCY", "₦")  # naira

# Inventory
DEFAULT_LOW_STOCK_THRESHOLD = int(os.environ.get("POS_LOW_STOCK_THRESHOLD", "5"))
MONEY_QUANTUM = Decimal("0.01")

# PIN gate
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6
PIN_SALT = os.environ.get("POS_PIN_SALT", "keke-salt-2024")
MAX_FAILED_ATTEMPTS = int(os.environ.get("POS_MAX_FAILED_ATTEMPTS", "5"))
LOCKOUT_SECONDS = int(os.environ.get("POS_LOCKOUT_SECONDS", str(5 * 60)))
PIN = os.environ.get("POS_PIN")  # default for --pin on commands that change data

# Logging
LOG_LEVEL = os.environ.get("POS_LOG_LEVEL", "DEBUG" if os.getenv("DEBUG") else "INFO")
LOG_FILE = os.environ.get("POS_LOG_FILE")
