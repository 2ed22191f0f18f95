# backend/bizledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///bizledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Products without their own min threshold are "low" at or below this level
    LEDGER_DEFAULT_MIN_THRESHOLD = int(os.environ.get("LEDGER_DEFAULT_MIN_THRESHOLD", "5"))

    # One loyalty point per this many cents of sale total (100.00 currency units)
    LEDGER_LOYALTY_POINT_UNIT_CENTS = int(os.environ.get("LEDGER_LOYALTY_POINT_UNIT_CENTS", "10000"))
