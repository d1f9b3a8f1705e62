"""Centralised configuration — single source of truth for the queue engine."""

import os
from pathlib import Path

# ── Paths ────────────────────────────────────────────────────────────────
_PACKAGE_DIR = Path(__file__).resolve().parent
ROOT_DIR = _PACKAGE_DIR.parent

# ── Infrastructure (env overridable) ─────────────────────────────────────
REDIS_URL = os.getenv("REDIS_URL", "")            # empty = in-process locks/sequences
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.com/MOCK")
WEBHOOK_TIMEOUT_SECONDS = 5.0

# ── Concurrency ──────────────────────────────────────────────────────────
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
REDIS_LOCK_TTL_SECONDS = 30     # a crashed holder frees its key after this
CALL_NEXT_ATTEMPTS = 3          # re-selections when a ticket is claimed under us

# ── Missed-ticket reaper ─────────────────────────────────────────────────
MISS_TIMEOUT_SECONDS = int(os.getenv("MISS_TIMEOUT_SECONDS", "300"))     # 5 minutes
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))

# ── Branch clock ─────────────────────────────────────────────────────────
# Ticket numbering restarts at local midnight in this zone
BRANCH_TIMEZONE = os.getenv("BRANCH_TIMEZONE", "")   # IANA name, empty = UTC

# ── Ticket numbering ─────────────────────────────────────────────────────
SEQUENCE_PAD = 3
SEQUENCE_KEY_PREFIX = "queue:seq"
SEQUENCE_DAYS_KEPT = 2                     # today and yesterday
SEQUENCE_KEY_TTL_SECONDS = SEQUENCE_DAYS_KEPT * 24 * 3600
LOCK_KEY_PREFIX = "queue:lock"

# Tier → number prefix (placed before the service code)
TIER_PREFIXES: dict[str, str] = {
    "appointment": "APP",
    "vip": "VIP",
    "urgent": "",
    "special": "",
    "normal": "",
}

# ── Priority labels (request label → tier) ───────────────────────────────
PRIORITY_LABELS: dict[str, str] = {
    "appointment": "appointment",
    "vip": "vip",
    "urgent": "urgent",
    "special": "special",
    "disabled": "special",
    "elderly": "special",
    "pregnant": "special",
    "normal": "normal",
}

# VIP codes accepted at the kiosk (upgrade a normal request to VIP)
VIP_CODES: frozenset[str] = frozenset(
    {"VIP001", "VIP002", "VIPGOLD", "VIPPLATINUM", "VIP2024"}
)

# ── Appointments ─────────────────────────────────────────────────────────
APPOINTMENT_SLOT_MINUTES = 30   # two appointments for a service must be this far apart

# ── Wait estimation ──────────────────────────────────────────────────────
TIER_WAIT_FACTORS: dict[str, float] = {
    "appointment": 0.0,   # scheduled, no queueing
    "vip": 0.3,
    "urgent": 0.2,
    "special": 0.4,
    "normal": 1.0,
}

TIER_MIN_WAIT_MINUTES: dict[str, int] = {
    "appointment": 0,
    "vip": 5,
    "urgent": 2,
    "special": 3,
    "normal": 2,
}

DEFAULT_BASE_SERVICE_MINUTES = 15

# ── Queue snapshot ───────────────────────────────────────────────────────
SNAPSHOT_HEAD_SIZE = 5

# ── Seed data (loaded by bootstrap when the store is empty) ──────────────
DEFAULT_SERVICES: dict[str, dict] = {
    "A":  {"name": "Account opening", "base_service_minutes": 30},
    "W":  {"name": "Withdrawal",      "base_service_minutes": 5},
    "D":  {"name": "Deposit",         "base_service_minutes": 10},
    "C":  {"name": "Complaint",       "base_service_minutes": 20},
    "L":  {"name": "Loan",            "base_service_minutes": 45},
    "CD": {"name": "Card",            "base_service_minutes": 15},
    "T":  {"name": "Transfer",        "base_service_minutes": 10},
    "O":  {"name": "Other",           "base_service_minutes": 15},
}

DEFAULT_COUNTERS: dict[int, dict] = {
    1: {"services": ["W", "D", "T"]},
    2: {"services": ["W", "D", "T"]},
    3: {"services": ["A", "CD", "O"]},
    4: {"services": ["L", "C"]},
}
