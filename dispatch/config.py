"""Configuration for the presence and assignment engine (Redis, timeouts, rebalancing)."""

import os

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))
# Upper bound for any single store call; no engine operation blocks longer than this per call.
REDIS_SOCKET_TIMEOUT: float = float(os.environ.get("REDIS_SOCKET_TIMEOUT", "5"))

# Total attempts for a store mutation (1 retry on transient failure).
STORE_WRITE_ATTEMPTS: int = int(os.environ.get("STORE_WRITE_ATTEMPTS", "2"))

# --- Presence ---
# Agents whose last heartbeat is older than this are stale (unavailable) regardless of status.
ACTIVITY_TIMEOUT_SECONDS: float = float(os.environ.get("ACTIVITY_TIMEOUT_SECONDS", "60"))

# --- Rebalancing ---
REBALANCING_ENABLED: bool = os.environ.get("REBALANCING_ENABLED", "true").strip().lower() not in {
    "0", "false", "no", "off",
}
RECLAIM_IDLE_SECONDS: float = float(os.environ.get("RECLAIM_IDLE_SECONDS", "300"))  # 5 minutes
REDISTRIBUTION_CAP: int = int(os.environ.get("REDISTRIBUTION_CAP", "2"))

# --- AFK detection (worker cron) ---
AFK_TIMEOUT_MINUTES: int = int(os.environ.get("AFK_TIMEOUT_MINUTES", "15"))
AFK_CHECK_INTERVAL_MINUTES: int = int(os.environ.get("AFK_CHECK_INTERVAL_MINUTES", "2"))

CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]
