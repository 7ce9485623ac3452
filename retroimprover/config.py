"""
Environment configuration for the RetroImprover backend.

Every setting is read once at import time. Anything left unset degrades to a
local/in-memory mode instead of failing:
  - no SUPABASE_* → in-memory ledger, projects and tokens
  - no R2_*       → artifacts are served from UPLOAD_DIR
  - no REDIS_URL  → in-memory rate limiter
"""

import os


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


# ── Providers ────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
KIE_API_KEY = os.getenv("KIE_API_KEY", "")
KIE_API_BASE = os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1")

RESTORE_MODEL = os.getenv("RESTORE_MODEL", "gemini-2.5-flash-image")
PROMPT_MODEL = os.getenv("PROMPT_MODEL", "gemini-2.5-flash")
VIDEO_MODEL = os.getenv("VIDEO_MODEL", "veo-3.1-fast-generate-preview")
VIDEO_PROVIDER = os.getenv("VIDEO_PROVIDER", "gemini")  # gemini | kie

PROVIDER_TIMEOUT_SECONDS = _float("PROVIDER_TIMEOUT_SECONDS", 60.0)
VIDEO_POLL_INTERVAL = _float("VIDEO_POLL_INTERVAL", 10.0)
VIDEO_MAX_POLL_ATTEMPTS = _int("VIDEO_MAX_POLL_ATTEMPTS", 30)

# ── Storage ──────────────────────────────────────────────────────────────────

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
MAX_FILE_SIZE = _int("MAX_FILE_SIZE", 10 * 1024 * 1024)
MAX_IMAGE_PIXELS = _int("MAX_IMAGE_PIXELS", 40_000_000)

R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "")
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")

# ── Persistence ──────────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
REDIS_URL = os.getenv("REDIS_URL", "")

# ── Pipeline ─────────────────────────────────────────────────────────────────

RESTORE_COST = 1
VIDEO_COST = 3

SPECULATIVE_TTL_SECONDS = _int("SPECULATIVE_TTL_SECONDS", 3600)
SPECULATIVE_SWEEP_INTERVAL = _int("SPECULATIVE_SWEEP_INTERVAL", 300)
SPECULATIVE_MAX_REQUESTS = _int("SPECULATIVE_MAX_REQUESTS", 3)
SPECULATIVE_WINDOW_SECONDS = _int("SPECULATIVE_WINDOW_SECONDS", 3600)

# Bounded compare-and-set retries before giving up on a contended balance
LEDGER_CAS_MAX_RETRIES = _int("LEDGER_CAS_MAX_RETRIES", 8)

# ── HTTP ─────────────────────────────────────────────────────────────────────

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def supabase_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)


def r2_configured() -> bool:
    return bool(R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_BUCKET_NAME)
