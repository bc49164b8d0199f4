"""Constants for Gmail Janitor."""

from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".gmail-janitor"
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
TOKEN_PATH = CONFIG_DIR / "token.json"
DATABASE_PATH = CONFIG_DIR / "janitor.db"

# --- Gmail API ---
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
DELETE_BATCH_SIZE = 50  # messages per batchModify call
DELETE_BATCH_DELAY = 0.1  # seconds between trash batches
TRASH_LABELS_ADD = ["TRASH"]
TRASH_LABELS_REMOVE = ["INBOX"]
DEFAULT_STORAGE_QUOTA_BYTES = 15 * 1024**3  # free Gmail tier

# --- Staleness weights ---
WEIGHT_AGE = 0.25
WEIGHT_IMPORTANCE = 0.30
WEIGHT_SIZE = 0.15
WEIGHT_SPAM = 0.15
WEIGHT_ACCESS = 0.15
WEIGHT_TOLERANCE = 0.001

# --- Staleness thresholds ---
AGE_RECENT_DAYS = 30
AGE_MODERATE_DAYS = 90
AGE_OLD_DAYS = 365

SIZE_SMALL_BYTES = 102_400  # 100KB
SIZE_MEDIUM_BYTES = 1_048_576  # 1MB
SIZE_LARGE_BYTES = 10_485_760  # 10MB

IMPORTANCE_HIGH_SCORE = 10
IMPORTANCE_LOW_SCORE = -5

SCORE_DELETE = 0.8
SCORE_ARCHIVE = 0.6
RECENT_EMAIL_DAYS = 7  # never recommend cleanup below this age
HIGH_CONFIDENCE = 0.8
SCORING_CHUNK_SIZE = 50

# --- Importance ordering ---
IMPORTANCE_LEVELS = ["low", "medium", "high"]

# --- Access tracking ---
ACCESS_SCORE_DIVISOR = 10
ACCESS_TYPES = ("direct_view", "search_result", "thread_view")

# --- Policies ---
ACTION_TYPES = ("archive", "delete")
ACTION_METHODS = ("gmail", "export")
EXPORT_FORMATS = ("mbox", "json")
SCHEDULE_FREQUENCIES = ("continuous", "daily", "weekly", "monthly")

# --- Safety defaults ---
VIP_DOMAINS = [
    "board-of-directors.com",
    "executives.com",
    "ceo.com",
    "legal-counsel.com",
]
LEGAL_KEYWORDS = [
    "legal",
    "lawsuit",
    "litigation",
    "compliance",
    "audit",
    "regulation",
    "contract",
    "agreement",
    "confidential",
    "proprietary",
    "copyright",
    "trademark",
    "patent",
    "settlement",
    "court",
    "subpoena",
    "deposition",
    "evidence",
    "invoice",
    "tax",
]
PROTECTED_LABELS = [
    "IMPORTANT",
    "STARRED",
    "VIP",
    "LEGAL",
    "CONFIDENTIAL",
]

# --- Jobs ---
MANUAL_BATCH_CAP = 100
EVENT_BATCH_SIZE = 100
EVENT_TARGET_EMAILS = 500
EMERGENCY_MAX_EMAILS = 1000
CONTINUOUS_BATCH_CAP = 50
INTER_BATCH_DELAY = 0.1  # seconds
MONITOR_INTERVAL_SECONDS = 300
WORKER_POLL_SECONDS = 1.0
SCHEDULER_POLL_SECONDS = 60
ORPHANED_JOB_TIMEOUT_MINUTES = 30

# --- Health ---
QUERY_TIME_WINDOW = 100  # most recent query timings kept

# --- Display ---
JOBS_LIST_LIMIT = 20
