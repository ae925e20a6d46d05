STATE_DIR_NAME = ".code_crew"
CONFIG_FILE = "config.yaml"
EVENTS_FILE = "events.jsonl"
DRIFT_REPORT_FILE = "drift_report.txt"
RUNS_DIR = "runs"
SESSIONS_DIR = "sessions"
SPECS_DIR = "specs"
WORKSPACES_DIR = "workspaces"
HEALTH_DIR_NAME = "__crew_health__"
DEFAULT_OUTPUT_DIR = "tasks"
BACKLOG_FILE = "BACKLOG.yaml"
BACKLOG_SCHEMA_VERSION = "1.0"
WINDOWS_LOCK_BYTES = 4096

# Context hygiene limits
MAX_CONTEXT_BYTES = 3000
MAX_CONSTRAINTS = 5
MAX_GOTCHAS = 3
MAX_PATTERNS = 5
MAX_STATEMENT_CHARS = 100
MAX_PATTERN_CHARS = 160
MAX_FILES_HINT = 10
MAX_TITLE_CHARS = 100
MAX_DESCRIPTION_CHARS = 600
MIN_DESCRIPTION_CHARS = 120
FULL_FILE_LINE_THRESHOLD = 50
DEFAULT_TASK_ID_PATTERN = r"\bT\d{2,4}\b"

# Phrases that only belong in planning sessions
PLANNING_KEYWORDS = (
    "we explored",
    "alternative approach",
    "after much discussion",
    "three options",
    "let me think",
    "first attempt",
    "trying different",
    "on second thought",
    "let's reconsider",
    "another possibility",
    "TODO:",
    "FIXME:",
    "NOTE:",
    "CONSIDER:",
    "EXPLORE:",
    "OPTION:",
    "ALTERNATIVE:",
    "BRAINSTORM:",
    "IDEA:",
    "MAYBE:",
)

# Drift
DEFAULT_MAX_DRIFT_GROWTH = 0.5

# Workers
DEFAULT_CONCURRENCY = 3
DEFAULT_TASK_TIMEOUT_SECONDS = 30 * 60
DEFAULT_COMMAND_TIMEOUT_SECONDS = 10 * 60
DEFAULT_PROBE_TIMEOUT_SECONDS = 120
DEFAULT_AGENT_COMMAND = "codex exec -"

# Retry with backoff for transient collaborator failures
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
DEFAULT_RETRY_FACTOR = 2.0

TRANSIENT_ERROR_MARKERS = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "temporarily unavailable",
    "timed out while connecting",
    "network is unreachable",
    "rate limit",
    "too many requests",
    "503 service unavailable",
    "502 bad gateway",
)

# Rebase policy
DEFAULT_REBASE_THRESHOLD = 2
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_REBASE_MAX_CONTEXT_BYTES = 2500
DEFAULT_REBASE_MAX_DURATION_SECONDS = 20 * 60

# Planning
DEFAULT_PLANNING_SESSIONS = 3
DEFAULT_PLANNING_TIMEOUT_SECONDS = 10 * 60
PLANNING_ROLES = ("spec", "arch", "qa")

# Verify profiles expand to gate commands when no explicit command is set
VERIFY_PROFILES = {
    "none": {},
    "python": {
        "test_command": "python -m pytest -q",
        "lint_command": "ruff check .",
        "typecheck_command": "mypy .",
    },
}
