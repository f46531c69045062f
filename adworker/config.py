"""
Orchestration tunables for the reconciler and workflows.

Every value can be overridden from the environment (or a .env file loaded
by main.py). Provider credentials live next to the client that uses them.
"""

import os

# ── Retry policy ─────────────────────────────────────────────────────────────

MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))

# ── Timeouts (minutes, compared against stored timestamps) ───────────────────

STUCK_SUBMISSION_MINUTES = float(os.getenv("STUCK_SUBMISSION_MINUTES", "5"))
GLOBAL_TIMEOUT_MINUTES = float(os.getenv("GLOBAL_TIMEOUT_MINUTES", "40"))
MERGE_TIMEOUT_MINUTES = float(os.getenv("MERGE_TIMEOUT_MINUTES", "15"))

# ── Sweep ────────────────────────────────────────────────────────────────────

SWEEP_LIMIT = int(os.getenv("SWEEP_LIMIT", "20"))
SWEEP_DELAY_SECONDS = float(os.getenv("SWEEP_DELAY_SECONDS", "0.15"))
