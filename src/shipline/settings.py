from __future__ import annotations

import os

from .executor import DEFAULT_OUTPUT_LIMIT, DEFAULT_PASSTHROUGH_ENV, DEFAULT_TIMEOUT

DATABASE_URL = os.environ.get("SHIPLINE_DATABASE_URL", "sqlite:///.shipline/runs.db")
DEFAULT_JOB_TIMEOUT = float(os.environ.get("SHIPLINE_DEFAULT_TIMEOUT", str(DEFAULT_TIMEOUT)))
OUTPUT_LIMIT = int(os.environ.get("SHIPLINE_OUTPUT_LIMIT", str(DEFAULT_OUTPUT_LIMIT)))
MAX_WORKERS = int(os.environ["SHIPLINE_MAX_WORKERS"]) if os.environ.get("SHIPLINE_MAX_WORKERS") else None
PASSTHROUGH_ENV = tuple(
    name.strip()
    for name in os.environ.get("SHIPLINE_PASSTHROUGH_ENV", ",".join(DEFAULT_PASSTHROUGH_ENV)).split(",")
    if name.strip()
)
WORKFLOW = os.environ.get("SHIPLINE_WORKFLOW")
SECRETS_FILE = os.environ.get("SHIPLINE_SECRETS_FILE")
