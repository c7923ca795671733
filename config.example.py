# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets (the remote API token belongs in .env, which is gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "TASKKEEP_APP_NAME": "App display name (default: taskkeep).",
    "TASKKEEP_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "TASKKEEP_DATA_DIR": "Local data directory, also holds taskkeep.log (default: .local/taskkeep).",
    "TASKKEEP_KV_DB_PATH": "Host key-value store SQLite path (default: <data_dir>/storage.sqlite3).",
    # Persistence
    "TASKKEEP_STORAGE_KEY": "Key of the persisted task envelope (default: taskkeep.tasks).",
    "TASKKEEP_STORAGE_CAPACITY_BYTES": "Host store capacity ceiling in UTF-8 bytes (default: 5 MiB).",
    "TASKKEEP_CACHE_TTL_SECONDS": "Read cache freshness window (default: 5).",
    "TASKKEEP_WRITE_DEBOUNCE_MS": "Write-behind debounce interval (default: 100).",
    "TASKKEEP_RETENTION_DAYS": "Days a deleted task stays restorable before purge (default: 30).",
    # Sync / remote
    "TASKKEEP_SYNC_ENABLED": "Enable the sync engine (default: true when a remote URL is set).",
    "TASKKEEP_REMOTE_BASE_URL": "Base URL of the versioned remote task service.",
    "TASKKEEP_REMOTE_API_TOKEN": "Optional bearer token for the remote service.",
    "TASKKEEP_SYNC_INTERVAL_SECONDS": "Periodic sync / connectivity probe interval (default: 30).",
    "TASKKEEP_SYNC_MAX_ATTEMPTS": "Attempts per queued operation before it is abandoned (default: 3).",
    "TASKKEEP_REMOTE_CONNECT_TIMEOUT_SECONDS": "HTTP connect timeout (default: 5).",
    "TASKKEEP_REMOTE_READ_TIMEOUT_SECONDS": "HTTP read timeout (default: 15).",
}
