# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real tokens. Put local values in .env (gitignored).

This file keeps the repo self-documenting: every MC_* variable read by
`mission_control.config.Settings.from_env` is listed here.
"""

ENV_VARS = {
    # App / logging
    "MC_APP_NAME": "App display name (default: mission-control).",
    "MC_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # HTTP
    "MC_HOST": "Bind address for `mission-control serve` (default: 127.0.0.1).",
    "MC_PORT": "Port for `mission-control serve` (default: 8000).",
    # Paths (gitignored)
    "MC_DATA_DIR": "Local data directory for the database and log file (default: .local/mission_control).",
    "MC_DB_PATH": "SQLite path (default: <data_dir>/mission_control.sqlite3).",
    # Archive scheduler
    "MC_ARCHIVE_ENABLED": "Run the archive scheduler inside `serve` (true/false, default: true).",
    "MC_ARCHIVE_DELAY_HOURS": "How long a done task stays on the board before archival (default: 24).",
    "MC_ARCHIVE_INTERVAL_SECONDS": "Seconds between archive ticks (default: 300).",
    "MC_ARCHIVE_BATCH_LIMIT": "Max tasks archived per store transaction (default: 200).",
    # Push channel
    "MC_CHANNEL_QUEUE_SIZE": "Outbound buffer per WebSocket; a channel that overflows it is dropped (default: 256).",
    # Agent activity
    "MC_AGENT_ACTIVE_MINUTES": "An agent seen within this many minutes is 'active' (default: 5).",
    "MC_AGENT_IDLE_MINUTES": "Seen within this many minutes is 'idle', otherwise 'offline' (default: 30).",
}
