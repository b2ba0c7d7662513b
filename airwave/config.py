"""AIrWAVE render service configuration — loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(REPO_ROOT / ".env")

# Supabase
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")

# Creatomate (video renderer)
CREATOMATE_API_KEY = os.environ.get("CREATOMATE_API_KEY", "")
CREATOMATE_API_URL = os.environ.get("CREATOMATE_API_URL", "https://api.creatomate.com/v1")
PROTOTYPE_MODE = os.environ.get("PROTOTYPE_MODE", "").lower() == "true"

# Render defaults
DEFAULT_TEMPLATE_ID = os.environ.get("DEFAULT_TEMPLATE_ID", "cm-template-1")
RENDER_OUTPUT_FORMAT = os.environ.get("RENDER_OUTPUT_FORMAT", "mp4")
DEFAULT_RENDER_PRIORITY = int(os.environ.get("DEFAULT_RENDER_PRIORITY", "5"))
DEFAULT_MAX_COMBINATIONS = int(os.environ.get("DEFAULT_MAX_COMBINATIONS", "100"))

# Render queue
MAX_CONCURRENT_RENDERS = int(os.environ.get("MAX_CONCURRENT_RENDERS", "5"))
MAX_RENDER_ATTEMPTS = int(os.environ.get("MAX_RENDER_ATTEMPTS", "3"))

# Background jobs (seconds)
RENDER_POLL_SECONDS = int(os.environ.get("RENDER_POLL_SECONDS", "15"))
RENDER_STALE_SECONDS = int(os.environ.get("RENDER_STALE_SECONDS", "1800"))
RECOVERY_INTERVAL_SECONDS = int(os.environ.get("RECOVERY_INTERVAL_SECONDS", "300"))

# Webhook secret (Creatomate → AIrWAVE auth)
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")

# Public base URL, used to build the render webhook callback
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")

# Server
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
