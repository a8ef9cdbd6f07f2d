import os

# --- Durable store ---
DATABASE_URL = os.getenv("DATABASE_URL")

PENDING_KEY = "pending_txs" # Queue of PendingTransaction, FIFO
DEAD_LETTER_KEY = "dead_txs" # Only used when SYNC_MAX_ATTEMPTS is set
API_URL_KEY = "cermaq_inventory_url" # Endpoint override

# --- Remote inventory service ---
DEFAULT_API_URL = os.getenv(
    "BODEGA_API_URL",
    "https://script.google.com/macros/s/AKfycbzpgUkMhdDmLSaejzg_Faql7j-fpojIx0mx98w1sQzl9Wdbfjx1YRdVZij9VLnF5sCK/exec",
)
HTTP_TIMEOUT = float(os.getenv("BODEGA_HTTP_TIMEOUT", "15.0"))

# --- Sync loop ---
SYNC_INTERVAL = float(os.getenv("BODEGA_SYNC_INTERVAL", "30.0"))
_max_attempts = os.getenv("BODEGA_SYNC_MAX_ATTEMPTS")
SYNC_MAX_ATTEMPTS = int(_max_attempts) if _max_attempts else None # None = retry forever
SYNC_BACKOFF_FACTOR = float(os.getenv("BODEGA_SYNC_BACKOFF", "1.0"))
SYNC_MAX_INTERVAL = float(os.getenv("BODEGA_SYNC_MAX_INTERVAL", "300.0"))

# --- Offline asset cache ---
# Bump CACHE_VERSION whenever ASSET_MANIFEST changes.
CACHE_PREFIX = "cermaq-bodega"
CACHE_VERSION = os.getenv("BODEGA_CACHE_VERSION", "v2")
CACHE_NAME = f"{CACHE_PREFIX}-{CACHE_VERSION}"
ASSET_BASE_URL = os.getenv("BODEGA_ASSET_BASE_URL", "http://localhost:8000/")
ASSET_MANIFEST = [
    "./",
    "./index.html",
    "./style.css",
    "./app.js",
    "./Q.png",
    "https://unpkg.com/html5-qrcode",
    "https://cdnjs.cloudflare.com/ajax/libs/qrcodejs/1.0.0/qrcode.min.js",
    "https://fonts.googleapis.com/css2?family=Outfit:wght@400;500;600;700&display=swap",
]

# --- Celery ---
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

LOG_FILE = os.getenv("BODEGA_LOG_FILE", "bodega_worker.log")
