import logging
import os

from dotenv import load_dotenv
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("nvq_extraction")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

DATABASE_URL        = os.getenv("DATABASE_URL", "")
DB_HOST             = os.getenv("DB_HOST", "localhost")
DB_PORT             = int(os.getenv("DB_PORT", "5432"))
DB_NAME             = os.getenv("DB_NAME", "")
DB_USER             = os.getenv("DB_USER", "")
DB_PASSWORD         = os.getenv("DB_PASSWORD")
DB_SECRET_ID        = os.getenv("DB_SECRET_ID")

# --- LLM ---
EXTRACTION_MODEL    = os.getenv("EXTRACTION_MODEL", "gemini-2.5-flash-lite")
LLM_TIMEOUT         = float(os.getenv("LLM_TIMEOUT", "90"))
LLM_RETRIES         = int(os.getenv("LLM_RETRIES", "2"))

# --- NVQ / worker ---
NVQ_PASSING_THRESHOLD   = int(os.getenv("NVQ_PASSING_THRESHOLD", "7"))
MAX_REFINEMENT_ATTEMPTS = int(os.getenv("MAX_REFINEMENT_ATTEMPTS", "2"))
EXTRACTION_MAX_ATTEMPTS = int(os.getenv("EXTRACTION_MAX_ATTEMPTS", "3"))
STUCK_JOB_MINUTES       = int(os.getenv("STUCK_JOB_MINUTES", "5"))
JOB_TIME_BUDGET_SECONDS = float(os.getenv("JOB_TIME_BUDGET_SECONDS", "240"))

CONCURRENT_INSTANCES    = int(os.getenv("CONCURRENT_INSTANCES", "4"))
POLL_INTERVAL_SECONDS   = float(os.getenv("POLL_INTERVAL_SECONDS", "1.0"))
SWEEP_INTERVAL_SECONDS  = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

# --- Context ---
RELATED_NOTES_LIMIT     = int(os.getenv("RELATED_NOTES_LIMIT", "15"))
KEYWORD_LIMIT           = int(os.getenv("KEYWORD_LIMIT", "8"))
COMMON_TAGS_LIMIT       = int(os.getenv("COMMON_TAGS_LIMIT", "20"))

# --- Producers ---
MIN_DOCUMENT_WORDS      = int(os.getenv("MIN_DOCUMENT_WORDS", "50"))
MIN_COACHING_MESSAGES   = int(os.getenv("MIN_COACHING_MESSAGES", "4"))


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def get_db_password() -> str:
    global DB_PASSWORD

    if DB_PASSWORD:
        return DB_PASSWORD

    if DB_SECRET_ID:
        creds = _build_creds()
        client = secretmanager.SecretManagerServiceClient(credentials=creds)
        name = client.secret_version_path(PROJECT_ID, DB_SECRET_ID, "latest")
        resp = client.access_secret_version(request={"name": name})
        DB_PASSWORD = resp.payload.data.decode("utf-8")
        return DB_PASSWORD

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")
