import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Environment configuration
ENV = os.getenv("STUDIO_ENV", "p").lower()
if ENV not in ["d", "p"]:
    raise ValueError("STUDIO_ENV must be either 'd' (development) or 'p' (production)")

# API Keys
# NOTE: The provider key is only validated when the provider adapter is built,
# so the catalog and materializer can be used without it.
FAL_API_KEY = os.getenv("STUDIO_FAL_API_KEY")

# Generation provider
PROVIDER_BASE_URL = os.getenv("STUDIO_PROVIDER_BASE_URL", "https://queue.fal.run")
PROVIDER_REQUEST_TIMEOUT_SECONDS = 30

# Job orchestration
POLL_INTERVAL_SECONDS = float(os.getenv("STUDIO_POLL_INTERVAL_SECONDS", "5"))
JOB_TIMEOUT_SECONDS = float(os.getenv("STUDIO_JOB_TIMEOUT_SECONDS", "600"))
POLL_MAX_RETRIES = int(os.getenv("STUDIO_POLL_MAX_RETRIES", "3"))
POLL_RETRY_BASE_DELAY_SECONDS = float(
    os.getenv("STUDIO_POLL_RETRY_BASE_DELAY_SECONDS", "1")
)
MAX_PROMPT_LENGTH = 10000

# Google Cloud Storage
GCLOUD_STB_ASSETS_NAME = "studio-p-stb-usea1-assets"

# Delivery URLs
SIGNED_URL_EXPIRY_SECONDS = int(os.getenv("STUDIO_SIGNED_URL_EXPIRY_SECONDS", "3600"))
SIGNED_URL_MIN_EXPIRY_SECONDS = 60
SIGNED_URL_MAX_EXPIRY_SECONDS = 604800  # V4 signatures are capped at 7 days
TRANSFORM_QUALITY_MIN = 20
TRANSFORM_QUALITY_MAX = 100

# Firestore
FIRESTORE_DATABASE = os.getenv("STUDIO_FIRESTORE_DATABASE", "(default)")

# Project root directory
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))

# Asset paths
ASSETS_DIR = os.path.join(PROJECT_ROOT, "studio", "assets")
CATALOG_PATH = os.getenv("STUDIO_CATALOG_PATH", os.path.join(ASSETS_DIR, "models.json"))
