import os
import logging
from dotenv import load_dotenv

load_dotenv()

class Config:
    # Gemini Configuration
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_GENERATION_MODEL = os.getenv("GEMINI_GENERATION_MODEL", "gemini-2.0-flash-lite")
    GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.4"))
    GEMINI_MAX_OUTPUT_TOKENS = int(os.getenv("GEMINI_MAX_OUTPUT_TOKENS", "2048"))
    GEMINI_TOP_P = float(os.getenv("GEMINI_TOP_P", "0.8"))
    GEMINI_TOP_K = int(os.getenv("GEMINI_TOP_K", "40"))

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Supabase (auth + storage) Configuration
    SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
    SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY", "") or None
    STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "document_files")
    STORAGE_TIMEOUT = int(os.getenv("STORAGE_TIMEOUT", "60"))
    AUTH_CALLBACK_TIMEOUT = float(os.getenv("AUTH_CALLBACK_TIMEOUT", "120"))

    # Upload / page rendering
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(100 * 1000 * 1000)))
    DUPLICATE_SIZE_TOLERANCE = int(os.getenv("DUPLICATE_SIZE_TOLERANCE", "100"))
    PAGE_RENDER_DPI = int(os.getenv("PAGE_RENDER_DPI", "72"))
    PAGE_JPEG_QUALITY = int(os.getenv("PAGE_JPEG_QUALITY", "80"))

    # Redis Configuration
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "") or None
    REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() == "true"
    SESSION_TTL = int(os.getenv("SESSION_TTL", "86400"))  # 1 day default

    # CORS Configuration
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    CORS_ALLOW_CREDENTIALS = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    CORS_ALLOW_METHODS = ["*"] if os.getenv("CORS_ALLOW_METHODS", "*") == "*" else os.getenv("CORS_ALLOW_METHODS", "*").split(",")
    CORS_ALLOW_HEADERS = ["*"] if os.getenv("CORS_ALLOW_HEADERS", "*") == "*" else os.getenv("CORS_ALLOW_HEADERS", "*").split(",")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls):
        """Validate required configuration"""
        if not cls.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY is required")
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if not cls.SUPABASE_URL or not cls.SUPABASE_SERVICE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")
        return True

config = Config()


def configure_logging(level: str = None):
    """Configure root logging once for the service"""
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
