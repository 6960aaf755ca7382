import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ceremony.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() in ("1", "true", "yes")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# outbound mail; delivery is skipped (and logged) until SMTP credentials are set
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_STARTTLS = os.getenv("SMTP_STARTTLS", "true").lower() in ("1", "true", "yes")
SMTP_TIMEOUT = int(os.getenv("SMTP_TIMEOUT", "30"))
EMAIL_SENDER = os.getenv("EMAIL_SENDER", "noreply@example.com")
EMAIL_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Envelope Signing")

SIGNING_TOKEN_EXPIRY_HOURS = int(os.getenv("SIGNING_TOKEN_EXPIRY_HOURS", "72"))
REMINDER_INTERVAL_HOURS = int(os.getenv("REMINDER_INTERVAL_HOURS", "48"))

# sealing retry policy
SEAL_MAX_RETRIES = int(os.getenv("SEAL_MAX_RETRIES", "5"))
SEAL_RETRY_BACKOFF = int(os.getenv("SEAL_RETRY_BACKOFF", "30"))
SEAL_STALL_MINUTES = int(os.getenv("SEAL_STALL_MINUTES", "30"))

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
