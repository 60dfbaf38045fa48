import os
import tempfile

from dotenv import load_dotenv

load_dotenv()  # Load variables from .env file


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_PATH = os.getenv("DATABASE_PATH", "events.db")

# JWT configuration
SECRET_KEY = os.getenv("SECRET_KEY", "default-secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

# Mail
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")
SMTP_TIMEOUT = int(os.getenv("SMTP_TIMEOUT", "10"))
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@example.com")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "CEMS Events")
# Build messages but never open a connection to the relay
MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND", "false")

# Tickets are written here, sent, then deleted
TICKET_DIR = os.getenv("TICKET_DIR", os.path.join(tempfile.gettempdir(), "cems-tickets"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

# Mock gateway that accepts a client-declared payment status
PAYMENT_SIMULATION = _flag("PAYMENT_SIMULATION", "true")
