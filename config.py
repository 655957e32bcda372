import os

from starlette.config import Config
from starlette.datastructures import CommaSeparatedStrings, Secret

# If APP_CONFIG is set, use that as the path to the .env file, or default to .env
env_file = os.getenv("APP_CONFIG", ".env")
if "APP_CONFIG" in os.environ and not os.path.isfile(env_file):
    raise FileNotFoundError(f"The configuration file specified in APP_CONFIG or the default .env does not exist: {env_file}")

config = Config(env_file)

# Application Configuration
CORS_ORIGINS: CommaSeparatedStrings = config(
    "CORS_ORIGINS", cast=CommaSeparatedStrings, default=CommaSeparatedStrings(["*"])
)
DEBUG_LOG_CODES: bool = config("DEBUG_LOG_CODES", cast=bool, default=False)

# Listener Configuration
HTTP_HOST: str = config("HTTP_HOST", default="0.0.0.0")
HTTP_PORT: int = config("HTTP_PORT", cast=int, default=3000)
SMTP_HOST: str = config("SMTP_HOST", default="0.0.0.0")
SMTP_PORT: int = config("SMTP_PORT", cast=int, default=2525)
MAIL_MAX_MESSAGE_BYTES: int = config("MAIL_MAX_MESSAGE_BYTES", cast=int, default=1024 * 1024)

# Mailbox Configuration
MAIL_DOMAIN: str = config("MAIL_DOMAIN", default="please.nyc").lower()
RODNEY_MAILBOX: str = config("RODNEY_MAILBOX", default="rodney")
MAIL_SENDER_NAME: str = config("MAIL_SENDER_NAME", default="Rodney")

# Outbound relay Configuration (direct delivery when SMTP_RELAY_HOST is unset)
SMTP_RELAY_HOST: str | None = config("SMTP_RELAY_HOST", default=None)
SMTP_RELAY_PORT: int = config("SMTP_RELAY_PORT", cast=int, default=587)
SMTP_RELAY_USER: str | None = config("SMTP_RELAY_USER", default=None)
SMTP_RELAY_PASS: Secret = config("SMTP_RELAY_PASS", cast=Secret, default="")
OUTBOUND_TIMEOUT_SECONDS: float = config("OUTBOUND_TIMEOUT_SECONDS", cast=float, default=20)

# Door code Configuration
CODE_LENGTH: int = config("CODE_LENGTH", cast=int, default=9)
CODE_TTL_SECONDS: int = config("CODE_TTL_SECONDS", cast=int, default=15)

# Cron Job Configuration
EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS: float = config(
    "EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS", cast=float, default=5
)

if EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS >= CODE_TTL_SECONDS:
    raise ValueError(
        "EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS must be shorter than CODE_TTL_SECONDS "
        f"({EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS} >= {CODE_TTL_SECONDS})"
    )
