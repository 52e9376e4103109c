import os
from decimal import Decimal


DATABASE_URL = os.getenv("STOCKLEDGER_DATABASE_URL", "sqlite:///./stockledger.db")

SECRET_KEY = os.getenv("STOCKLEDGER_SECRET_KEY", "stockledger-dev-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("STOCKLEDGER_TOKEN_EXPIRE_MINUTES", str(60 * 12)))

# Operators may only roll back their own production logs inside this window.
OPERATOR_ROLLBACK_WINDOW_MINUTES = int(os.getenv("STOCKLEDGER_ROLLBACK_WINDOW_MINUTES", "5"))

AUDIT_EPSILON = Decimal(os.getenv("STOCKLEDGER_AUDIT_EPSILON", "0.000001"))

LOG_LEVEL = os.getenv("STOCKLEDGER_LOG_LEVEL", "INFO")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("STOCKLEDGER_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
