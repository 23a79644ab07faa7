import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

CURRENCY = os.getenv("CURRENCY", "usd")

# Bounds for the amount+timestamp fallback search over gateway history
HEURISTIC_MATCH_WINDOW_SECONDS = int(os.getenv("HEURISTIC_MATCH_WINDOW_SECONDS", "3600"))
GATEWAY_SEARCH_LIMIT = int(os.getenv("GATEWAY_SEARCH_LIMIT", "500"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
