"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    DATABASE_URL        : MongoDB connection string (database disabled when unset)
    DATABASE_NAME       : Database name (default: bugtracker)
    MONGO_TRANSACTIONS  : Wrap multi-document writes in a transaction (default: true).
                           Transactions need a replica set; turn off for a standalone mongod.
    JWT_SECRET          : Signing key for session tokens
    JWT_EXPIRE_DAYS     : Session token lifetime in days (default: 30)
    GOOGLE_CLIENT_ID    : Expected audience of Google ID tokens
    GOOGLE_CERTS_URL    : JWKS endpoint holding Google's signing keys
    ENVIRONMENT         : "development" exposes exception text in 500 responses
    CORS_ORIGINS        : Comma separated list of allowed origins (default: *)
    LOG_LEVEL / LOG_TO_FILE / LOG_DIR: see logging_config.setup_logging

Points:
    POINTS_BUG_REPORTED, POINTS_BUG_RESOLVED and POINTS_COMMENT are the amounts
    awarded automatically by the bug lifecycle. MAX_AWARD_POINTS caps a single
    manual award.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bugtracker")
MONGO_TRANSACTIONS = _flag("MONGO_TRANSACTIONS", "true")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 30))

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CERTS_URL = os.getenv("GOOGLE_CERTS_URL", "https://www.googleapis.com/oauth2/v3/certs")
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")

ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_TO_FILE = _flag("LOG_TO_FILE", "true")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Automatic awards
POINTS_BUG_REPORTED = int(os.getenv("POINTS_BUG_REPORTED", 10))
POINTS_BUG_RESOLVED = int(os.getenv("POINTS_BUG_RESOLVED", 25))
POINTS_COMMENT = int(os.getenv("POINTS_COMMENT", 5))

# Manual award ceiling
MAX_AWARD_POINTS = int(os.getenv("MAX_AWARD_POINTS", 1000))

PORT = int(os.getenv("PORT", 8000))


def is_development() -> bool:
    return ENVIRONMENT.lower() == "development"
