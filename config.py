"""
Runtime settings, read from the environment.

Everything has a default so the API runs locally against the in-memory store
without any configuration.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "restaurants")

# "mongo" or "memory"
DOCUMENT_STORE = os.getenv("DOCUMENT_STORE", "mongo" if DATABASE_URL else "memory")

MAX_RATING = float(os.getenv("MAX_RATING", 5.0))
QUERY_LIMIT = int(os.getenv("QUERY_LIMIT", 50))

TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", 5))
TRANSACTION_BACKOFF_SECONDS = float(os.getenv("TRANSACTION_BACKOFF_SECONDS", 0.05))

PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
