# exam_portal/config.py
import os
from datetime import timedelta
from dotenv import load_dotenv # Import dotenv

# Load environment variables from .env file (especially for local development)
load_dotenv()


def _int_env(name, default):
    value = os.environ.get(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-this-in-production-to-a-strong-secret'
    JWT_EXPIRATION_DELTA = timedelta(hours=_int_env('JWT_EXPIRATION_HOURS', 3)) # Long enough for a full exam

    # Plain SQLAlchemy URI. Ignored when INSTANCE_CONNECTION_NAME is set.
    DATABASE_URL = os.environ.get('DATABASE_URL')

    # Hosted Cloud SQL (MySQL) instance, reached through the connector
    DB_USER = os.environ.get("DB_USER") # e.g., 'exam_portal'
    DB_PASS = os.environ.get("DB_PASS")
    DB_NAME = os.environ.get("DB_NAME") # e.g., 'cbt'
    INSTANCE_CONNECTION_NAME = os.environ.get("INSTANCE_CONNECTION_NAME")

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Attempt flow timers (seconds)
    AUTOSAVE_INTERVAL_SECONDS = _int_env('AUTOSAVE_INTERVAL_SECONDS', 30)
    COUNTDOWN_TICK_SECONDS = _int_env('COUNTDOWN_TICK_SECONDS', 1)

    CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
