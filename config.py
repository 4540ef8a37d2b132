"""
Configuration classes for the Lead Velocity backend
Loads settings from environment variables
"""

import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        raise RuntimeError("SECRET_KEY environment variable must be set")

    APP_ENV = os.environ.get('APP_ENV', 'production')
    DEBUG = os.environ.get('FLASK_ENV') == 'development' or os.environ.get('FLASK_DEBUG') == '1'

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or 'leadvelocity.db'

    # Bootstrap admin credentials
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL') or 'admin@leadvelocity.co.za'
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD') or 'changeme123'

    # Internal service identity used by cron jobs and function-to-function calls
    SERVICE_ROLE_KEY = os.environ.get('SERVICE_ROLE_KEY')
    API_TOKEN_TTL_HOURS = int(os.environ.get('API_TOKEN_TTL_HOURS', '24'))

    # Public URLs
    PUBLIC_BASE_URL = os.environ.get('PUBLIC_BASE_URL', 'http://localhost:5000').rstrip('/')
    PORTAL_URL = os.environ.get('PORTAL_URL', 'https://www.leadvelocity.co.za').rstrip('/')
    ADMIN_NOTIFICATION_EMAIL = os.environ.get('ADMIN_NOTIFICATION_EMAIL', 'howzit@leadvelocity.co.za')

    # Request limits
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(2 * 1024 * 1024)))
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # Mail configuration (Resend SMTP relay by default)
    MAIL_ENABLED = os.environ.get('MAIL_ENABLED', '0') == '1'
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.resend.com')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '587'))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', '1') == '1'
    MAIL_USE_SSL = os.environ.get('MAIL_USE_SSL', '0') == '1'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME', 'resend')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'Lead Velocity <howzit@leadvelocity.co.za>')
    MAIL_MAX_RETRIES = int(os.environ.get('MAIL_MAX_RETRIES', '3'))

    # Twilio
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN')
    TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER')
    TWILIO_VALIDATE_SIGNATURES = os.environ.get('TWILIO_VALIDATE_SIGNATURES', '0') == '1'
    TWILIO_VOICE = os.environ.get('TWILIO_VOICE', 'Polly.Ayanda')
    TWILIO_VOICE_LANGUAGE = os.environ.get('TWILIO_VOICE_LANGUAGE', 'en-ZA')

    # Generative AI
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY')
    GEMINI_API_BASE = os.environ.get('GEMINI_API_BASE', 'https://generativelanguage.googleapis.com/v1beta')
    GEMINI_TEXT_MODEL = os.environ.get('GEMINI_TEXT_MODEL', 'gemini-1.5-flash')
    GEMINI_LEGAL_MODEL = os.environ.get('GEMINI_LEGAL_MODEL', 'gemini-1.5-pro')
    GEMINI_AUDIO_MODEL = os.environ.get('GEMINI_AUDIO_MODEL', 'gemini-2.5-flash')
    AI_REQUEST_TIMEOUT = int(os.environ.get('AI_REQUEST_TIMEOUT', '60'))

    # Monitoring / logging
    SENTRY_DSN = os.environ.get('SENTRY_DSN')
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE', '0.1'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR', 'logs')
