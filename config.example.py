import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here'
    SERVICE_ROLE_KEY = os.environ.get('SERVICE_ROLE_KEY') or 'your-service-key-here'

    # Twilio Configuration
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN')
    TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER')

    # Resend SMTP relay
    MAIL_SERVER = 'smtp.resend.com'
    MAIL_USERNAME = 'resend'
    MAIL_PASSWORD = os.environ.get('RESEND_API_KEY')

    # Gemini
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY')
