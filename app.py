"""
Lead Velocity - Flask Application
Serverless-style JSON functions for broker onboarding, client communications,
AI calls, notifications and scheduled reporting
"""

import os
import re
import json
import hmac
import uuid
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from time import perf_counter
import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
from flask_login import LoginManager, UserMixin, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.exceptions import HTTPException
import sqlite3
import bleach
from email.utils import parseaddr

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

from config import Config
from pdf_generator import generate_broker_snapshot_pdf, generate_communication_report_pdf
from scoring import InvalidOnboardingAnswer, OnboardingAnswers, calculate_scores
from services import ai_service, call_service, messaging_service
from services.ai_service import AIServiceError
from services.delivery import DeliveryResult
from services.email_service import (
    init_mail,
    send_ai_call_notification_email,
    send_appointment_reminder_email,
    send_appointment_update_email,
    send_communication_email,
    send_document_notification_email,
    send_message_notification_email,
    send_referral_notification_email,
    send_referral_success_email,
    send_referral_welcome_email,
    send_scheduled_report_email,
    send_sla_alert_email,
)
from services.onboarding_service import build_explanation_prompt, fallback_explanation, response_columns
from services.report_service import (
    REPORT_SECTIONS,
    calculate_analytics,
    format_date_range,
    format_duration,
    next_run_after,
    window_start,
)

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)

CORS_ALLOWED_HEADERS = ['authorization', 'x-client-info', 'apikey', 'content-type']
CORS(app, resources={r'/functions/*': {'origins': '*', 'allow_headers': CORS_ALLOWED_HEADERS}})

# Public endpoints carry explicit limits; webhooks and cron calls are not limited
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://'),
    strategy='fixed-window',
)
limiter.init_app(app)


@limiter.request_filter
def _rate_limit_exempt_for_tests():
    return app.config.get('TESTING', False)


# Initialize email service
init_mail(app)

os.makedirs(app.config.get('LOG_DIR', 'logs'), exist_ok=True)
_file_handler = RotatingFileHandler(
    os.path.join(app.config.get('LOG_DIR', 'logs'), 'app.log'),
    maxBytes=5 * 1024 * 1024,
    backupCount=5,
)
_file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
    app.logger.addHandler(_file_handler)

# service modules log under "services.*"
_services_logger = logging.getLogger('services')
_services_logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if not any(isinstance(h, RotatingFileHandler) for h in _services_logger.handlers):
    _services_logger.addHandler(_file_handler)

if app.config.get('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=app.config.get('SENTRY_DSN'),
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
    )

EMAIL_REGEX = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
CHANNELS = ('email', 'sms', 'whatsapp', 'call')
BULK_CHANNELS = ('email', 'sms', 'whatsapp')
RECIPIENT_TYPES = ('lead', 'referral', 'broker')
MAX_BULK_RECIPIENTS = 100
MAX_TEMPLATE_LENGTH = 5000
MAX_SUBJECT_LENGTH = 200
MAX_NOTIFICATION_PREVIEW = 200
DEFAULT_REMINDER_HOURS = 24

DEFAULT_SLA_THRESHOLDS = {
    # channel: (warning_seconds, critical_seconds)
    'email': (3600, 14400),
    'sms': (1800, 7200),
    'whatsapp': (1800, 7200),
    'call': (900, 3600),
}

EMAIL_BODY_TAGS = [
    'a', 'b', 'blockquote', 'br', 'div', 'em', 'h1', 'h2', 'h3', 'hr', 'i',
    'li', 'ol', 'p', 'span', 'strong', 'table', 'tbody', 'td', 'th', 'thead', 'tr', 'u', 'ul',
]
EMAIL_BODY_ATTRIBUTES = {'a': ['href', 'title']}

REFERRAL_SERVICES = {
    'estate_planning': (
        'Estate Planning Professional',
        'who specializes in Wills, Trusts, and ensuring your legacy is protected for your loved ones.',
    ),
    'financial_advice': (
        'Professional Financial Advisor',
        'who specializes in wealth management, investments, and long-term financial planning.',
    ),
}

REQUEST_METRICS = {
    'requests_total': 0,
    'errors_total': 0,
    'latency_ms_total': 0.0,
}


@app.before_request
def _metrics_before_request():
    request._start_ts = perf_counter()


@app.after_request
def _metrics_after_request(response):
    started = getattr(request, '_start_ts', None)
    if started is not None:
        REQUEST_METRICS['requests_total'] += 1
        elapsed = (perf_counter() - started) * 1000.0
        REQUEST_METRICS['latency_ms_total'] += elapsed
        if response.status_code >= 400:
            REQUEST_METRICS['errors_total'] += 1
    return response


# ===== DATABASE =====


def db_connect():
    conn = sqlite3.connect(app.config['DATABASE_PATH'])
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def new_id():
    return str(uuid.uuid4())


def utc_now():
    return datetime.now(timezone.utc)


def now_iso():
    return utc_now().isoformat()


def parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dumps(value):
    return None if value is None else json.dumps(value)


def _loads(value, fallback=None):
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def row_to_dict(row):
    return dict(row) if row is not None else None


def insert_row(conn, table, values):
    columns = ', '.join(values)
    placeholders = ', '.join('?' for _ in values)
    conn.execute(f'INSERT INTO {table} ({columns}) VALUES ({placeholders})', tuple(values.values()))


def update_row(conn, table, row_id, values):
    assignments = ', '.join(f'{column} = ?' for column in values)
    conn.execute(f'UPDATE {table} SET {assignments} WHERE id = ?', (*values.values(), row_id))


def init_db():
    """Create every table the functions use and bootstrap the admin account."""
    conn = db_connect()
    c = conn.cursor()

    c.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            full_name TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_roles (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            role TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, role)
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS api_tokens (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            token_hash TEXT UNIQUE NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            last_used_at TEXT
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS brokers (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            firm_name TEXT NOT NULL,
            contact_person TEXT,
            email TEXT,
            phone_number TEXT,
            status TEXT NOT NULL DEFAULT 'Active',
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS leads (
            id TEXT PRIMARY KEY,
            broker_id TEXT REFERENCES brokers(id) ON DELETE SET NULL,
            first_name TEXT,
            last_name TEXT,
            email TEXT,
            phone TEXT,
            status TEXT NOT NULL DEFAULT 'New',
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS referrals (
            id TEXT PRIMARY KEY,
            parent_lead_id TEXT REFERENCES leads(id) ON DELETE CASCADE,
            first_name TEXT NOT NULL,
            phone_number TEXT,
            email TEXT,
            will_status TEXT,
            status TEXT NOT NULL DEFAULT 'New',
            broker_appointment_scheduled INTEGER NOT NULL DEFAULT 0,
            appointment_date TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS communications (
            id TEXT PRIMARY KEY,
            channel TEXT NOT NULL,
            direction TEXT NOT NULL,
            sender_id TEXT,
            sender_type TEXT,
            recipient_type TEXT,
            recipient_id TEXT,
            recipient_contact TEXT,
            subject TEXT,
            content TEXT,
            lead_id TEXT,
            referral_id TEXT,
            broker_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            external_id TEXT,
            response_time_seconds INTEGER,
            responded_to_id TEXT,
            call_duration INTEGER,
            call_recording_url TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
    ''')
    c.execute('CREATE INDEX IF NOT EXISTS idx_communications_external_id ON communications(external_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_communications_created_at ON communications(created_at)')

    c.execute('''
        CREATE TABLE IF NOT EXISTS sla_thresholds (
            id TEXT PRIMARY KEY,
            channel TEXT UNIQUE NOT NULL,
            warning_seconds INTEGER NOT NULL,
            critical_seconds INTEGER NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS sla_alerts (
            id TEXT PRIMARY KEY,
            communication_id TEXT,
            channel TEXT NOT NULL,
            severity TEXT NOT NULL,
            response_time_seconds INTEGER NOT NULL,
            threshold_seconds INTEGER NOT NULL,
            recipient_type TEXT,
            recipient_id TEXT,
            acknowledged INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS ai_call_requests (
            id TEXT PRIMARY KEY,
            recipient_type TEXT NOT NULL,
            recipient_id TEXT,
            recipient_name TEXT,
            recipient_phone TEXT NOT NULL,
            call_purpose TEXT NOT NULL,
            call_purpose_details TEXT,
            requested_by TEXT,
            call_status TEXT NOT NULL DEFAULT 'pending',
            call_sid TEXT,
            call_duration INTEGER,
            call_recording_url TEXT,
            call_summary TEXT,
            proposed_changes TEXT,
            changes_approved INTEGER,
            admin_notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS notification_preferences (
            id TEXT PRIMARY KEY,
            user_id TEXT UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            ai_call_email INTEGER NOT NULL DEFAULT 1,
            ai_call_in_app INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS scheduled_reports (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            report_type TEXT NOT NULL DEFAULT 'admin_summary',
            frequency TEXT NOT NULL,
            recipient_type TEXT NOT NULL,
            recipient_ids TEXT,
            broker_id TEXT,
            include_sections TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_sent_at TEXT,
            next_scheduled_at TEXT,
            created_by TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS report_history (
            id TEXT PRIMARY KEY,
            scheduled_report_id TEXT REFERENCES scheduled_reports(id) ON DELETE CASCADE,
            sent_at TEXT NOT NULL,
            recipients TEXT,
            status TEXT NOT NULL,
            report_data TEXT,
            error_message TEXT
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS broker_onboarding_responses (
            id TEXT PRIMARY KEY,
            full_name TEXT NOT NULL,
            email TEXT NOT NULL,
            phone TEXT NOT NULL,
            company_name TEXT,
            crm_usage TEXT NOT NULL,
            speed_to_contact TEXT NOT NULL,
            team_size TEXT NOT NULL,
            follow_up_process TEXT NOT NULL,
            monthly_lead_spend TEXT NOT NULL,
            cpl_awareness TEXT NOT NULL,
            pricing_comfort TEXT NOT NULL,
            desired_leads_weekly INTEGER NOT NULL,
            max_capacity_weekly INTEGER NOT NULL,
            product_focus_clarity TEXT NOT NULL,
            geographic_focus_clarity TEXT NOT NULL,
            growth_goal_clarity TEXT NOT NULL,
            timeline_to_start TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS broker_analysis (
            id TEXT PRIMARY KEY,
            response_id TEXT NOT NULL REFERENCES broker_onboarding_responses(id) ON DELETE CASCADE,
            operational_score INTEGER NOT NULL,
            budget_score INTEGER NOT NULL,
            growth_score INTEGER NOT NULL,
            intent_score INTEGER NOT NULL,
            success_probability INTEGER NOT NULL,
            success_band TEXT NOT NULL,
            risk_flags TEXT NOT NULL,
            primary_sales_angle TEXT NOT NULL,
            ai_explanation TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    for channel, (warning, critical) in DEFAULT_SLA_THRESHOLDS.items():
        c.execute(
            'INSERT OR IGNORE INTO sla_thresholds (id, channel, warning_seconds, critical_seconds, enabled, updated_at) '
            'VALUES (?, ?, ?, ?, 1, ?)',
            (new_id(), channel, warning, critical, now_iso()),
        )

    # Bootstrap the admin account on first run
    admin_email = app.config['ADMIN_EMAIL'].lower()
    c.execute('SELECT id FROM users WHERE email = ?', (admin_email,))
    admin = c.fetchone()
    if not admin:
        admin_id = new_id()
        c.execute(
            'INSERT INTO users (id, email, password_hash, full_name, created_at) VALUES (?, ?, ?, ?, ?)',
            (admin_id, admin_email, generate_password_hash(app.config['ADMIN_PASSWORD']), 'Administrator', now_iso()),
        )
        c.execute(
            'INSERT INTO user_roles (id, user_id, role, created_at) VALUES (?, ?, ?, ?)',
            (new_id(), admin_id, 'admin', now_iso()),
        )
        app.logger.info('Bootstrapped admin account %s', admin_email)

    conn.commit()
    conn.close()


# ===== AUTH =====


class User(UserMixin):
    def __init__(self, id, email, full_name=None, roles=(), is_service=False):
        self.id = id
        self.email = email
        self.full_name = full_name
        self.roles = set(roles)
        self.is_service = is_service

    @property
    def is_admin(self):
        return self.is_service or 'admin' in self.roles


SERVICE_USER_ID = 'service-role'


def hash_token(token):
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def issue_api_token(conn, user_id, ttl_hours=None):
    """Create a bearer token for a user; only its hash is stored."""
    token = secrets.token_urlsafe(32)
    ttl = ttl_hours or app.config.get('API_TOKEN_TTL_HOURS', 24)
    expires_at = (utc_now() + timedelta(hours=ttl)).isoformat()
    insert_row(conn, 'api_tokens', {
        'id': new_id(),
        'user_id': user_id,
        'token_hash': hash_token(token),
        'created_at': now_iso(),
        'expires_at': expires_at,
    })
    return token, expires_at


def load_user_by_id(conn, user_id):
    c = conn.cursor()
    c.execute('SELECT id, email, full_name FROM users WHERE id = ?', (user_id,))
    user_row = c.fetchone()
    if not user_row:
        return None
    c.execute('SELECT role FROM user_roles WHERE user_id = ?', (user_id,))
    roles = [r['role'] for r in c.fetchall()]
    return User(id=user_row['id'], email=user_row['email'], full_name=user_row['full_name'], roles=roles)


login_manager = LoginManager()
login_manager.session_protection = None


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    token = header[len('Bearer '):].strip()
    if not token:
        return None

    service_key = app.config.get('SERVICE_ROLE_KEY')
    if service_key and hmac.compare_digest(token, service_key):
        return User(id=SERVICE_USER_ID, email=None, full_name='Service', is_service=True)

    conn = db_connect()
    try:
        c = conn.cursor()
        c.execute('SELECT id, user_id, expires_at FROM api_tokens WHERE token_hash = ?', (hash_token(token),))
        token_row = c.fetchone()
        if not token_row or parse_timestamp(token_row['expires_at']) <= utc_now():
            return None
        c.execute('UPDATE api_tokens SET last_used_at = ? WHERE id = ?', (now_iso(), token_row['id']))
        conn.commit()
        return load_user_by_id(conn, token_row['user_id'])
    finally:
        conn.close()


@login_manager.unauthorized_handler
def unauthorized():
    return error_response('Invalid token', 401)


login_manager.init_app(app)


def function_auth(allow_service=False, admin_only=False):
    """Require a bearer token. Service-key callers pass only when allow_service is set."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not request.headers.get('Authorization'):
                return error_response('No authorization header', 401)
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if getattr(current_user, 'is_service', False) and not allow_service:
                return login_manager.unauthorized()
            if admin_only and not current_user.is_admin:
                return error_response('Admin access required', 403)
            return view(*args, **kwargs)
        return wrapped
    return decorator


def twilio_webhook(view):
    """Reject Twilio webhooks whose signature does not match when validation is enabled."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        signature = request.headers.get('X-Twilio-Signature')
        if not messaging_service.is_valid_webhook(request.url, request.form.to_dict(), signature):
            app.logger.warning('Rejected Twilio webhook with bad signature: %s', request.path)
            return 'Forbidden', 403
        return view(*args, **kwargs)
    return wrapped


# ===== REQUEST HELPERS =====


def error_response(message, status):
    return jsonify({'error': message}), status


def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def is_valid_email(email):
    if not email or not isinstance(email, str):
        return False
    _, parsed = parseaddr(email)
    return bool(parsed and EMAIL_REGEX.match(parsed) and len(parsed) <= 254)


def function_url(name, **params):
    url = f"{app.config['PUBLIC_BASE_URL']}/functions/v1/{name}"
    if params:
        url += '?' + '&'.join(f'{key}={value}' for key, value in params.items())
    return url


def admin_emails(conn):
    c = conn.cursor()
    c.execute('''
        SELECT u.id, u.email
        FROM users u
        INNER JOIN user_roles r ON r.user_id = u.id
        WHERE r.role = 'admin'
        ORDER BY u.created_at
    ''')
    return [(row['id'], row['email']) for row in c.fetchall() if row['email']]


def full_name(first_name, last_name, default=''):
    return f"{first_name or ''} {last_name or ''}".strip() or default


# ===== COMMUNICATIONS =====


def deliver(channel, contact, content, subject=None):
    if channel == 'email':
        return send_communication_email(contact, subject or 'Message from Lead Velocity', content)
    if channel == 'sms':
        return messaging_service.send_sms(contact, content)
    if channel == 'whatsapp':
        return messaging_service.send_whatsapp(contact, content)
    if channel == 'call':
        # browser calls are only logged
        return DeliveryResult(success=True)
    return DeliveryResult(success=False, error='Invalid channel')


def find_unanswered_inbound(conn, recipient_type, lead_id=None, referral_id=None, broker_id=None):
    """Latest inbound message from the same party that has not been answered yet."""
    query = '''
        SELECT id, created_at, metadata
        FROM communications
        WHERE direction = 'inbound' AND recipient_type = ? AND responded_to_id IS NULL
    '''
    params = [recipient_type]
    if lead_id:
        query += ' AND lead_id = ?'
        params.append(lead_id)
    elif referral_id:
        query += ' AND referral_id = ?'
        params.append(referral_id)
    elif broker_id:
        query += ' AND broker_id = ?'
        params.append(broker_id)
    query += ' ORDER BY created_at DESC'

    for row in conn.execute(query, params).fetchall():
        if not _loads(row['metadata'], {}).get('responded_at'):
            return row
    return None


def sla_severity(response_time_seconds, threshold):
    """Return (severity, threshold_seconds) for a response time, or (None, 0)."""
    if response_time_seconds >= threshold['critical_seconds']:
        return 'critical', threshold['critical_seconds']
    if response_time_seconds >= threshold['warning_seconds']:
        return 'warning', threshold['warning_seconds']
    return None, 0


def raise_sla_alert(conn, payload):
    """Record an SLA breach and email the admins. Returns the alert id."""
    alert_id = new_id()
    insert_row(conn, 'sla_alerts', {
        'id': alert_id,
        'communication_id': payload.get('communication_id'),
        'channel': payload['channel'],
        'severity': payload['severity'],
        'response_time_seconds': int(payload['response_time_seconds']),
        'threshold_seconds': int(payload['threshold_seconds']),
        'recipient_type': payload.get('recipient_type'),
        'recipient_id': payload.get('recipient_id'),
        'created_at': now_iso(),
    })
    conn.commit()
    app.logger.info('SLA alert created id=%s severity=%s channel=%s', alert_id, payload['severity'], payload['channel'])

    emails = [email for _, email in admin_emails(conn)]
    if not emails:
        app.logger.info('No admins to notify for SLA alert %s', alert_id)
        return alert_id

    alert = dict(payload)
    alert['response_time_display'] = format_duration(payload['response_time_seconds'])
    alert['threshold_display'] = format_duration(payload['threshold_seconds'])
    alert['severity_color'] = '#dc2626' if payload['severity'] == 'critical' else '#f59e0b'
    result = send_sla_alert_email(emails, alert)
    if not result.success:
        app.logger.error('SLA alert email failed for %s: %s', alert_id, result.error)
    return alert_id


def check_sla(conn, channel, response_time_seconds, communication_id, recipient_type, recipient_id):
    threshold = conn.execute(
        'SELECT * FROM sla_thresholds WHERE channel = ? AND enabled = 1', (channel,)
    ).fetchone()
    if not threshold:
        return None
    severity, threshold_seconds = sla_severity(response_time_seconds, threshold)
    if not severity:
        return None
    app.logger.info('SLA %s alert triggered for %s', severity, channel)
    return raise_sla_alert(conn, {
        'communication_id': communication_id,
        'channel': channel,
        'severity': severity,
        'response_time_seconds': response_time_seconds,
        'threshold_seconds': threshold_seconds,
        'recipient_type': recipient_type,
        'recipient_id': recipient_id,
    })


@app.route('/functions/v1/send-communication', methods=['POST'])
@function_auth()
def send_communication():
    payload = json_body()
    channel = payload.get('channel')
    recipient_contact = payload.get('recipient_contact')
    recipient_type = payload.get('recipient_type')
    if channel not in CHANNELS:
        return error_response('Invalid channel. Must be email, sms, whatsapp, or call', 400)
    if not recipient_contact:
        return error_response('recipient_contact is required', 400)
    if recipient_type not in RECIPIENT_TYPES:
        return error_response('Invalid recipient_type. Must be lead, referral, or broker', 400)

    content = payload.get('content') or ''
    subject = payload.get('subject')
    lead_id = payload.get('lead_id')
    referral_id = payload.get('referral_id')
    broker_id = payload.get('broker_id')

    conn = db_connect()
    try:
        response_time_seconds = None
        responded_to_id = None
        last_inbound = find_unanswered_inbound(conn, recipient_type, lead_id, referral_id, broker_id)
        if last_inbound:
            elapsed = utc_now() - parse_timestamp(last_inbound['created_at'])
            response_time_seconds = int(elapsed.total_seconds())
            responded_to_id = last_inbound['id']

        if channel == 'email':
            content = bleach.clean(content, tags=EMAIL_BODY_TAGS, attributes=EMAIL_BODY_ATTRIBUTES, strip=True)
        result = deliver(channel, recipient_contact, content, subject)

        comm_id = new_id()
        insert_row(conn, 'communications', {
            'id': comm_id,
            'channel': channel,
            'direction': 'outbound',
            'sender_id': current_user.id,
            'sender_type': 'admin',
            'recipient_type': recipient_type,
            'recipient_contact': recipient_contact,
            'content': content,
            'subject': subject,
            'lead_id': lead_id,
            'referral_id': referral_id,
            'broker_id': broker_id,
            'status': 'sent' if result.success else 'failed',
            'external_id': result.external_id,
            'response_time_seconds': response_time_seconds,
            'responded_to_id': responded_to_id,
            'created_at': now_iso(),
        })

        if responded_to_id:
            metadata = _loads(last_inbound['metadata'], {})
            metadata.update({'responded_at': now_iso(), 'response_comm_id': comm_id})
            update_row(conn, 'communications', responded_to_id, {'metadata': _dumps(metadata), 'updated_at': now_iso()})
        conn.commit()

        app.logger.info('Communication %s via %s sent=%s response_time=%s', comm_id, channel, result.success, response_time_seconds)

        if response_time_seconds and response_time_seconds > 0:
            try:
                check_sla(conn, channel, response_time_seconds, comm_id, recipient_type, lead_id or referral_id or broker_id)
            except sqlite3.Error:
                app.logger.exception('Error checking SLA thresholds for %s', comm_id)
    finally:
        conn.close()

    body = result.to_dict()
    body['communication_id'] = comm_id
    return jsonify(body), 200 if result.success else 500


def validate_bulk_payload(payload):
    """Return an error message for an invalid bulk request, or None."""
    channel = payload.get('channel')
    if channel not in BULK_CHANNELS:
        return 'Invalid channel. Must be email, sms, or whatsapp'
    recipients = payload.get('recipients')
    if not isinstance(recipients, list) or not recipients:
        return 'Recipients array is required and must not be empty'
    if len(recipients) > MAX_BULK_RECIPIENTS:
        return f'Maximum {MAX_BULK_RECIPIENTS} recipients allowed per batch'
    template = payload.get('message_template')
    if not template or not isinstance(template, str):
        return 'Message template is required'
    if len(template) > MAX_TEMPLATE_LENGTH:
        return f'Message template must be less than {MAX_TEMPLATE_LENGTH} characters'
    subject = payload.get('subject')
    if channel == 'email' and (not subject or len(subject) > MAX_SUBJECT_LENGTH):
        return f'Email subject is required and must be less than {MAX_SUBJECT_LENGTH} characters'

    for recipient in recipients:
        if not isinstance(recipient, dict) or not recipient.get('id') or not isinstance(recipient.get('id'), str):
            return 'Each recipient must have a valid id'
        if channel == 'email' and not is_valid_email(recipient.get('email')):
            return f"Invalid email for recipient {recipient['id']}"
        if channel in ('sms', 'whatsapp') and not recipient.get('phone'):
            return f"Phone number required for recipient {recipient['id']}"
    return None


def personalize_message(template, recipient):
    first_name = recipient.get('first_name') or ''
    last_name = recipient.get('last_name') or ''
    values = {
        'first_name': first_name,
        'last_name': last_name,
        'name': full_name(first_name, last_name, 'Valued Customer'),
        'email': recipient.get('email') or '',
        'phone': recipient.get('phone') or '',
    }
    return re.sub(
        r'\{(first_name|last_name|name|email|phone)\}',
        lambda m: values[m.group(1).lower()],
        template,
        flags=re.IGNORECASE,
    )


def bulk_email_html(message):
    escaped = bleach.clean(message, tags=[], strip=False)
    return escaped.replace('\n', '<br>')


@app.route('/functions/v1/send-bulk-communication', methods=['POST'])
@function_auth()
def send_bulk_communication():
    payload = json_body()
    error = validate_bulk_payload(payload)
    if error:
        return error_response(error, 400)

    channel = payload['channel']
    recipients = payload['recipients']
    subject = payload.get('subject')
    recipient_type = payload.get('recipient_type') or 'lead'

    results = []
    sent = failed = 0
    conn = db_connect()
    try:
        for recipient in recipients:
            message = personalize_message(payload['message_template'], recipient)
            contact = recipient.get('email') if channel == 'email' else recipient.get('phone')
            if channel == 'email':
                result = send_communication_email(contact, subject, bulk_email_html(message))
            else:
                result = deliver(channel, contact, message)

            insert_row(conn, 'communications', {
                'id': new_id(),
                'channel': channel,
                'direction': 'outbound',
                'sender_id': current_user.id,
                'sender_type': 'admin',
                'recipient_type': recipient_type,
                'recipient_id': recipient['id'],
                'recipient_contact': contact,
                'content': message,
                'subject': subject if channel == 'email' else None,
                'lead_id': recipient['id'] if recipient_type == 'lead' else None,
                'status': 'sent' if result.success else 'failed',
                'external_id': result.external_id,
                'metadata': _dumps({'bulk_send': True, 'template_used': True}),
                'created_at': now_iso(),
            })

            if result.success:
                sent += 1
                results.append({'recipient_id': recipient['id'], 'success': True})
            else:
                failed += 1
                results.append({'recipient_id': recipient['id'], 'success': False, 'error': result.error})
        conn.commit()
    finally:
        conn.close()

    app.logger.info('Bulk communication completed: %s sent, %s failed', sent, failed)
    return jsonify({
        'success': failed == 0,
        'total': len(recipients),
        'sent': sent,
        'failed': failed,
        'results': results,
    }), 200


@app.route('/functions/v1/send-sla-alert', methods=['POST'])
@function_auth(allow_service=True)
def send_sla_alert():
    payload = json_body()
    missing = [key for key in ('channel', 'severity', 'response_time_seconds', 'threshold_seconds') if payload.get(key) is None]
    if missing:
        return error_response(f"Missing required fields: {', '.join(missing)}", 400)
    if payload['severity'] not in ('warning', 'critical'):
        return error_response('Severity must be warning or critical', 400)

    conn = db_connect()
    try:
        alert_id = raise_sla_alert(conn, payload)
    finally:
        conn.close()
    return jsonify({'success': True, 'alert_id': alert_id}), 200


# ===== AI CALLS =====


@app.route('/functions/v1/initiate-ai-call', methods=['POST'])
@function_auth()
def initiate_ai_call():
    payload = json_body()
    recipient_type = payload.get('recipient_type')
    recipient_phone = payload.get('recipient_phone')
    call_purpose = payload.get('call_purpose')
    if recipient_type not in RECIPIENT_TYPES or not recipient_phone or not call_purpose:
        return error_response('recipient_type, recipient_phone and call_purpose are required', 400)

    if not messaging_service.twilio_configured():
        return error_response(messaging_service.NOT_CONFIGURED, 500)

    recipient_id = payload.get('recipient_id')
    recipient_name = payload.get('recipient_name')
    details = payload.get('call_purpose_details')

    conn = db_connect()
    try:
        call_request_id = new_id()
        insert_row(conn, 'ai_call_requests', {
            'id': call_request_id,
            'recipient_type': recipient_type,
            'recipient_id': recipient_id,
            'recipient_name': recipient_name,
            'recipient_phone': recipient_phone,
            'call_purpose': call_purpose,
            'call_purpose_details': details,
            'requested_by': current_user.id,
            'call_status': 'pending',
            'created_at': now_iso(),
        })
        conn.commit()

        referral_reason = referrer_name = ''
        if recipient_type == 'referral' and recipient_id:
            referral = conn.execute('''
                SELECT r.will_status, l.first_name AS lead_first_name, l.last_name AS lead_last_name
                FROM referrals r
                LEFT JOIN leads l ON l.id = r.parent_lead_id
                WHERE r.id = ?
            ''', (recipient_id,)).fetchone()
            if referral:
                referral_reason = call_service.referral_reason_label(referral['will_status'])
                referrer_name = full_name(referral['lead_first_name'], referral['lead_last_name'])

        script = call_service.build_call_script(
            call_purpose,
            recipient_name,
            call_service.broker_name_from_details(details),
            recipient_type=recipient_type,
            referral_reason=referral_reason,
            referrer_name=referrer_name,
        )
        twiml = call_service.build_outbound_twiml(
            script,
            function_url('handle-ai-call-recording', callRequestId=call_request_id),
            function_url('handle-ai-call-transcription', callRequestId=call_request_id),
            voice=app.config['TWILIO_VOICE'],
            language=app.config['TWILIO_VOICE_LANGUAGE'],
        )
        result = messaging_service.place_call(
            recipient_phone,
            twiml,
            function_url('handle-ai-call-status', callRequestId=call_request_id),
        )

        if not result.success:
            update_row(conn, 'ai_call_requests', call_request_id, {
                'call_status': 'failed',
                'admin_notes': result.error,
                'updated_at': now_iso(),
            })
            conn.commit()
            return error_response(result.error, 500)

        update_row(conn, 'ai_call_requests', call_request_id, {
            'call_sid': result.external_id,
            'call_status': 'in_progress',
            'updated_at': now_iso(),
        })
        conn.commit()
    finally:
        conn.close()

    return jsonify({
        'success': True,
        'call_request_id': call_request_id,
        'call_sid': result.external_id,
        'message': 'AI call initiated successfully',
    }), 200


@app.route('/functions/v1/handle-ai-call-status', methods=['POST'])
@twilio_webhook
def handle_ai_call_status():
    call_request_id = request.args.get('callRequestId')
    if not call_request_id:
        return 'Missing callRequestId', 400

    call_status = request.form.get('CallStatus')
    try:
        fields = call_service.status_update_fields(
            call_status,
            request.form.get('CallDuration'),
            request.form.get('RecordingUrl'),
        )
    except ValueError:
        app.logger.warning('Invalid CallDuration for call request %s: %r', call_request_id, request.form.get('CallDuration'))
        return 'Invalid CallDuration', 400
    fields['updated_at'] = now_iso()
    app.logger.info('Call status update id=%s status=%s', call_request_id, call_status)

    conn = db_connect()
    try:
        update_row(conn, 'ai_call_requests', call_request_id, fields)
        conn.commit()
    except sqlite3.Error:
        app.logger.exception('Error updating call status for %s', call_request_id)
        return 'Error', 500
    finally:
        conn.close()
    return 'OK', 200


@app.route('/functions/v1/handle-ai-call-recording', methods=['POST'])
@twilio_webhook
def handle_ai_call_recording():
    call_request_id = request.args.get('callRequestId')
    recording_url = request.form.get('RecordingUrl')
    if call_request_id and recording_url:
        conn = db_connect()
        try:
            update_row(conn, 'ai_call_requests', call_request_id, {
                'call_recording_url': recording_url,
                'updated_at': now_iso(),
            })
            conn.commit()
        finally:
            conn.close()
    return app.response_class(call_service.hangup_twiml(), mimetype='application/xml')


def notify_admins_of_ai_call(conn, call):
    """Email every admin who has not switched off AI call emails."""
    prefs = {
        row['user_id']: bool(row['ai_call_email'])
        for row in conn.execute('SELECT user_id, ai_call_email FROM notification_preferences').fetchall()
    }
    recipients = [email for user_id, email in admin_emails(conn) if prefs.get(user_id, True)]
    if not recipients:
        app.logger.info('No admin emails to send for AI call %s', call.get('call_request_id'))
        return {'success': True, 'message': 'No admin emails to send', 'emails_sent': 0, 'emails_failed': 0}

    call = dict(call)
    call['purpose_label'] = call_service.humanize_purpose(call.get('call_purpose') or '')
    call['dashboard_url'] = f"{app.config['PORTAL_URL']}/dashboard"

    sent = failed = 0
    for email in recipients:
        result = send_ai_call_notification_email([email], call)
        if result.success:
            sent += 1
        else:
            failed += 1
    app.logger.info('AI call notification: sent %s emails, %s failed', sent, failed)
    return {'success': True, 'emails_sent': sent, 'emails_failed': failed}


@app.route('/functions/v1/handle-ai-call-transcription', methods=['POST'])
@twilio_webhook
def handle_ai_call_transcription():
    call_request_id = request.args.get('callRequestId')
    if not call_request_id:
        return 'Missing callRequestId', 400

    text = request.form.get('TranscriptionText')
    status = request.form.get('TranscriptionStatus')
    app.logger.info('Transcription received id=%s status=%s', call_request_id, status)
    if status != 'completed' or not text:
        return 'OK', 200

    conn = db_connect()
    try:
        call_request = row_to_dict(conn.execute('SELECT * FROM ai_call_requests WHERE id = ?', (call_request_id,)).fetchone())
        if not call_request:
            return 'OK', 200

        changes = call_service.analyze_transcription(text, call_request['call_purpose'])
        summary = call_service.generate_call_summary(text, call_request['call_purpose'], changes)
        update_row(conn, 'ai_call_requests', call_request_id, {
            'call_summary': summary,
            'proposed_changes': _dumps(changes),
            # proposed changes wait for admin approval
            'changes_approved': None if changes else 1,
            'updated_at': now_iso(),
        })
        conn.commit()

        if changes:
            notify_admins_of_ai_call(conn, {
                'call_request_id': call_request_id,
                'recipient_name': call_request['recipient_name'] or 'Unknown',
                'call_purpose': call_request['call_purpose'],
                'call_summary': summary,
                'proposed_changes': changes,
            })
    except sqlite3.Error:
        app.logger.exception('Error handling transcription for %s', call_request_id)
        return 'Error', 500
    finally:
        conn.close()
    return 'OK', 200


@app.route('/functions/v1/send-ai-call-notification', methods=['POST'])
@function_auth(allow_service=True)
def send_ai_call_notification():
    if not app.config.get('MAIL_ENABLED'):
        app.logger.error('Mail is not configured; cannot send AI call notification')
        return error_response('Email service not configured', 500)

    payload = json_body()
    if not payload.get('call_request_id') or not payload.get('recipient_name'):
        return error_response('call_request_id and recipient_name are required', 400)

    conn = db_connect()
    try:
        result = notify_admins_of_ai_call(conn, {
            'call_request_id': payload['call_request_id'],
            'recipient_name': payload['recipient_name'],
            'call_purpose': payload.get('call_purpose') or '',
            'call_summary': payload.get('call_summary') or '',
            'proposed_changes': payload.get('proposed_changes') or {},
        })
    finally:
        conn.close()
    return jsonify(result), 200


def identify_caller(conn, caller_number):
    """Match a caller to a lead, then a referral, then a broker by phone digits."""
    digits = call_service.caller_search_digits(caller_number)
    caller = {
        'type': 'unknown',
        'id': None,
        'name': 'Unknown Caller',
        'lead_id': None,
        'referral_id': None,
        'broker_id': None,
    }
    if not digits:
        return caller

    patterns = (f'%{digits}%', f'%{caller_number}%')
    lead = conn.execute(
        'SELECT id, first_name, last_name FROM leads WHERE phone LIKE ? OR phone LIKE ? LIMIT 1', patterns
    ).fetchone()
    if lead:
        caller.update(type='lead', id=lead['id'], lead_id=lead['id'],
                      name=full_name(lead['first_name'], lead['last_name'], 'Lead'))
        return caller

    referral = conn.execute(
        'SELECT id, first_name, parent_lead_id FROM referrals WHERE phone_number LIKE ? OR phone_number LIKE ? LIMIT 1',
        patterns,
    ).fetchone()
    if referral:
        caller.update(type='referral', id=referral['id'], referral_id=referral['id'],
                      lead_id=referral['parent_lead_id'], name=referral['first_name'] or 'Referral')
        return caller

    broker = conn.execute(
        'SELECT id, contact_person FROM brokers WHERE phone_number LIKE ? OR phone_number LIKE ? LIMIT 1', patterns
    ).fetchone()
    if broker:
        caller.update(type='broker', id=broker['id'], broker_id=broker['id'],
                      name=broker['contact_person'] or 'Broker')
    return caller


@app.route('/functions/v1/handle-inbound-call', methods=['POST'])
@twilio_webhook
def handle_inbound_call():
    form = request.form
    call_sid = form.get('CallSid')
    caller_number = form.get('From')
    called_number = form.get('To')
    call_duration = form.get('CallDuration')
    recording_url = form.get('RecordingUrl')
    status = call_service.map_inbound_status(form.get('CallStatus'))
    app.logger.info('Inbound call webhook sid=%s from=%s status=%s', call_sid, caller_number, status)

    try:
        conn = db_connect()
        try:
            existing = conn.execute('SELECT id FROM communications WHERE external_id = ?', (call_sid,)).fetchone() if call_sid else None
            if existing:
                fields = {'status': status, 'updated_at': now_iso()}
                if call_duration:
                    fields['call_duration'] = int(call_duration)
                if recording_url:
                    fields['call_recording_url'] = recording_url
                update_row(conn, 'communications', existing['id'], fields)
            else:
                caller = identify_caller(conn, caller_number)
                insert_row(conn, 'communications', {
                    'id': new_id(),
                    'channel': 'call',
                    'direction': 'inbound',
                    'sender_type': caller['type'],
                    'recipient_type': 'admin',
                    'recipient_contact': called_number,
                    'lead_id': caller['lead_id'],
                    'referral_id': caller['referral_id'],
                    'broker_id': caller['broker_id'],
                    'recipient_id': caller['id'],
                    'status': status,
                    'external_id': call_sid,
                    'call_duration': int(call_duration) if call_duration else None,
                    'call_recording_url': recording_url or None,
                    'content': f"Inbound call from {caller['name']} ({caller_number})",
                    'metadata': _dumps({
                        'caller_number': caller_number,
                        'called_number': called_number,
                        'caller_name': caller['name'],
                        'caller_type': caller['type'],
                    }),
                    'created_at': now_iso(),
                })
            conn.commit()
        finally:
            conn.close()
        twiml = call_service.inbound_greeting_twiml()
    except (sqlite3.Error, ValueError):
        # the caller must always hear something
        app.logger.exception('Error in handle-inbound-call sid=%s', call_sid)
        twiml = call_service.inbound_unavailable_twiml()

    return app.response_class(twiml, mimetype='application/xml')


@app.route('/functions/v1/transcribe-call-recording', methods=['POST'])
@function_auth()
def transcribe_call_recording():
    payload = json_body()
    recording_url = payload.get('recordingUrl')
    communication_id = payload.get('communicationId')
    if not recording_url:
        return error_response('Recording URL is required', 400)
    if not ai_service.ai_configured():
        return error_response('GEMINI_API_KEY is not configured', 500)

    try:
        audio, mime_type = ai_service.download_recording(recording_url)
        app.logger.info('Audio fetched size=%s type=%s', len(audio), mime_type)
        transcript = ai_service.transcribe_audio(audio, mime_type)
    except AIServiceError as exc:
        app.logger.error('Transcription failed for %s: %s', recording_url, exc)
        return error_response(str(exc), 500)

    if communication_id:
        conn = db_connect()
        try:
            existing = conn.execute('SELECT metadata FROM communications WHERE id = ?', (communication_id,)).fetchone()
            if existing:
                metadata = _loads(existing['metadata'], {})
                metadata.update({'transcript': transcript, 'transcribed_at': now_iso()})
                update_row(conn, 'communications', communication_id, {'metadata': _dumps(metadata), 'updated_at': now_iso()})
                conn.commit()
        finally:
            conn.close()

    return jsonify({'transcript': transcript, 'success': True}), 200


@app.route('/functions/v1/legal-ai-assistant', methods=['POST'])
@function_auth()
def legal_ai_assistant():
    payload = json_body()
    command = payload.get('command')
    current_state = payload.get('currentState')
    document_type = payload.get('documentType') or 'Document'
    if not command or not current_state:
        return error_response('Missing command or currentState in request body', 400)
    if not ai_service.ai_configured():
        return error_response('GEMINI_API_KEY is not configured', 500)

    app.logger.info('Processing %s request', document_type)
    try:
        result = ai_service.generate_json(
            ai_service.legal_assistant_prompt(document_type, current_state, command),
            model=app.config['GEMINI_LEGAL_MODEL'],
        )
    except AIServiceError as exc:
        return error_response(str(exc), 500)
    return jsonify(result), 200


# ===== NOTIFICATIONS =====


def delivery_response(result, **extra):
    if not result.success:
        return error_response(result.error or 'Failed to send email', 500)
    body = {'success': True, 'id': result.external_id}
    body.update(extra)
    return jsonify(body), 200


@app.route('/functions/v1/send-message-notification', methods=['POST'])
@function_auth()
def send_message_notification():
    payload = json_body()
    recipient_email = payload.get('recipientEmail')
    message = payload.get('message')
    sender_role = payload.get('senderRole')
    if not recipient_email or not message or not sender_role:
        return jsonify({'success': False, 'error': 'Missing required fields'}), 400

    sender_label = 'Admin' if sender_role == 'admin' else 'Broker'
    if len(message) > MAX_NOTIFICATION_PREVIEW:
        message = message[:MAX_NOTIFICATION_PREVIEW] + '...'

    result = send_message_notification_email(
        recipient_email,
        payload.get('recipientName'),
        payload.get('leadName') or 'Unknown lead',
        sender_label,
        message,
    )
    return delivery_response(result)


@app.route('/functions/v1/send-document-notification', methods=['POST'])
@function_auth()
def send_document_notification():
    payload = json_body()
    if not payload.get('recipientEmail') or not payload.get('documentName'):
        return jsonify({'success': False, 'error': 'Missing required fields'}), 400

    result = send_document_notification_email(
        payload['recipientEmail'],
        payload.get('recipientName'),
        payload['documentName'],
        payload.get('documentCategory') or 'General',
    )
    return delivery_response(result)


@app.route('/functions/v1/send-referral-notification', methods=['POST'])
@function_auth()
def send_referral_notification():
    payload = json_body()
    if not payload.get('referralName') or not payload.get('leadName') or not payload.get('brokerName'):
        return error_response('Missing required fields', 400)

    referral = {
        'referral_name': payload['referralName'],
        'referral_phone': payload.get('referralPhone'),
        'lead_name': payload['leadName'],
        'broker_name': payload['brokerName'],
        'broker_firm': payload.get('brokerFirm'),
    }
    result = send_referral_notification_email(app.config['ADMIN_NOTIFICATION_EMAIL'], referral)
    return delivery_response(result)


@app.route('/functions/v1/send-referral-success', methods=['POST'])
@function_auth()
def send_referral_success():
    payload = json_body()
    if not payload.get('referralName'):
        return error_response('Missing required fields', 400)

    recipients = [app.config['ADMIN_NOTIFICATION_EMAIL']]
    if payload.get('brokerEmail'):
        recipients.append(payload['brokerEmail'])

    referral = {
        'referral_name': payload['referralName'],
        'lead_name': payload.get('leadName'),
        'broker_name': payload.get('brokerName'),
        'broker_firm': payload.get('brokerFirm'),
    }
    result = send_referral_success_email(recipients, referral)
    return delivery_response(result)


@app.route('/functions/v1/send-referral-welcome', methods=['POST'])
@function_auth()
def send_referral_welcome():
    payload = json_body()
    referral_email = payload.get('referralEmail')
    if not referral_email:
        return error_response('Referral email is required', 400)

    reason = payload.get('referralReason')
    service_label, service_description = REFERRAL_SERVICES.get(reason, REFERRAL_SERVICES['financial_advice'])
    referral = {
        'referral_name': payload.get('referralName') or 'there',
        'origin_client_name': payload.get('originClientName') or 'a mutual contact',
        'broker_name': payload.get('brokerName'),
        'broker_firm': payload.get('brokerFirm'),
        'booking_url': f"{app.config['PORTAL_URL']}/contact",
    }
    result = send_referral_welcome_email(referral_email, referral, service_label, service_description)
    return delivery_response(result)


@app.route('/functions/v1/send-appointment-update', methods=['POST'])
@function_auth()
def send_appointment_update():
    payload = json_body()
    to_email = payload.get('to')
    broker_name = payload.get('brokerName')
    lead_name = payload.get('leadName')
    new_date = payload.get('newDate')

    if not to_email and payload.get('brokerId'):
        conn = db_connect()
        try:
            broker = conn.execute(
                'SELECT email, contact_person FROM brokers WHERE id = ?', (payload['brokerId'],)
            ).fetchone()
        finally:
            conn.close()
        if broker:
            to_email = broker['email']
            broker_name = broker_name or broker['contact_person']

    if not to_email or not lead_name or not new_date:
        return error_response('Missing required fields', 400)

    result = send_appointment_update_email(to_email, broker_name, lead_name, new_date)
    return delivery_response(result)


def send_appointment_reminders_batch(hours_ahead=DEFAULT_REMINDER_HOURS):
    """Email each broker a digest of referral appointments in the next hours_ahead hours."""
    now = utc_now()
    window_end = now + timedelta(hours=hours_ahead)
    app.logger.info('Looking for appointments between %s and %s', now.isoformat(), window_end.isoformat())

    conn = db_connect()
    try:
        rows = conn.execute('''
            SELECT r.id, r.first_name, r.phone_number, r.appointment_date, r.will_status,
                   l.first_name AS lead_first_name, l.last_name AS lead_last_name,
                   b.id AS broker_id, b.firm_name, b.contact_person, b.email AS broker_email
            FROM referrals r
            LEFT JOIN leads l ON l.id = r.parent_lead_id
            LEFT JOIN brokers b ON b.id = l.broker_id
            WHERE r.broker_appointment_scheduled = 1 AND r.appointment_date IS NOT NULL
        ''').fetchall()
    finally:
        conn.close()

    upcoming = []
    for row in rows:
        when = parse_timestamp(row['appointment_date'])
        if now <= when <= window_end:
            upcoming.append((when, row))
    upcoming.sort(key=lambda item: item[0])

    if not upcoming:
        return {'success': True, 'message': 'No upcoming appointments found', 'sent': 0}

    by_broker = {}
    for when, row in upcoming:
        if not row['broker_email']:
            app.logger.info('Skipping appointment %s - no broker email', row['id'])
            continue
        group = by_broker.setdefault(row['broker_id'], {
            'email': row['broker_email'],
            'name': row['contact_person'] or row['firm_name'],
            'appointments': [],
        })
        group['appointments'].append({
            'referral_name': row['first_name'],
            'phone_number': row['phone_number'],
            'lead_name': full_name(row['lead_first_name'], row['lead_last_name'], 'Unknown client'),
            'reason': call_service.referral_reason_label(row['will_status']) or 'Consultation',
            'when': when.strftime('%a %d %b %Y, %H:%M UTC'),
        })

    sent = 0
    errors = []
    for group in by_broker.values():
        result = send_appointment_reminder_email(group['email'], group['name'], group['appointments'], hours_ahead)
        if result.success:
            sent += 1
        else:
            errors.append(f"{group['email']}: {result.error}")

    return {
        'success': True,
        'message': f'Sent {sent} reminder emails',
        'sent': sent,
        'errors': errors or None,
    }


@app.route('/functions/v1/send-appointment-reminders', methods=['POST'])
@function_auth(allow_service=True)
def send_appointment_reminders():
    hours_ahead = json_body().get('hoursAhead')
    if hours_ahead is None:
        hours_ahead = DEFAULT_REMINDER_HOURS
    try:
        hours_ahead = int(hours_ahead)
    except (TypeError, ValueError):
        return error_response('hoursAhead must be a whole number of hours', 400)
    if hours_ahead <= 0:
        return error_response('hoursAhead must be a whole number of hours', 400)
    return jsonify(send_appointment_reminders_batch(hours_ahead)), 200


# ===== SCHEDULED REPORTS =====


def report_recipients(conn, report):
    recipient_type = report['recipient_type']
    if recipient_type == 'all_admins':
        return [email for _, email in admin_emails(conn)]
    if recipient_type == 'specific_admins':
        emails = []
        for user_id in report['recipient_ids'] or []:
            row = conn.execute('SELECT email FROM users WHERE id = ?', (user_id,)).fetchone()
            if row and row['email']:
                emails.append(row['email'])
        return emails
    if recipient_type == 'broker':
        if not report['broker_id']:
            return []
        row = conn.execute('SELECT email FROM brokers WHERE id = ?', (report['broker_id'],)).fetchone()
        return [row['email']] if row and row['email'] else []
    if recipient_type == 'all_brokers':
        rows = conn.execute("SELECT email FROM brokers WHERE status = 'Active'").fetchall()
        return [row['email'] for row in rows if row['email']]
    return []


def load_report(row):
    report = row_to_dict(row)
    report['recipient_ids'] = _loads(report.get('recipient_ids'), [])
    report['include_sections'] = _loads(report.get('include_sections'), list(REPORT_SECTIONS))
    return report


def generate_and_send_report(conn, report, now):
    start = window_start(report['frequency'], now)
    query = 'SELECT * FROM communications WHERE created_at >= ? AND created_at <= ?'
    params = [start.isoformat(), now.isoformat()]
    if report['report_type'] == 'broker_client_report' and report['broker_id']:
        query += ' AND lead_id IN (SELECT id FROM leads WHERE broker_id = ?)'
        params.append(report['broker_id'])
    communications = [dict(row) for row in conn.execute(query, params).fetchall()]

    analytics = calculate_analytics(communications, report['include_sections'])
    recipients = report_recipients(conn, report)
    if not recipients:
        app.logger.info('No recipients for report %s', report['id'])
        return {'status': 'skipped', 'reason': 'no_recipients'}

    date_range = format_date_range(start, now)
    pdf = generate_communication_report_pdf(report['name'], date_range, analytics)
    result = send_scheduled_report_email(recipients, report, analytics, date_range, pdf.getvalue())
    if not result.success:
        raise RuntimeError(f'Email send failed: {result.error}')

    insert_row(conn, 'report_history', {
        'id': new_id(),
        'scheduled_report_id': report['id'],
        'sent_at': now_iso(),
        'recipients': _dumps(recipients),
        'status': 'sent',
        'report_data': _dumps(analytics),
    })
    conn.commit()
    app.logger.info('Report %s sent to %s recipients', report['id'], len(recipients))
    return {'status': 'sent', 'recipients_count': len(recipients)}


def run_scheduled_reports(report_id=None):
    """Send one report by id, or every enabled report that is due."""
    now = utc_now()
    conn = db_connect()
    try:
        if report_id:
            rows = conn.execute('SELECT * FROM scheduled_reports WHERE id = ?', (report_id,)).fetchall()
        else:
            rows = [
                row for row in conn.execute('SELECT * FROM scheduled_reports WHERE enabled = 1').fetchall()
                if row['next_scheduled_at'] and parse_timestamp(row['next_scheduled_at']) <= now
            ]
        app.logger.info('Processing %s scheduled reports', len(rows))

        results = []
        for row in rows:
            report = load_report(row)
            try:
                outcome = generate_and_send_report(conn, report, now)
            except (RuntimeError, sqlite3.Error) as exc:
                app.logger.exception('Error processing report %s', report['id'])
                insert_row(conn, 'report_history', {
                    'id': new_id(),
                    'scheduled_report_id': report['id'],
                    'sent_at': now_iso(),
                    'status': 'failed',
                    'error_message': str(exc),
                })
                conn.commit()
                results.append({'report_id': report['id'], 'status': 'failed', 'error': str(exc)})
                continue

            update_row(conn, 'scheduled_reports', report['id'], {
                'last_sent_at': now.isoformat(),
                'next_scheduled_at': next_run_after(report['frequency'], now).isoformat(),
            })
            conn.commit()
            results.append({'report_id': report['id'], **outcome})
    finally:
        conn.close()
    return results


@app.route('/functions/v1/send-scheduled-report', methods=['POST'])
@function_auth(allow_service=True)
def send_scheduled_report():
    payload = json_body()
    results = run_scheduled_reports(payload.get('report_id'))
    return jsonify({'success': True, 'results': results}), 200


# ===== BROKER ONBOARDING =====


@app.route('/functions/v1/submit-onboarding', methods=['POST'])
@limiter.limit('10 per hour')
def submit_onboarding():
    payload = json_body()
    name = (payload.get('fullName') or payload.get('full_name') or '').strip()
    email = (payload.get('email') or '').strip().lower()
    phone = (payload.get('phone') or '').strip()
    company = (payload.get('companyName') or payload.get('company_name') or '').strip() or None
    if not name or not phone:
        return error_response('Full name and phone number are required', 400)
    if not is_valid_email(email):
        return error_response('A valid email address is required', 400)

    try:
        answers = OnboardingAnswers.from_payload(payload.get('answers', payload))
    except InvalidOnboardingAnswer as exc:
        return error_response(str(exc), 400)
    result = calculate_scores(answers)

    response_id = new_id()
    analysis_id = new_id()
    conn = db_connect()
    try:
        response_row = {
            'id': response_id,
            'full_name': name,
            'email': email,
            'phone': phone,
            'company_name': company,
            'created_at': now_iso(),
        }
        response_row.update(response_columns(answers))
        insert_row(conn, 'broker_onboarding_responses', response_row)

        analysis_row = result.to_dict()
        analysis_row['risk_flags'] = _dumps(result.risk_flags)
        analysis_row.update({'id': analysis_id, 'response_id': response_id, 'created_at': now_iso()})
        insert_row(conn, 'broker_analysis', analysis_row)
        conn.commit()
    finally:
        conn.close()

    app.logger.info('Onboarding scored response=%s band=%s probability=%s',
                    response_id, result.success_band, result.success_probability)
    return jsonify({
        'success': True,
        'responseId': response_id,
        'analysisId': analysis_id,
        'result': result.to_camel_dict(),
    }), 201


def load_analysis(conn, analysis_id):
    """Return (analysis, responses) dicts, or (None, None) when the id is unknown."""
    analysis = row_to_dict(conn.execute('SELECT * FROM broker_analysis WHERE id = ?', (analysis_id,)).fetchone())
    if not analysis:
        return None, None
    analysis['risk_flags'] = _loads(analysis['risk_flags'], [])
    responses = row_to_dict(conn.execute(
        'SELECT * FROM broker_onboarding_responses WHERE id = ?', (analysis['response_id'],)
    ).fetchone())
    return analysis, responses


@app.route('/functions/v1/analyze-broker-score', methods=['POST'])
@limiter.limit('20 per hour')
def analyze_broker_score():
    analysis_id = json_body().get('analysisId')
    if not analysis_id:
        return error_response('Missing analysisId', 400)

    conn = db_connect()
    try:
        analysis, responses = load_analysis(conn, analysis_id)
        if not analysis or not responses:
            app.logger.error('Failed to fetch analysis %s', analysis_id)
            return error_response('Failed to fetch analysis', 500)

        note = None
        explanation = ''
        if ai_service.ai_configured():
            try:
                explanation = ai_service.generate_text(build_explanation_prompt(analysis, responses))
            except AIServiceError as exc:
                app.logger.warning('AI explanation failed for %s, using fallback: %s', analysis_id, exc)
        else:
            app.logger.warning('GEMINI_API_KEY not found, using rule-based fallback')
            note = 'fallback used'
        if not explanation:
            explanation = fallback_explanation(analysis, responses)

        update_row(conn, 'broker_analysis', analysis_id, {'ai_explanation': explanation})
        conn.commit()
    finally:
        conn.close()

    body = {'success': True, 'ai_explanation': explanation}
    if note:
        body['note'] = note
    return jsonify(body), 200


@app.route('/functions/v1/broker-analysis/<analysis_id>/pdf', methods=['GET'])
@function_auth(admin_only=True)
def download_broker_analysis_pdf(analysis_id):
    conn = db_connect()
    try:
        analysis, responses = load_analysis(conn, analysis_id)
    finally:
        conn.close()
    if not analysis or not responses:
        return error_response('Analysis not found', 404)

    pdf_buffer = generate_broker_snapshot_pdf(analysis, responses)
    return send_file(
        pdf_buffer,
        as_attachment=True,
        download_name=f'broker_strategy_snapshot_{analysis_id}.pdf',
        mimetype='application/pdf',
    )


# ===== AUTH TOKENS =====


@app.route('/functions/v1/auth/token', methods=['POST'])
@limiter.limit('10 per minute')
def issue_token():
    payload = json_body()
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    if not email or not password:
        return error_response('Email and password are required', 400)

    conn = db_connect()
    try:
        row = conn.execute('SELECT id, password_hash FROM users WHERE email = ?', (email,)).fetchone()
        if not row or not check_password_hash(row['password_hash'], password):
            app.logger.warning('Failed token request for %s', email)
            return error_response('Invalid email or password', 401)
        token, expires_at = issue_api_token(conn, row['id'])
        conn.commit()
    finally:
        conn.close()

    return jsonify({'access_token': token, 'token_type': 'bearer', 'expires_at': expires_at}), 200


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'service': 'lead-velocity'}), 200


@app.route('/metrics')
def metrics():
    total = REQUEST_METRICS['requests_total']
    avg_latency = (REQUEST_METRICS['latency_ms_total'] / total) if total else 0.0
    return jsonify({
        'requests_total': total,
        'errors_total': REQUEST_METRICS['errors_total'],
        'avg_latency_ms': round(avg_latency, 2),
    }), 200


# ===== ERROR HANDLERS =====


@app.errorhandler(429)
def rate_limited(error):
    reset_ts = int((datetime.now(timezone.utc) + timedelta(minutes=15)).timestamp())
    resp = jsonify({'error': 'Too many requests. Please try again later.'})
    resp.status_code = 429
    resp.headers['X-RateLimit-Reset'] = str(reset_ts)
    return resp


@app.errorhandler(HTTPException)
def http_error(error):
    return error_response(error.description or error.name, error.code)


@app.errorhandler(500)
def internal_error(error):
    app.logger.exception('Unhandled error on %s', request.path)
    return error_response('Internal server error', 500)


# ===== APPLICATION ENTRY POINT =====

if __name__ == '__main__':
    init_db()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
