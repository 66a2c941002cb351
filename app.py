"""
Testimonial Hub - Flask Application
Testimonial collection and approval, revenue attribution, analytics and AI-assisted marketing content
"""

import os
import csv
import json
import re
import secrets
import uuid
from io import StringIO, BytesIO
from datetime import timedelta
from functools import wraps
from time import perf_counter
import logging
from logging.handlers import RotatingFileHandler

from flask import (
    Flask,
    request,
    url_for,
    send_file,
    jsonify,
)
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.exceptions import RequestEntityTooLarge
import sqlite3
import stripe
import bleach
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from email.utils import parseaddr

from config import Config
from pdf_generator import generate_revenue_report_pdf
from services import ai_gateway
from services.ai_gateway import AIGatewayClient, AIGatewayError, CONTENT_TYPE_STORAGE
from services.analytics import load_activity, load_analytics, load_dashboard, load_report_data
from services.email_service import (
    init_mail,
    send_new_testimonial_email,
    send_password_reset_email,
    send_verification_email,
)
from services.revenue import (
    PAYMENT_EVENT_TYPES,
    AttributionError,
    RevenueAttribution,
    apply_revenue,
    attribution_from_stripe_event,
    claim_stripe_event,
    event_to_dict,
    record_revenue,
    transaction,
)
from services.sms_service import SMSConfigurationError, SMSDeliveryError, send_sms
from services.timestamps import parse_timestamp, utcnow, utcnow_iso

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.config.setdefault('SESSION_COOKIE_HTTPONLY', True)
app.config.setdefault('SESSION_COOKIE_SAMESITE', 'Lax')
app.config.setdefault('SESSION_COOKIE_SECURE', not app.config.get('DEBUG', False))

# Initialize CSRF protection
csrf = CSRFProtect(app)

# Initialize basic rate limiting
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://'),
    strategy='fixed-window',
    default_limits=["2000 per day", "500 per hour"],
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
logging.getLogger('services').setLevel(app.config.get('LOG_LEVEL', 'INFO'))
logging.getLogger('services').addHandler(_file_handler)

if app.config.get('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=app.config.get('SENTRY_DSN'),
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
        environment=app.config.get('APP_ENV'),
    )

# Configure Stripe
stripe.api_key = app.config.get('STRIPE_SECRET_KEY')

MAX_NAME_LENGTH = 200
MAX_SEARCH_LENGTH = 100
MAX_SMS_LENGTH = 1600
MAX_INTERVIEW_MESSAGES = 30
EMAIL_REGEX = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
SLUG_REGEX = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')
PHONE_REGEX = re.compile(r'^\+?[1-9]\d{6,14}$')
URL_REGEX = re.compile(r'^https?://\S+$')

TESTIMONIAL_STATUSES = ('pending', 'approved', 'rejected')
TESTIMONIAL_TYPES = ('text', 'video', 'audio')
TESTIMONIAL_SOURCES = ('form', 'manual', 'ai_interview', 'sms', 'import')
SENTIMENTS = ('positive', 'neutral', 'negative')
WIDGET_TYPES = ('carousel', 'grid', 'single', 'popup', 'fomo', 'inline')
CAMPAIGN_TYPES = ('sms', 'email')
CAMPAIGN_STATUSES = ('draft', 'scheduled', 'active', 'completed', 'paused')
ROLES = ('admin', 'member', 'viewer')

# JSON-encoded columns and the empty value each decodes to
JSON_COLUMNS = {
    'testimonials': {'custom_fields': dict, 'tags': list},
    'forms': {'custom_questions': list},
    'widgets': {'testimonial_ids': list, 'settings': dict},
    'campaigns': {'recipients': list},
    'generated_content': {'testimonial_ids': list, 'metadata': dict},
}
BOOL_COLUMNS = {
    'testimonials': ('is_featured',),
    'forms': ('is_published', 'collect_text', 'collect_video', 'collect_audio', 'require_rating'),
    'widgets': ('is_active', 'show_rating', 'show_date', 'auto_rotate'),
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


def db_connect():
    conn = sqlite3.connect(app.config['DATABASE_PATH'], timeout=15)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def new_id():
    return str(uuid.uuid4())


def json_error(message, status, **extra):
    return jsonify({'error': message, **extra}), status


def get_json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def is_valid_email(email):
    if not email:
        return False
    _, parsed = parseaddr(email)
    return bool(parsed and EMAIL_REGEX.match(parsed) and len(parsed) <= 254)


def validate_password_strength(password):
    if not password or len(password) < 8:
        return False, 'Password must be at least 8 characters long.'
    if not re.search(r'[A-Z]', password):
        return False, 'Password must include at least one uppercase letter.'
    if not re.search(r'[a-z]', password):
        return False, 'Password must include at least one lowercase letter.'
    if not re.search(r'\d', password):
        return False, 'Password must include at least one number.'
    return True, ''


def clean_text(value):
    """Strip all markup from user-supplied text."""
    if value is None:
        return None
    return bleach.clean(str(value), tags=set(), strip=True).strip()


def _decode_json(value, fallback):
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return fallback


def _encode_columns(fields):
    encoded = {}
    for column, value in fields.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False)
        elif isinstance(value, bool):
            value = int(value)
        encoded[column] = value
    return encoded


def serialize_row(table, row):
    if row is None:
        return None
    data = dict(row)
    for column, factory in JSON_COLUMNS.get(table, {}).items():
        if column in data:
            data[column] = _decode_json(data[column], factory())
    for column in BOOL_COLUMNS.get(table, ()):
        if data.get(column) is not None:
            data[column] = bool(data[column])
    return data


def fetch_owned(conn, table, entity_id, user_id):
    return conn.execute(
        f'SELECT * FROM {table} WHERE id = ? AND user_id = ?',
        (entity_id, user_id),
    ).fetchone()


def insert_row(conn, table, fields):
    fields = _encode_columns(fields)
    columns = ', '.join(fields)
    placeholders = ', '.join('?' for _ in fields)
    conn.execute(f'INSERT INTO {table} ({columns}) VALUES ({placeholders})', tuple(fields.values()))


def update_owned(conn, table, entity_id, user_id, fields):
    fields = _encode_columns({**fields, 'updated_at': utcnow_iso()})
    assignments = ', '.join(f'{column} = ?' for column in fields)
    conn.execute(
        f'UPDATE {table} SET {assignments} WHERE id = ? AND user_id = ?',
        (*fields.values(), entity_id, user_id),
    )


def log_activity(conn, user_id, action, entity_type=None, entity_id=None, metadata=None):
    insert_row(conn, 'activity_log', {
        'id': new_id(),
        'user_id': user_id,
        'action': action,
        'entity_type': entity_type,
        'entity_id': entity_id,
        'metadata': metadata or {},
        'created_at': utcnow_iso(),
    })


def _int_arg(name, default, minimum, maximum):
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(maximum, value))


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return False


def _ai_client():
    return AIGatewayClient.from_config(app.config)


# Initialize Flask-Login
login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    conn = db_connect()
    row = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    conn.close()
    return User.from_row(row) if row else None


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error('Authentication required.', 401)


login_manager.init_app(app)

# ===== DATABASE INITIALIZATION =====


def _ensure_columns(c, table, columns):
    c.execute(f'PRAGMA table_info({table})')
    existing = {col[1] for col in c.fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            c.execute(f'ALTER TABLE {table} ADD COLUMN {name} {ddl}')


def init_db():
    """Initialize the SQLite schema and seed the default workspace owner."""
    conn = db_connect()
    c = conn.cursor()
    c.execute('PRAGMA journal_mode=WAL')

    c.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            full_name TEXT,
            company_name TEXT,
            role TEXT NOT NULL DEFAULT 'admin',
            stripe_customer_id TEXT,
            stripe_subscription_id TEXT,
            subscription_status TEXT,
            email_verified_at TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS forms (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            slug TEXT UNIQUE NOT NULL,
            is_published INTEGER NOT NULL DEFAULT 0,
            welcome_title TEXT,
            welcome_message TEXT,
            thank_you_title TEXT,
            thank_you_message TEXT,
            collect_text INTEGER NOT NULL DEFAULT 1,
            collect_video INTEGER NOT NULL DEFAULT 0,
            collect_audio INTEGER NOT NULL DEFAULT 0,
            require_rating INTEGER NOT NULL DEFAULT 1,
            custom_questions TEXT,
            submission_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS testimonials (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            form_id TEXT,
            type TEXT NOT NULL DEFAULT 'text',
            status TEXT NOT NULL DEFAULT 'pending',
            content TEXT,
            rating INTEGER,
            author_name TEXT NOT NULL,
            author_email TEXT,
            author_title TEXT,
            author_company TEXT,
            video_url TEXT,
            audio_url TEXT,
            sentiment TEXT,
            ai_summary TEXT,
            source TEXT NOT NULL DEFAULT 'form',
            custom_fields TEXT,
            tags TEXT,
            is_featured INTEGER NOT NULL DEFAULT 0,
            revenue_attributed REAL NOT NULL DEFAULT 0,
            approved_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS widgets (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'carousel',
            theme TEXT DEFAULT 'light',
            testimonial_ids TEXT,
            settings TEXT,
            embed_code TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            show_rating INTEGER NOT NULL DEFAULT 1,
            show_date INTEGER NOT NULL DEFAULT 0,
            auto_rotate INTEGER NOT NULL DEFAULT 1,
            impressions INTEGER NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            conversions INTEGER NOT NULL DEFAULT 0,
            revenue_attributed REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            form_id TEXT,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'sms',
            status TEXT NOT NULL DEFAULT 'draft',
            message_template TEXT,
            recipients TEXT,
            total_recipients INTEGER NOT NULL DEFAULT 0,
            sent_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS revenue_events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            testimonial_id TEXT,
            widget_id TEXT,
            amount REAL NOT NULL,
            currency TEXT NOT NULL DEFAULT 'USD',
            source TEXT,
            customer_email TEXT,
            stripe_payment_id TEXT,
            metadata TEXT,
            attributed_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (testimonial_id) REFERENCES testimonials(id) ON DELETE SET NULL,
            FOREIGN KEY (widget_id) REFERENCES widgets(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS stripe_events (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            received_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS activity_log (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT,
            entity_id TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS generated_content (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            content TEXT,
            testimonial_ids TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    ''')

    for token_table in ('password_reset_tokens', 'email_verification_tokens'):
        c.execute(
            f'''
            CREATE TABLE IF NOT EXISTS {token_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                token TEXT UNIQUE NOT NULL,
                expires_at TEXT NOT NULL,
                used_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
            '''
        )

    # Migration: columns added after the first schema version
    _ensure_columns(c, 'revenue_events', {'idempotency_key': 'TEXT'})
    _ensure_columns(c, 'users', {'role': "TEXT NOT NULL DEFAULT 'admin'"})

    # Create default workspace owner if not exists
    c.execute('SELECT id FROM users WHERE email = ?', (app.config['ADMIN_EMAIL'],))
    if not c.fetchone():
        now = utcnow_iso()
        c.execute(
            '''INSERT INTO users
               (id, email, password_hash, full_name, role, email_verified_at, created_at)
               VALUES (?, ?, ?, ?, 'admin', ?, ?)''',
            (
                new_id(),
                app.config['ADMIN_EMAIL'],
                generate_password_hash(app.config['ADMIN_PASSWORD']),
                'Workspace Admin',
                now,
                now,
            ),
        )

    # Idempotency and performance indexes
    c.execute(
        'CREATE UNIQUE INDEX IF NOT EXISTS idx_revenue_payment_id '
        'ON revenue_events(stripe_payment_id)'
    )
    c.execute(
        'CREATE UNIQUE INDEX IF NOT EXISTS idx_revenue_idempotency '
        'ON revenue_events(user_id, idempotency_key)'
    )
    c.execute('CREATE INDEX IF NOT EXISTS idx_revenue_user_time ON revenue_events(user_id, attributed_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_testimonials_user_time ON testimonials(user_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_testimonials_status ON testimonials(user_id, status)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_activity_user_time ON activity_log(user_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_widgets_user ON widgets(user_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_forms_user ON forms(user_id)')

    conn.commit()
    conn.close()

# ===== USER CLASS FOR FLASK-LOGIN =====


class User(UserMixin):
    def __init__(
        self,
        id,
        email,
        full_name=None,
        company_name=None,
        role='admin',
        stripe_customer_id=None,
        stripe_subscription_id=None,
        subscription_status=None,
        email_verified_at=None,
        created_at=None,
    ):
        self.id = id
        self.email = email
        self.full_name = full_name
        self.company_name = company_name
        self.role = role if role in ROLES else 'viewer'
        self.stripe_customer_id = stripe_customer_id
        self.stripe_subscription_id = stripe_subscription_id
        self.subscription_status = subscription_status
        self.email_verified_at = email_verified_at
        self.created_at = created_at

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        return cls(
            id=data['id'],
            email=data['email'],
            full_name=data.get('full_name'),
            company_name=data.get('company_name'),
            role=data.get('role') or 'admin',
            stripe_customer_id=data.get('stripe_customer_id'),
            stripe_subscription_id=data.get('stripe_subscription_id'),
            subscription_status=data.get('subscription_status'),
            email_verified_at=data.get('email_verified_at'),
            created_at=data.get('created_at'),
        )

    @property
    def display_name(self):
        return self.full_name or self.company_name or self.email

    def can_edit(self):
        return self.role != 'viewer'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'company_name': self.company_name,
            'role': self.role,
            'subscription_status': self.subscription_status,
            'email_verified': bool(self.email_verified_at),
            'created_at': self.created_at,
        }


def editor_required(view):
    """Reject mutations from read-only (viewer) members. Use after login_required."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.can_edit():
            return json_error('Your role does not allow changes in this workspace.', 403)
        return view(*args, **kwargs)
    return wrapped


def _create_token(conn, table, user_id, lifetime):
    token = secrets.token_urlsafe(32)
    conn.execute(
        f'INSERT INTO {table} (user_id, token, expires_at, created_at) VALUES (?, ?, ?, ?)',
        (user_id, token, (utcnow() + lifetime).isoformat(), utcnow_iso()),
    )
    return token


def _consume_token(conn, table, token):
    """Mark a token used and return its user id, or None if invalid/expired/used."""
    row = conn.execute(
        f'SELECT id, user_id, expires_at, used_at FROM {table} WHERE token = ?',
        (token,),
    ).fetchone()
    if not row or row['used_at']:
        return None
    expires_at = parse_timestamp(row['expires_at'])
    if expires_at is None or expires_at < utcnow():
        return None
    conn.execute(f'UPDATE {table} SET used_at = ? WHERE id = ?', (utcnow_iso(), row['id']))
    return row['user_id']

# ===== AUTH ROUTES =====


@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/api/auth/register', methods=['POST'])
@limiter.limit('5 per hour')
def register():
    """Self-service registration; the new user owns a fresh workspace."""
    if current_user.is_authenticated:
        return json_error('Already signed in.', 400)

    data = get_json_body() or {}
    errors = {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    confirm_password = data.get('confirm_password', password)
    full_name = clean_text(data.get('full_name')) or ''
    company_name = clean_text(data.get('company_name')) or None

    if not is_valid_email(email):
        errors['email'] = 'Enter a valid business email address.'
    if len(full_name) < 2 or len(full_name) > 120:
        errors['full_name'] = 'Enter your full name (2-120 characters).'
    if company_name and len(company_name) > MAX_NAME_LENGTH:
        errors['company_name'] = f'Company name must be at most {MAX_NAME_LENGTH} characters.'
    ok_password, password_msg = validate_password_strength(password)
    if not ok_password:
        errors['password'] = password_msg
    if password != confirm_password:
        errors['confirm_password'] = 'Passwords do not match.'

    if errors:
        return json_error('Please correct the highlighted fields and submit again.', 400, fields=errors)

    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id FROM users WHERE email = ?', (email,))
    if c.fetchone():
        conn.close()
        return json_error('An account with that email already exists. Please log in.', 409)

    user_id = new_id()
    c.execute(
        '''
        INSERT INTO users (id, email, password_hash, full_name, company_name, role, created_at)
        VALUES (?, ?, ?, ?, ?, 'admin', ?)
        ''',
        (user_id, email, generate_password_hash(password), full_name, company_name, utcnow_iso()),
    )
    verify_token = _create_token(conn, 'email_verification_tokens', user_id, timedelta(hours=24))
    conn.commit()
    conn.close()

    user = load_user(user_id)
    login_user(user)
    app.logger.info('New account registered: %s', user_id)

    verification_link = url_for('verify_email', token=verify_token, _external=True)
    body = {'user': user.to_dict()}
    if app.config.get('MAIL_ENABLED'):
        send_verification_email(email, verification_link, user.display_name)
    else:
        body['verification_link'] = verification_link
    return jsonify(body), 201


@app.route('/api/auth/verify-email/<token>')
@limiter.limit('20 per hour')
def verify_email(token):
    conn = db_connect()
    user_id = _consume_token(conn, 'email_verification_tokens', token)
    if not user_id:
        conn.close()
        return json_error('This verification link is invalid or expired.', 400)
    conn.execute('UPDATE users SET email_verified_at = ? WHERE id = ?', (utcnow_iso(), user_id))
    conn.commit()
    conn.close()
    return jsonify({'verified': True})


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit('5 per 15 minutes')
def login():
    data = get_json_body() or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return json_error('Email and password are required to sign in.', 400)

    conn = db_connect()
    row = conn.execute('SELECT id, password_hash FROM users WHERE email = ?', (email,)).fetchone()
    conn.close()

    if row and check_password_hash(row['password_hash'], password):
        user = load_user(row['id'])
        login_user(user)
        return jsonify({'user': user.to_dict()})

    return json_error('Sign-in failed. Check your email/password and try again.', 401)


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'signed_out': True})


@app.route('/api/auth/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})


@app.route('/api/auth/forgot-password', methods=['POST'])
@limiter.limit('5 per hour')
def forgot_password():
    data = get_json_body() or {}
    email = (data.get('email') or '').strip().lower()
    body = {'message': 'If that account exists, a password reset link has been sent.'}
    if not is_valid_email(email):
        return jsonify(body)

    conn = db_connect()
    row = conn.execute('SELECT id, full_name, email FROM users WHERE email = ?', (email,)).fetchone()
    if not row:
        conn.close()
        return jsonify(body)

    token = _create_token(conn, 'password_reset_tokens', row['id'], timedelta(hours=1))
    conn.commit()
    conn.close()

    reset_link = url_for('reset_password', token=token, _external=True)
    if app.config.get('MAIL_ENABLED'):
        send_password_reset_email(email, reset_link, row['full_name'] or email)
    else:
        body['reset_link'] = reset_link
    return jsonify(body)


@app.route('/api/auth/reset-password/<token>', methods=['POST'])
@limiter.limit('10 per hour')
def reset_password(token):
    data = get_json_body() or {}
    password = data.get('password') or ''
    ok_password, password_msg = validate_password_strength(password)
    if not ok_password:
        return json_error(password_msg, 400)
    if password != data.get('confirm_password', password):
        return json_error('Passwords do not match.', 400)

    conn = db_connect()
    user_id = _consume_token(conn, 'password_reset_tokens', token)
    if not user_id:
        conn.close()
        return json_error('This reset link is invalid or expired.', 400)
    conn.execute('UPDATE users SET password_hash = ? WHERE id = ?', (generate_password_hash(password), user_id))
    conn.commit()
    conn.close()
    return jsonify({'message': 'Password reset successful. You can now sign in.'})

# ===== STRIPE WEBHOOK =====


def _apply_subscription_event(conn, event_type, subscription):
    subscription_id = subscription.get('id')
    status = 'canceled' if event_type == 'customer.subscription.deleted' else subscription.get('status')
    customer = subscription.get('customer')
    if not isinstance(customer, str):
        customer = None
    user_id = (subscription.get('metadata') or {}).get('user_id')

    if user_id:
        conn.execute(
            '''
            UPDATE users
            SET stripe_subscription_id = ?,
                stripe_customer_id = COALESCE(?, stripe_customer_id),
                subscription_status = ?
            WHERE id = ?
            ''',
            (subscription_id, customer, status, user_id),
        )
    elif subscription_id:
        conn.execute(
            'UPDATE users SET subscription_status = ? WHERE stripe_subscription_id = ?',
            (status, subscription_id),
        )
    app.logger.info('Subscription event: %s %s', subscription_id, status)


def _handle_stripe_event(conn, event):
    event_type = event['type']
    obj = (event.get('data') or {}).get('object') or {}

    if event_type in PAYMENT_EVENT_TYPES:
        attribution = attribution_from_stripe_event(event)
        if attribution is None:
            app.logger.info('Payment %s has no attributable user; skipped', obj.get('id'))
            return {'attributed': False}
        try:
            result = apply_revenue(conn, attribution)
        except AttributionError as exc:
            app.logger.warning('Payment %s rejected: %s', obj.get('id'), exc)
            return {'attributed': False}
        return {'attributed': result.created, 'revenue_event_id': result.event['id']}

    if event_type.startswith('customer.subscription.'):
        _apply_subscription_event(conn, event_type, obj)
        return {}

    app.logger.info('Unhandled event type: %s', event_type)
    return {}


@app.route('/stripe-webhook', methods=['POST'])
@csrf.exempt
@limiter.exempt
def stripe_webhook():
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature')
    webhook_secret = app.config.get('STRIPE_WEBHOOK_SECRET')

    if webhook_secret:
        if not sig_header:
            return json_error('Invalid signature', 400)
        try:
            stripe.WebhookSignature.verify_header(payload.decode('utf-8'), sig_header, webhook_secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            app.logger.warning('Stripe webhook signature verification failed')
            return json_error('Invalid signature', 400)
    elif not app.config.get('STRIPE_ALLOW_UNSIGNED'):
        return '', 204

    try:
        event = json.loads(payload)
    except ValueError:
        return json_error('Invalid payload', 400)
    if not isinstance(event, dict) or not isinstance(event.get('type'), str) or not event['type']:
        return json_error('Invalid payload', 400)

    event_id = event.get('id')
    if event_id is not None and not isinstance(event_id, str):
        return json_error('Invalid payload', 400)
    app.logger.info('Stripe webhook received: %s %s', event['type'], event_id)

    conn = db_connect()
    try:
        with transaction(conn):
            if event_id and not claim_stripe_event(conn, event_id, event['type']):
                app.logger.info('Duplicate Stripe event ignored: %s', event_id)
                return jsonify({'received': True, 'duplicate': True})
            result = _handle_stripe_event(conn, event)
    except Exception as exc:  # noqa: BLE001
        app.logger.exception('stripe-webhook error: %s', exc)
        return json_error(str(exc) or 'Unknown error', 500)
    finally:
        conn.close()

    return jsonify({'received': True, **result})

# ===== REVENUE ROUTES =====


@app.route('/api/revenue/track', methods=['POST'])
@login_required
@editor_required
def track_revenue():
    """Manually record revenue, optionally attributed to a testimonial or widget."""
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    if data.get('amount') in (None, ''):
        return json_error('amount is required', 400)

    customer_email = data.get('customer_email')
    if customer_email is not None and not isinstance(customer_email, str):
        return json_error('customer_email is not a valid email address.', 400)
    customer_email = (customer_email or '').strip() or None
    if customer_email and not is_valid_email(customer_email):
        return json_error('customer_email is not a valid email address.', 400)

    attribution = RevenueAttribution(
        user_id=current_user.id,
        amount=data.get('amount'),
        currency=data.get('currency') or 'USD',
        source=clean_text(data.get('source')) or 'manual',
        testimonial_id=data.get('testimonial_id') or None,
        widget_id=data.get('widget_id') or None,
        customer_email=customer_email,
        idempotency_key=request.headers.get('Idempotency-Key') or data.get('idempotency_key') or None,
        metadata=data.get('metadata') or {},
        action='revenue_tracked',
    )

    conn = db_connect()
    try:
        result = record_revenue(conn, attribution)
    except AttributionError as exc:
        return json_error(str(exc), 400)
    finally:
        conn.close()

    body = {'success': True, 'revenue_event': result.event, 'duplicate': result.duplicate}
    return jsonify(body), (201 if result.created else 200)


@app.route('/api/revenue')
@login_required
def list_revenue():
    limit = _int_arg('limit', 50, 1, 500)
    conn = db_connect()
    rows = conn.execute(
        'SELECT * FROM revenue_events WHERE user_id = ? ORDER BY attributed_at DESC LIMIT ?',
        (current_user.id, limit),
    ).fetchall()
    conn.close()
    return jsonify({'revenue_events': [event_to_dict(r) for r in rows]})

# ===== TESTIMONIAL VALIDATION =====


def _validate_testimonial(data, partial=False):
    """Validate testimonial fields. Returns (fields, error_message)."""
    fields = {}

    if 'author_name' in data or not partial:
        author_name = clean_text(data.get('author_name'))
        if not author_name:
            return None, 'author_name is required'
        if len(author_name) > MAX_NAME_LENGTH:
            return None, f'author_name must be at most {MAX_NAME_LENGTH} characters'
        fields['author_name'] = author_name

    for column in ('author_title', 'author_company'):
        if column in data:
            value = clean_text(data.get(column)) or None
            if value and len(value) > MAX_NAME_LENGTH:
                return None, f'{column} must be at most {MAX_NAME_LENGTH} characters'
            fields[column] = value

    if 'author_email' in data:
        email = (data.get('author_email') or '').strip().lower() or None
        if email and not is_valid_email(email):
            return None, 'author_email is not a valid email address'
        fields['author_email'] = email

    if 'content' in data:
        content = clean_text(data.get('content')) or None
        if content and len(content) > app.config['MAX_TESTIMONIAL_LENGTH']:
            return None, f"content must be at most {app.config['MAX_TESTIMONIAL_LENGTH']} characters"
        fields['content'] = content

    if 'rating' in data:
        rating = data.get('rating')
        if rating in (None, ''):
            fields['rating'] = None
        else:
            try:
                rating = int(rating)
            except (TypeError, ValueError):
                return None, 'rating must be between 1 and 5'
            if rating < 1 or rating > 5:
                return None, 'rating must be between 1 and 5'
            fields['rating'] = rating

    if 'type' in data or not partial:
        testimonial_type = data.get('type') or 'text'
        if testimonial_type not in TESTIMONIAL_TYPES:
            return None, f"type must be one of: {', '.join(TESTIMONIAL_TYPES)}"
        fields['type'] = testimonial_type

    for column in ('video_url', 'audio_url'):
        if column in data:
            url = (data.get(column) or '').strip() or None
            if url and not URL_REGEX.match(url):
                return None, f'{column} must be an http(s) URL'
            fields[column] = url

    if 'custom_fields' in data:
        custom_fields = data.get('custom_fields') or {}
        if not isinstance(custom_fields, dict):
            return None, 'custom_fields must be an object'
        fields['custom_fields'] = {
            str(k)[:100]: clean_text(v) if isinstance(v, str) else v
            for k, v in custom_fields.items()
        }

    if 'tags' in data:
        tags = data.get('tags') or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            return None, 'tags must be a list of strings'
        fields['tags'] = [clean_text(t)[:50] for t in tags if clean_text(t)]

    if 'sentiment' in data:
        sentiment = data.get('sentiment') or None
        if sentiment and sentiment not in SENTIMENTS:
            return None, f"sentiment must be one of: {', '.join(SENTIMENTS)}"
        fields['sentiment'] = sentiment

    if 'is_featured' in data:
        fields['is_featured'] = _parse_bool(data.get('is_featured'))

    if 'status' in data:
        status = data.get('status')
        if status not in TESTIMONIAL_STATUSES:
            return None, f"status must be one of: {', '.join(TESTIMONIAL_STATUSES)}"
        fields['status'] = status

    return fields, None

# ===== PUBLIC FUNCTIONS =====


@app.route('/api/testimonials/submit', methods=['POST'])
@csrf.exempt
@limiter.limit('20 per hour')
def submit_testimonial():
    """Public testimonial submission through a published collection form."""
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)

    form_slug = (data.get('form_slug') or '').strip()
    if not form_slug or not clean_text(data.get('author_name')):
        return json_error('form_slug and author_name are required', 400)

    fields, error = _validate_testimonial(
        {k: v for k, v in data.items() if k not in ('status', 'sentiment', 'is_featured', 'tags')}
    )
    if error:
        return json_error(error, 400)

    source = data.get('source') or 'form'
    if source not in ('form', 'ai_interview'):
        return json_error('source must be form or ai_interview', 400)

    conn = db_connect()
    form = conn.execute(
        'SELECT id, user_id, name FROM forms WHERE slug = ? AND is_published = 1',
        (form_slug,),
    ).fetchone()
    if form is None:
        conn.close()
        return json_error('Form not found or not published', 404)

    sentiment, ai_summary = ai_gateway.classify_sentiment(_ai_client(), fields.get('content'))

    testimonial_id = new_id()
    now = utcnow_iso()
    try:
        with transaction(conn):
            insert_row(conn, 'testimonials', {
                **fields,
                'id': testimonial_id,
                'user_id': form['user_id'],
                'form_id': form['id'],
                'status': 'pending',
                'sentiment': sentiment,
                'ai_summary': ai_summary,
                'source': source,
                'created_at': now,
                'updated_at': now,
            })
            conn.execute(
                'UPDATE forms SET submission_count = COALESCE(submission_count, 0) + 1 WHERE id = ?',
                (form['id'],),
            )
            log_activity(conn, form['user_id'], 'testimonial_submitted', 'testimonial', testimonial_id, {
                'form_name': form['name'],
                'author_name': fields['author_name'],
                'rating': fields.get('rating'),
            })
        owner = conn.execute('SELECT email, full_name FROM users WHERE id = ?', (form['user_id'],)).fetchone()
    finally:
        conn.close()

    app.logger.info('Testimonial %s submitted via form %s', testimonial_id, form['id'])
    if app.config.get('MAIL_ENABLED') and owner:
        content = fields.get('content') or ''
        send_new_testimonial_email(
            owner['email'],
            owner['full_name'] or owner['email'],
            form['name'],
            fields['author_name'],
            fields.get('rating'),
            content[:280] if content else None,
        )

    return jsonify({'success': True, 'testimonial_id': testimonial_id})


@app.route('/api/ai/interview', methods=['POST'])
@csrf.exempt
@limiter.limit('60 per hour')
def ai_interview():
    data = get_json_body() or {}
    messages = data.get('messages')
    if not isinstance(messages, list) or not messages:
        return json_error('messages must be a non-empty list', 400)
    if len(messages) > MAX_INTERVIEW_MESSAGES:
        return json_error('Interview is too long', 400)
    for message in messages:
        if (
            not isinstance(message, dict)
            or message.get('role') not in ('user', 'assistant')
            or not isinstance(message.get('content'), str)
        ):
            return json_error('Each message needs a user/assistant role and text content', 400)

    cleaned = [{'role': m['role'], 'content': m['content'][:4000]} for m in messages]
    try:
        result = ai_gateway.interview_turn(_ai_client(), cleaned)
    except AIGatewayError as exc:
        app.logger.error('ai-interview error: %s', exc)
        return json_error(exc.message, exc.status_code)
    return jsonify(result)


@app.route('/api/public/forms/<slug>')
def public_form(slug):
    conn = db_connect()
    row = conn.execute('SELECT * FROM forms WHERE slug = ? AND is_published = 1', (slug,)).fetchone()
    conn.close()
    if row is None:
        return json_error('Form not found or not published', 404)
    form = serialize_row('forms', row)
    for private in ('user_id', 'submission_count'):
        form.pop(private, None)
    return jsonify({'form': form})


@app.route('/api/public/widgets/<widget_id>')
def public_widget(widget_id):
    """Approved testimonials for an embedded widget."""
    conn = db_connect()
    widget = conn.execute('SELECT * FROM widgets WHERE id = ? AND is_active = 1', (widget_id,)).fetchone()
    if widget is None:
        conn.close()
        return json_error('Widget not found', 404)

    widget_data = serialize_row('widgets', widget)
    selected = widget_data.get('testimonial_ids') or []
    if selected:
        placeholders = ', '.join('?' for _ in selected)
        rows = conn.execute(
            f'''
            SELECT * FROM testimonials
            WHERE user_id = ? AND status = 'approved' AND id IN ({placeholders})
            ''',
            (widget['user_id'], *selected),
        ).fetchall()
        order = {tid: i for i, tid in enumerate(selected)}
        rows = sorted(rows, key=lambda r: order.get(r['id'], len(order)))
    else:
        rows = conn.execute(
            '''
            SELECT * FROM testimonials
            WHERE user_id = ? AND status = 'approved'
            ORDER BY is_featured DESC, created_at DESC
            LIMIT 20
            ''',
            (widget['user_id'],),
        ).fetchall()
    conn.close()

    testimonials = []
    for row in rows:
        t = serialize_row('testimonials', row)
        testimonials.append({
            'id': t['id'],
            'author_name': t['author_name'],
            'author_title': t['author_title'],
            'author_company': t['author_company'],
            'content': t['content'],
            'rating': t['rating'] if widget_data['show_rating'] else None,
            'type': t['type'],
            'video_url': t['video_url'],
            'audio_url': t['audio_url'],
            'created_at': t['created_at'] if widget_data['show_date'] else None,
        })

    return jsonify({
        'widget': {
            'id': widget_data['id'],
            'type': widget_data['type'],
            'theme': widget_data['theme'],
            'settings': widget_data['settings'],
            'auto_rotate': widget_data['auto_rotate'],
        },
        'testimonials': testimonials,
    })


@app.route('/api/public/widgets/<widget_id>/<metric>', methods=['POST'])
@csrf.exempt
@limiter.limit('600 per hour')
def track_widget_metric(widget_id, metric):
    columns = {'impression': 'impressions', 'click': 'clicks'}
    column = columns.get(metric)
    if column is None:
        return json_error('Unknown widget metric', 404)

    conn = db_connect()
    cur = conn.execute(
        f'UPDATE widgets SET {column} = COALESCE({column}, 0) + 1 WHERE id = ? AND is_active = 1',
        (widget_id,),
    )
    conn.commit()
    conn.close()
    if cur.rowcount == 0:
        return json_error('Widget not found', 404)
    return jsonify({'tracked': metric})

# ===== AI ROUTES =====


@app.route('/api/ai/analyze-testimonial', methods=['POST'])
@login_required
def analyze_testimonial():
    data = get_json_body() or {}
    testimonial_id = data.get('testimonial_id')

    if testimonial_id:
        conn = db_connect()
        row = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
        conn.close()
        if row is None:
            return json_error('Testimonial not found', 404)
        content, name, company, rating = row['content'], row['author_name'], row['author_company'], row['rating']
    else:
        content = data.get('content')
        name, company, rating = data.get('name'), data.get('company'), data.get('rating')

    if not content:
        return json_error('Testimonial content is required', 400)

    try:
        analysis = ai_gateway.analyze_testimonial(_ai_client(), content, name, company, rating)
    except AIGatewayError as exc:
        app.logger.error('analyze-testimonial error: %s', exc)
        return json_error(exc.message, exc.status_code)

    if testimonial_id and current_user.can_edit():
        updates = {'ai_summary': clean_text(analysis.get('summary')) or None}
        sentiment = ai_gateway.sentiment_from_happiness(analysis.get('happinessScore'))
        if sentiment:
            updates['sentiment'] = sentiment
        conn = db_connect()
        update_owned(conn, 'testimonials', testimonial_id, current_user.id, updates)
        log_activity(conn, current_user.id, 'testimonial_analyzed', 'testimonial', testimonial_id, {
            'happiness_score': analysis.get('happinessScore'),
            'conversion_power': analysis.get('conversionPower'),
        })
        conn.commit()
        conn.close()

    return jsonify(analysis)


@app.route('/api/ai/generate-content', methods=['POST'])
@login_required
@editor_required
def generate_content():
    data = get_json_body() or {}
    content_type = data.get('contentType') or data.get('content_type')
    content_type_info = data.get('contentTypeInfo') or data.get('content_type_info') or {}
    if not isinstance(content_type_info, dict):
        return json_error('contentTypeInfo must be an object', 400)

    testimonials = data.get('testimonials')
    testimonial_ids = data.get('testimonial_ids') or []
    if testimonial_ids:
        if not isinstance(testimonial_ids, list):
            return json_error('testimonial_ids must be a list', 400)
        conn = db_connect()
        placeholders = ', '.join('?' for _ in testimonial_ids)
        rows = conn.execute(
            f'SELECT * FROM testimonials WHERE user_id = ? AND id IN ({placeholders})',
            (current_user.id, *testimonial_ids),
        ).fetchall()
        conn.close()
        testimonials = [dict(r) for r in rows]
    if not isinstance(testimonials, list) or not testimonials:
        return json_error('No testimonials provided', 400)
    if not all(isinstance(t, dict) for t in testimonials):
        return json_error('Each testimonial must be an object', 400)
    if not content_type:
        return json_error('Content type is required', 400)

    try:
        content = ai_gateway.generate_content(_ai_client(), testimonials, content_type, content_type_info)
    except AIGatewayError as exc:
        app.logger.error('generate-content error: %s', exc)
        return json_error(exc.message, exc.status_code)

    content_id = new_id()
    conn = db_connect()
    insert_row(conn, 'generated_content', {
        'id': content_id,
        'user_id': current_user.id,
        'type': CONTENT_TYPE_STORAGE.get(content_type, 'twitter_thread'),
        'content': content,
        'testimonial_ids': [t['id'] for t in testimonials if isinstance(t, dict) and t.get('id')],
        'metadata': {'content_type': content_type, 'content_type_info': content_type_info},
        'created_at': utcnow_iso(),
    })
    log_activity(conn, current_user.id, 'content_generated', 'content', content_id, {'content_type': content_type})
    conn.commit()
    conn.close()

    return jsonify({'content': content, 'id': content_id})


@app.route('/api/content')
@login_required
def list_generated_content():
    limit = _int_arg('limit', 50, 1, 200)
    conn = db_connect()
    rows = conn.execute(
        'SELECT * FROM generated_content WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
        (current_user.id, limit),
    ).fetchall()
    conn.close()
    return jsonify({'content': [serialize_row('generated_content', r) for r in rows]})

# ===== SMS ROUTES =====


@app.route('/api/sms/send', methods=['POST'])
@login_required
@editor_required
@limiter.limit('100 per hour')
def send_sms_message():
    data = get_json_body() or {}
    account_sid = app.config.get('TWILIO_ACCOUNT_SID')
    auth_token = app.config.get('TWILIO_AUTH_TOKEN')
    from_number = app.config.get('TWILIO_PHONE_NUMBER')
    if not (account_sid and auth_token and from_number):
        return json_error('Twilio credentials not configured', 400)

    to = re.sub(r'[\s\-().]', '', data.get('to') or '')
    message = (data.get('message') or '').strip()
    campaign_id = data.get('campaign_id')
    if not to or not message:
        return json_error('Phone number and message are required', 400)
    if not PHONE_REGEX.match(to):
        return json_error('Phone number must be in international format, e.g. +15551234567', 400)
    if len(message) > MAX_SMS_LENGTH:
        return json_error(f'Message must be at most {MAX_SMS_LENGTH} characters', 400)

    try:
        result = send_sms(
            to,
            message,
            account_sid=account_sid,
            auth_token=auth_token,
            from_number=from_number,
        )
    except SMSConfigurationError as exc:
        return json_error(str(exc), 400)
    except SMSDeliveryError as exc:
        return json_error(exc.message, exc.status_code)

    if campaign_id:
        conn = db_connect()
        cur = conn.execute(
            '''
            UPDATE campaigns
            SET sent_count = COALESCE(sent_count, 0) + 1, updated_at = ?
            WHERE id = ? AND user_id = ?
            ''',
            (utcnow_iso(), campaign_id, current_user.id),
        )
        if cur.rowcount:
            log_activity(conn, current_user.id, 'sms_sent', 'campaign', campaign_id, {'message_sid': result.sid})
        conn.commit()
        conn.close()

    return jsonify({'success': True, 'message_sid': result.sid, 'status': result.status})

# ===== TESTIMONIAL ROUTES =====


@app.route('/api/testimonials')
@login_required
def list_testimonials():
    sql = 'SELECT * FROM testimonials WHERE user_id = ?'
    params = [current_user.id]

    status = request.args.get('status')
    if status:
        if status not in TESTIMONIAL_STATUSES:
            return json_error('Unknown status filter', 400)
        sql += ' AND status = ?'
        params.append(status)
    testimonial_type = request.args.get('type')
    if testimonial_type:
        if testimonial_type not in TESTIMONIAL_TYPES:
            return json_error('Unknown type filter', 400)
        sql += ' AND type = ?'
        params.append(testimonial_type)
    rating = request.args.get('rating', type=int)
    if rating:
        sql += ' AND rating = ?'
        params.append(rating)
    search = (request.args.get('search') or '').strip()[:MAX_SEARCH_LENGTH]
    if search:
        escaped = search.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        sql += " AND (content LIKE ? ESCAPE '\\' OR author_name LIKE ? ESCAPE '\\')"
        params.extend([f'%{escaped}%', f'%{escaped}%'])

    sql += ' ORDER BY created_at DESC LIMIT ? OFFSET ?'
    params.extend([_int_arg('limit', 100, 1, 500), _int_arg('offset', 0, 0, 1_000_000)])

    conn = db_connect()
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return jsonify({'testimonials': [serialize_row('testimonials', r) for r in rows]})


@app.route('/api/testimonials', methods=['POST'])
@login_required
@editor_required
def create_testimonial():
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_testimonial(data)
    if error:
        return json_error(error, 400)

    source = data.get('source') or 'manual'
    if source not in TESTIMONIAL_SOURCES:
        return json_error(f"source must be one of: {', '.join(TESTIMONIAL_SOURCES)}", 400)

    now = utcnow_iso()
    testimonial_id = new_id()
    fields.setdefault('status', 'pending')
    if fields['status'] == 'approved':
        fields['approved_at'] = now

    conn = db_connect()
    insert_row(conn, 'testimonials', {
        **fields,
        'id': testimonial_id,
        'user_id': current_user.id,
        'source': source,
        'created_at': now,
        'updated_at': now,
    })
    log_activity(conn, current_user.id, 'testimonial_created', 'testimonial', testimonial_id, {
        'author_name': fields['author_name'],
        'source': source,
    })
    conn.commit()
    row = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    conn.close()
    return jsonify({'testimonial': serialize_row('testimonials', row)}), 201


@app.route('/api/testimonials/export.csv')
@login_required
@limiter.limit('10 per hour')
def export_testimonials():
    conn = db_connect()
    rows = conn.execute(
        '''
        SELECT created_at, status, type, rating, author_name, author_title, author_company,
               author_email, content, sentiment, revenue_attributed
        FROM testimonials
        WHERE user_id = ?
        ORDER BY created_at DESC
        ''',
        (current_user.id,),
    ).fetchall()
    conn.close()

    csv_buffer = StringIO()
    writer = csv.writer(csv_buffer)
    writer.writerow([
        'created_at', 'status', 'type', 'rating', 'author_name', 'author_title',
        'author_company', 'author_email', 'content', 'sentiment', 'revenue_attributed',
    ])
    for row in rows:
        writer.writerow(tuple(row))

    out = BytesIO(csv_buffer.getvalue().encode('utf-8'))
    out.seek(0)
    return send_file(
        out,
        as_attachment=True,
        download_name='testimonials_export.csv',
        mimetype='text/csv',
    )


@app.route('/api/testimonials/<testimonial_id>')
@login_required
def get_testimonial(testimonial_id):
    conn = db_connect()
    row = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    conn.close()
    if row is None:
        return json_error('Testimonial not found', 404)
    return jsonify({'testimonial': serialize_row('testimonials', row)})


@app.route('/api/testimonials/<testimonial_id>', methods=['PATCH'])
@login_required
@editor_required
def update_testimonial(testimonial_id):
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_testimonial(data, partial=True)
    if error:
        return json_error(error, 400)

    conn = db_connect()
    existing = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    if existing is None:
        conn.close()
        return json_error('Testimonial not found', 404)
    if fields.get('status') == 'approved' and existing['status'] != 'approved':
        fields['approved_at'] = utcnow_iso()
    if fields:
        update_owned(conn, 'testimonials', testimonial_id, current_user.id, fields)
        conn.commit()
    row = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    conn.close()
    return jsonify({'testimonial': serialize_row('testimonials', row)})


@app.route('/api/testimonials/<testimonial_id>', methods=['DELETE'])
@login_required
@editor_required
def delete_testimonial(testimonial_id):
    conn = db_connect()
    cur = conn.execute(
        'DELETE FROM testimonials WHERE id = ? AND user_id = ?',
        (testimonial_id, current_user.id),
    )
    if cur.rowcount:
        log_activity(conn, current_user.id, 'testimonial_deleted', 'testimonial', testimonial_id)
    conn.commit()
    conn.close()
    if not cur.rowcount:
        return json_error('Testimonial not found', 404)
    return jsonify({'deleted': True})


def _set_testimonial_status(testimonial_id, status):
    conn = db_connect()
    existing = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    if existing is None:
        conn.close()
        return json_error('Testimonial not found', 404)

    fields = {'status': status}
    if status == 'approved':
        fields['approved_at'] = utcnow_iso()
    update_owned(conn, 'testimonials', testimonial_id, current_user.id, fields)
    log_activity(conn, current_user.id, f'testimonial_{status}', 'testimonial', testimonial_id, {
        'author_name': existing['author_name'],
    })
    conn.commit()
    row = fetch_owned(conn, 'testimonials', testimonial_id, current_user.id)
    conn.close()
    return jsonify({'testimonial': serialize_row('testimonials', row)})


@app.route('/api/testimonials/<testimonial_id>/approve', methods=['POST'])
@login_required
@editor_required
def approve_testimonial(testimonial_id):
    return _set_testimonial_status(testimonial_id, 'approved')


@app.route('/api/testimonials/<testimonial_id>/reject', methods=['POST'])
@login_required
@editor_required
def reject_testimonial(testimonial_id):
    return _set_testimonial_status(testimonial_id, 'rejected')

# ===== FORM ROUTES =====


def _slugify(name):
    base = re.sub(r'[^a-z0-9]+', '-', (name or '').lower()).strip('-')[:50] or 'form'
    return f'{base}-{secrets.token_hex(3)}'


def _validate_form(data, partial=False):
    fields = {}
    if 'name' in data or not partial:
        name = clean_text(data.get('name'))
        if not name:
            return None, 'name is required'
        if len(name) > MAX_NAME_LENGTH:
            return None, f'name must be at most {MAX_NAME_LENGTH} characters'
        fields['name'] = name

    if data.get('slug'):
        slug = str(data['slug']).strip().lower()
        if not SLUG_REGEX.match(slug) or len(slug) > 80:
            return None, 'slug may contain lowercase letters, digits and single hyphens'
        fields['slug'] = slug

    for column in ('welcome_title', 'welcome_message', 'thank_you_title', 'thank_you_message'):
        if column in data:
            fields[column] = clean_text(data.get(column)) or None

    for column in ('is_published', 'collect_text', 'collect_video', 'collect_audio', 'require_rating'):
        if column in data:
            fields[column] = _parse_bool(data.get(column))

    if 'custom_questions' in data:
        questions = data.get('custom_questions') or []
        if not isinstance(questions, list):
            return None, 'custom_questions must be a list'
        fields['custom_questions'] = questions

    return fields, None


@app.route('/api/forms')
@login_required
def list_forms():
    conn = db_connect()
    rows = conn.execute(
        'SELECT * FROM forms WHERE user_id = ? ORDER BY created_at DESC',
        (current_user.id,),
    ).fetchall()
    conn.close()
    return jsonify({'forms': [serialize_row('forms', r) for r in rows]})


@app.route('/api/forms', methods=['POST'])
@login_required
@editor_required
def create_form():
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_form(data)
    if error:
        return json_error(error, 400)

    now = utcnow_iso()
    form_id = new_id()
    fields.setdefault('slug', _slugify(fields['name']))
    conn = db_connect()
    try:
        insert_row(conn, 'forms', {
            **fields,
            'id': form_id,
            'user_id': current_user.id,
            'created_at': now,
            'updated_at': now,
        })
    except sqlite3.IntegrityError:
        conn.close()
        return json_error('That form URL is already taken.', 409)
    log_activity(conn, current_user.id, 'form_created', 'form', form_id, {'name': fields['name']})
    conn.commit()
    row = fetch_owned(conn, 'forms', form_id, current_user.id)
    conn.close()
    return jsonify({'form': serialize_row('forms', row)}), 201


@app.route('/api/forms/<form_id>')
@login_required
def get_form(form_id):
    conn = db_connect()
    row = fetch_owned(conn, 'forms', form_id, current_user.id)
    conn.close()
    if row is None:
        return json_error('Form not found', 404)
    return jsonify({'form': serialize_row('forms', row)})


@app.route('/api/forms/<form_id>', methods=['PATCH'])
@login_required
@editor_required
def update_form(form_id):
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_form(data, partial=True)
    if error:
        return json_error(error, 400)

    conn = db_connect()
    if fetch_owned(conn, 'forms', form_id, current_user.id) is None:
        conn.close()
        return json_error('Form not found', 404)
    if fields:
        try:
            update_owned(conn, 'forms', form_id, current_user.id, fields)
        except sqlite3.IntegrityError:
            conn.close()
            return json_error('That form URL is already taken.', 409)
        conn.commit()
    row = fetch_owned(conn, 'forms', form_id, current_user.id)
    conn.close()
    return jsonify({'form': serialize_row('forms', row)})


@app.route('/api/forms/<form_id>/publish', methods=['POST'])
@login_required
@editor_required
def publish_form(form_id):
    conn = db_connect()
    if fetch_owned(conn, 'forms', form_id, current_user.id) is None:
        conn.close()
        return json_error('Form not found', 404)
    update_owned(conn, 'forms', form_id, current_user.id, {'is_published': True})
    log_activity(conn, current_user.id, 'form_published', 'form', form_id)
    conn.commit()
    row = fetch_owned(conn, 'forms', form_id, current_user.id)
    conn.close()
    return jsonify({'form': serialize_row('forms', row)})


@app.route('/api/forms/<form_id>', methods=['DELETE'])
@login_required
@editor_required
def delete_form(form_id):
    conn = db_connect()
    cur = conn.execute('DELETE FROM forms WHERE id = ? AND user_id = ?', (form_id, current_user.id))
    conn.commit()
    conn.close()
    if not cur.rowcount:
        return json_error('Form not found', 404)
    return jsonify({'deleted': True})

# ===== WIDGET ROUTES =====


def _validate_widget(data, partial=False):
    fields = {}
    if 'name' in data or not partial:
        name = clean_text(data.get('name'))
        if not name:
            return None, 'name is required'
        if len(name) > MAX_NAME_LENGTH:
            return None, f'name must be at most {MAX_NAME_LENGTH} characters'
        fields['name'] = name

    if 'type' in data or not partial:
        widget_type = data.get('type') or 'carousel'
        if widget_type not in WIDGET_TYPES:
            return None, f"type must be one of: {', '.join(WIDGET_TYPES)}"
        fields['type'] = widget_type

    if 'theme' in data:
        fields['theme'] = (clean_text(data.get('theme')) or 'light')[:30]

    if 'testimonial_ids' in data:
        ids = data.get('testimonial_ids') or []
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            return None, 'testimonial_ids must be a list of ids'
        fields['testimonial_ids'] = ids

    if 'settings' in data:
        settings = data.get('settings') or {}
        if not isinstance(settings, dict):
            return None, 'settings must be an object'
        fields['settings'] = settings

    for column in ('is_active', 'show_rating', 'show_date', 'auto_rotate'):
        if column in data:
            fields[column] = _parse_bool(data.get(column))

    return fields, None


@app.route('/api/widgets')
@login_required
def list_widgets():
    conn = db_connect()
    rows = conn.execute(
        'SELECT * FROM widgets WHERE user_id = ? ORDER BY created_at DESC',
        (current_user.id,),
    ).fetchall()
    conn.close()
    return jsonify({'widgets': [serialize_row('widgets', r) for r in rows]})


@app.route('/api/widgets', methods=['POST'])
@login_required
@editor_required
def create_widget():
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_widget(data)
    if error:
        return json_error(error, 400)

    now = utcnow_iso()
    widget_id = new_id()
    embed_src = url_for('public_widget', widget_id=widget_id, _external=True)
    fields['embed_code'] = (
        f'<div data-testimonial-widget="{widget_id}"></div>'
        f'<script async src="{embed_src}" data-widget-id="{widget_id}"></script>'
    )

    conn = db_connect()
    insert_row(conn, 'widgets', {
        **fields,
        'id': widget_id,
        'user_id': current_user.id,
        'created_at': now,
        'updated_at': now,
    })
    log_activity(conn, current_user.id, 'widget_created', 'widget', widget_id, {'name': fields['name']})
    conn.commit()
    row = fetch_owned(conn, 'widgets', widget_id, current_user.id)
    conn.close()
    return jsonify({'widget': serialize_row('widgets', row)}), 201


@app.route('/api/widgets/<widget_id>')
@login_required
def get_widget(widget_id):
    conn = db_connect()
    row = fetch_owned(conn, 'widgets', widget_id, current_user.id)
    conn.close()
    if row is None:
        return json_error('Widget not found', 404)
    return jsonify({'widget': serialize_row('widgets', row)})


@app.route('/api/widgets/<widget_id>', methods=['PATCH'])
@login_required
@editor_required
def update_widget(widget_id):
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)
    fields, error = _validate_widget(data, partial=True)
    if error:
        return json_error(error, 400)

    conn = db_connect()
    if fetch_owned(conn, 'widgets', widget_id, current_user.id) is None:
        conn.close()
        return json_error('Widget not found', 404)
    if fields:
        update_owned(conn, 'widgets', widget_id, current_user.id, fields)
        conn.commit()
    row = fetch_owned(conn, 'widgets', widget_id, current_user.id)
    conn.close()
    return jsonify({'widget': serialize_row('widgets', row)})


@app.route('/api/widgets/<widget_id>', methods=['DELETE'])
@login_required
@editor_required
def delete_widget(widget_id):
    conn = db_connect()
    cur = conn.execute('DELETE FROM widgets WHERE id = ? AND user_id = ?', (widget_id, current_user.id))
    conn.commit()
    conn.close()
    if not cur.rowcount:
        return json_error('Widget not found', 404)
    return jsonify({'deleted': True})

# ===== CAMPAIGN ROUTES =====


def _validate_campaign(conn, data, partial=False):
    fields = {}
    if 'name' in data or not partial:
        name = clean_text(data.get('name'))
        if not name:
            return None, 'name is required'
        fields['name'] = name[:MAX_NAME_LENGTH]

    if 'type' in data or not partial:
        campaign_type = data.get('type') or 'sms'
        if campaign_type not in CAMPAIGN_TYPES:
            return None, f"type must be one of: {', '.join(CAMPAIGN_TYPES)}"
        fields['type'] = campaign_type

    if 'status' in data:
        if data.get('status') not in CAMPAIGN_STATUSES:
            return None, f"status must be one of: {', '.join(CAMPAIGN_STATUSES)}"
        fields['status'] = data['status']

    if 'form_id' in data:
        form_id = data.get('form_id') or None
        if form_id and fetch_owned(conn, 'forms', form_id, current_user.id) is None:
            return None, 'form_id does not match one of your forms'
        fields['form_id'] = form_id

    if 'message_template' in data:
        fields['message_template'] = clean_text(data.get('message_template')) or None

    if 'recipients' in data:
        recipients = data.get('recipients') or []
        if not isinstance(recipients, list):
            return None, 'recipients must be a list'
        fields['recipients'] = recipients
        fields['total_recipients'] = len(recipients)

    return fields, None


@app.route('/api/campaigns')
@login_required
def list_campaigns():
    conn = db_connect()
    rows = conn.execute(
        'SELECT * FROM campaigns WHERE user_id = ? ORDER BY created_at DESC',
        (current_user.id,),
    ).fetchall()
    conn.close()
    return jsonify({'campaigns': [serialize_row('campaigns', r) for r in rows]})


@app.route('/api/campaigns', methods=['POST'])
@login_required
@editor_required
def create_campaign():
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)

    conn = db_connect()
    fields, error = _validate_campaign(conn, data)
    if error:
        conn.close()
        return json_error(error, 400)

    now = utcnow_iso()
    campaign_id = new_id()
    insert_row(conn, 'campaigns', {
        **fields,
        'id': campaign_id,
        'user_id': current_user.id,
        'created_at': now,
        'updated_at': now,
    })
    log_activity(conn, current_user.id, 'campaign_created', 'campaign', campaign_id, {'name': fields['name']})
    conn.commit()
    row = fetch_owned(conn, 'campaigns', campaign_id, current_user.id)
    conn.close()
    return jsonify({'campaign': serialize_row('campaigns', row)}), 201


@app.route('/api/campaigns/<campaign_id>', methods=['PATCH'])
@login_required
@editor_required
def update_campaign(campaign_id):
    data = get_json_body()
    if data is None:
        return json_error('Request body must be a JSON object.', 400)

    conn = db_connect()
    if fetch_owned(conn, 'campaigns', campaign_id, current_user.id) is None:
        conn.close()
        return json_error('Campaign not found', 404)
    fields, error = _validate_campaign(conn, data, partial=True)
    if error:
        conn.close()
        return json_error(error, 400)
    if fields:
        update_owned(conn, 'campaigns', campaign_id, current_user.id, fields)
        conn.commit()
    row = fetch_owned(conn, 'campaigns', campaign_id, current_user.id)
    conn.close()
    return jsonify({'campaign': serialize_row('campaigns', row)})

# ===== DASHBOARD / ANALYTICS ROUTES =====


@app.route('/api/dashboard')
@login_required
def dashboard():
    conn = db_connect()
    summary = load_dashboard(conn, current_user.id)
    conn.close()
    return jsonify(summary)


@app.route('/api/analytics')
@login_required
def analytics():
    conn = db_connect()
    summary = load_analytics(conn, current_user.id, request.args.get('range', '30d'))
    conn.close()
    return jsonify(summary)


@app.route('/api/activity')
@login_required
def activity():
    since = None
    if request.args.get('since'):
        since = parse_timestamp(request.args['since'])
        if since is None:
            return json_error('since must be an ISO 8601 timestamp', 400)
    conn = db_connect()
    items = load_activity(conn, current_user.id, limit=_int_arg('limit', 10, 1, 100), since=since)
    conn.close()
    return jsonify({'activity': items})


@app.route('/api/reports/revenue.pdf')
@login_required
@limiter.limit('20 per hour')
def download_revenue_report():
    conn = db_connect()
    report = load_report_data(conn, current_user.id)
    conn.close()

    pdf_buffer = generate_revenue_report_pdf(
        report,
        workspace_name=current_user.company_name or current_user.display_name,
    )
    return send_file(
        pdf_buffer,
        as_attachment=True,
        download_name=f"revenue_report_{utcnow().strftime('%Y%m%d')}.pdf",
        mimetype='application/pdf',
    )


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'service': 'testimonial-hub'}), 200


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
    reset_ts = int((utcnow() + timedelta(minutes=15)).timestamp())
    resp = jsonify({'error': 'Too many requests. Please wait and try again.', 'reset': reset_ts})
    resp.status_code = 429
    resp.headers['X-RateLimit-Reset'] = str(reset_ts)
    return resp


@app.errorhandler(CSRFError)
def csrf_failed(error):
    return json_error('CSRF token missing or invalid. Fetch /api/csrf-token and retry.', 400)


@app.errorhandler(400)
def bad_request(error):
    return json_error('Bad request.', 400)


@app.errorhandler(401)
def unauthorized_error(error):
    return json_error('Authentication required.', 401)


@app.errorhandler(403)
def forbidden(error):
    return json_error('Forbidden.', 403)


@app.errorhandler(404)
def not_found(error):
    return json_error('Not found.', 404)


@app.errorhandler(405)
def method_not_allowed(error):
    return json_error('Method not allowed.', 405)


@app.errorhandler(500)
def internal_error(error):
    app.logger.error('Unhandled server error: %s', error)
    return json_error('An unexpected server error occurred. Please retry in a moment.', 500)


@app.errorhandler(RequestEntityTooLarge)
def payload_too_large(error):
    return json_error('Request body exceeds the upload limit.', 413)

# ===== APPLICATION ENTRY POINT =====

if __name__ == '__main__':
    init_db()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
