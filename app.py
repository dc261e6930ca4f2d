### File: app.py
from datetime import datetime, timezone
from flask_cors import CORS
from flask import Flask, jsonify, request
from flask_login import LoginManager, login_user, login_required, logout_user, current_user, UserMixin
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from functools import wraps
from sqlalchemy.exc import IntegrityError
import logging
import os

from auth_form import error_message
from billing import BillingError, create_checkout_session, handle_webhook
from identity import (
    DEFAULT_BCRYPT_ROUNDS,
    EMAIL_IN_USE,
    WRONG_CREDENTIAL,
    IdentityError,
    check_password,
    hash_password,
    normalize_email,
    sql_create_account,
    sql_find_account,
    validate_credentials,
)
from plans import Plan, is_pro
from stores import (
    Dream,
    NotFoundError,
    UserProfile,
    profile_from_row,
    sql_list_dreams,
    sql_replace_dreams,
    sql_update_dream,
    sql_upsert_dream,
    sql_upsert_profile,
)


logger = logging.getLogger()
logger.setLevel(logging.INFO)

if os.getenv("LOG_TO_STDOUT", "1") == "1":
    handler = logging.StreamHandler()
else:
    log_dir = os.getenv("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(os.path.join(log_dir, "dreamweaver.log"))

handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
logger.addHandler(handler)


app = Flask(__name__)

# defaults; config.py and DREAMWEAVER_* env vars override
app.config.update(
    SQLALCHEMY_DATABASE_URI="sqlite:///dreamweaver.db",
    SECRET_KEY=os.getenv("SECRET_KEY"),
    BCRYPT_ROUNDS=DEFAULT_BCRYPT_ROUNDS,
    APP_BASE_URL="http://localhost:5173",
    CORS_ORIGINS=["http://localhost:5173"],
    STRIPE_SECRET_KEY=None,
    STRIPE_WEBHOOK_SECRET=None,
    STRIPE_PRICE_ID=None,
    STRIPE_TRIAL_PRICE_ID=None,
)

cfg_path = os.getenv("FLASK_CONFIG_FILE", "config.py")
if os.path.exists(cfg_path):
    app.config.from_pyfile(os.path.abspath(cfg_path))

# env overrides (Flask 3)
app.config.from_prefixed_env(prefix="DREAMWEAVER")

if not app.config.get("SECRET_KEY"):
    logger.warning("SECRET_KEY is not set; sessions will not survive a restart")
    app.config["SECRET_KEY"] = os.urandom(32).hex()

if not app.config.get("STRIPE_SECRET_KEY"):
    logger.warning("Stripe is not configured. Set DREAMWEAVER_STRIPE_SECRET_KEY to enable checkout.")

CORS(app, supports_credentials=True, origins=app.config["CORS_ORIGINS"])

db = SQLAlchemy(app)
login_manager = LoginManager(app)
migrate = Migrate(app, db)


def _utcnow():
    # naive UTC for DB
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Models
class Account(db.Model, UserMixin):
    """Identity record: what a user signs in with."""
    __tablename__ = 'accounts'

    id = db.Column(db.String(36), primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password = db.Column(db.String(128), nullable=False)  # bcrypt hash
    signup_date = db.Column(db.DateTime, default=_utcnow)


class User(db.Model):
    """Profile document, one per account id."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True)  # == Account.id
    email = db.Column(db.String(120), nullable=False)
    plan = db.Column(db.String(20), nullable=False, default=Plan.FREE.value, server_default=Plan.FREE.value)
    trial_end_date = db.Column(db.DateTime, nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    dreams = db.relationship("DreamEntry", back_populates="user", cascade="all, delete-orphan")


class DreamEntry(db.Model):
    __tablename__ = "dreams"

    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), primary_key=True)
    id = db.Column(db.String(64), primary_key=True)  # client-generated
    timestamp = db.Column(db.DateTime, nullable=False)
    content = db.Column(db.Text)
    chat_history = db.Column(db.JSON, nullable=True)  # [{"role": ..., "content": ...}]

    user = db.relationship("User", back_populates="dreams")

    # newest-first listing per user
    __table_args__ = (
        db.Index("ix_dreams_user_timestamp", "user_id", "timestamp"),
    )

    def __repr__(self):
        return f"<DreamEntry id={self.id} user_id={self.user_id}>"


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(Account, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "unauthenticated"}), 401


def _get_or_create_profile(account):
    """Profile for ``account``; a missing one is created on the spot."""
    row = db.session.get(User, account.id)
    if row is None:
        logger.warning(f"Account {account.id} has no profile; creating one")
        row = User(id=account.id, email=account.email, plan=Plan.FREE.value)
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError:
            # created concurrently
            db.session.rollback()
            row = db.session.get(User, account.id)
    return profile_from_row(row)


def requires_pro(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"error": "pro_required"}), 402
        try:
            profile = _get_or_create_profile(current_user)
        except Exception as e:
            logger.error(f"Error checking plan: {e}", exc_info=True)
            return jsonify({"error": "Failed to check plan"}), 500
        if not is_pro(profile):
            return jsonify({"error": "pro_required"}), 402
        return fn(*args, **kwargs)
    return _wrap


def _error(code, message=None, status=400):
    return jsonify({"error": error_message(code, message), "code": code}), status


# New user registration
@app.route("/api/register", methods=["POST"])
def register():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""

    try:
        email = validate_credentials(data.get("email"), password)
    except IdentityError as e:
        logger.warning(f"Invalid registration: {e.code}")
        return _error(e.code, e.message)

    logger.info(f"Registration attempt: {email}")

    if sql_find_account(email) is not None:
        logger.warning("Duplicate registration attempt")
        return _error(EMAIL_IN_USE, status=409)

    hashed = hash_password(password, app.config["BCRYPT_ROUNDS"])
    try:
        record = sql_create_account(email, hashed)
    except IdentityError as e:
        return _error(e.code, e.message, status=409)

    profile = UserProfile(id=record.id, email=record.email, plan=Plan.FREE)
    try:
        sql_upsert_profile(record.id, profile)
    except Exception as e:
        # the account stands; check_auth recreates the profile later
        logger.error(f"Error creating profile for {record.id}: {e}", exc_info=True)
        return jsonify({"error": "Failed to create profile"}), 500

    logger.info(f"Registered new user: {record.id}")
    login_user(db.session.get(Account, record.id), remember=True)
    return jsonify({
        "message": "Registered",
        "user": profile.to_dict(),
    }), 201


@app.route("/api/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"error": "Please enter both email and password."}), 400

    record = sql_find_account(email)
    if record is None or not check_password(password, record.password_hash):
        return _error(WRONG_CREDENTIAL, status=401)
    account = db.session.get(Account, record.id)
    login_user(account, remember=True)
    try:
        profile = _get_or_create_profile(account)
    except Exception as e:
        logger.error(f"Error resolving profile: {e}", exc_info=True)
        return jsonify({"error": "Failed to load profile"}), 500
    return jsonify({
        "message": "Logged in",
        "user": profile.to_dict(),
    })


@app.route("/api/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "Logged out"})


@app.route("/api/check_auth", methods=["GET"])
def check_auth():
    if current_user.is_authenticated:
        try:
            profile = _get_or_create_profile(current_user)
        except Exception as e:
            # fail closed
            logger.error(f"Error resolving profile: {e}", exc_info=True)
            return jsonify({"authenticated": False}), 401
        return jsonify({"authenticated": True, "user": profile.to_dict()})
    return jsonify({"authenticated": False}), 401


# --- Dreams ---
@app.route("/api/dreams", methods=["GET"])
@login_required
def get_dreams():
    return jsonify([d.to_dict() for d in sql_list_dreams(current_user.id)])


@app.route("/api/dreams", methods=["POST"])
@login_required
def save_dream():
    data = request.get_json(silent=True) or {}
    try:
        dream = Dream.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid dream: {e}"}), 400

    try:
        _get_or_create_profile(current_user)
        sql_upsert_dream(current_user.id, dream)
    except Exception as e:
        logger.error(f"Error saving dream: {e}", exc_info=True)
        return jsonify({"error": "Failed to save dream"}), 500
    return jsonify(dream.to_dict()), 201


@app.route("/api/dreams", methods=["PUT"])
@login_required
def replace_dreams():
    """Replace every dream of the current user in one transaction."""
    data = request.get_json(silent=True)
    items = data.get("dreams") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return jsonify({"error": "Expected a list of dreams"}), 400

    try:
        batch = [Dream.from_dict(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid dream: {e}"}), 400

    try:
        _get_or_create_profile(current_user)
        sql_replace_dreams(current_user.id, batch)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error(f"Error replacing dreams: {e}", exc_info=True)
        return jsonify({"error": "Failed to save dreams"}), 500
    return jsonify({"count": len(batch)})


@app.route("/api/dreams/<dream_id>/chat", methods=["PATCH"])
@login_required
@requires_pro
def update_dream_chat(dream_id):
    data = request.get_json(silent=True) or {}
    if "chatHistory" not in data:
        return jsonify({"error": "chatHistory is required"}), 400

    try:
        dream = sql_update_dream(current_user.id, dream_id, {"chat_history": data["chatHistory"]})
    except NotFoundError:
        return jsonify({"error": "Dream not found"}), 404
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid chat history: {e}"}), 400
    except Exception as e:
        logger.error(f"Error updating chat history: {e}", exc_info=True)
        return jsonify({"error": "Failed to update dream"}), 500
    return jsonify(dream.to_dict())


# --- Billing ---
@app.route("/api/billing/checkout", methods=["POST"])
def create_checkout():
    """Create a Stripe Checkout session; the client redirects with the returned id."""
    user_id = current_user.id if current_user.is_authenticated else None
    origin = request.headers.get("Origin") or app.config["APP_BASE_URL"]
    try:
        return jsonify(create_checkout_session(user_id, origin))
    except BillingError as e:
        return jsonify({"error": e.message, "code": e.code}), e.status
    except Exception as e:
        logger.error(f"Error creating checkout session: {e}", exc_info=True)
        return jsonify({"error": "Failed to create checkout session", "code": "internal"}), 500


@app.route("/api/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    """Stripe event delivery; the signature is checked against the raw body."""
    body, status = handle_webhook(
        request.get_data(as_text=True),
        request.headers.get("Stripe-Signature"),
    )
    if isinstance(body, dict):
        return jsonify(body), status
    return body, status



if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000)
