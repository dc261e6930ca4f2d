# tests/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# app reads its config at import time
os.environ["FLASK_CONFIG_FILE"] = str(ROOT / "tests" / "no-such-config.py")
os.environ["DREAMWEAVER_SQLALCHEMY_DATABASE_URI"] = "sqlite://"
os.environ["DREAMWEAVER_SECRET_KEY"] = "test-secret"
os.environ["DREAMWEAVER_BCRYPT_ROUNDS"] = "4"
os.environ["DREAMWEAVER_APP_BASE_URL"] = "http://localhost:5173"
os.environ["DREAMWEAVER_STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["DREAMWEAVER_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["DREAMWEAVER_STRIPE_PRICE_ID"] = "price_regular"
os.environ["DREAMWEAVER_STRIPE_TRIAL_PRICE_ID"] = "price_trial"

from identity import MemoryIdentityProvider  # noqa: E402


@pytest.fixture
def flask_app():
    """The module-level app on a fresh in-memory schema."""
    from app import app, db

    app.config.update(TESTING=True)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def provider():
    # cheap bcrypt rounds keep the suite fast
    return MemoryIdentityProvider(bcrypt_rounds=4)
