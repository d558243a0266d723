import uuid
from datetime import date, timedelta

import pytest

from backend import pickups, profiles
from backend.app import create_app
from backend.db import Store, now_iso
from backend.models import CollectorProfile, UserProfile

PINCODE = '411001'


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / 'pickups.sqlite'))
    s.init_schema()
    return s


@pytest.fixture
def tomorrow():
    return (date.today() + timedelta(days=1)).isoformat()


def _account(store, role):
    account_id = str(uuid.uuid4())
    email = f"{role}-{account_id[:8]}@example.com"
    store.insert('accounts', {
        'id': account_id,
        'email': email,
        'password_hash': None,
        'role': role,
        'created_at': now_iso(),
    })
    return account_id, email


@pytest.fixture
def make_user(store):
    def _make(pincode=PINCODE, name='Asha'):
        account_id, email = _account(store, 'user')
        store.insert('users', profiles.user_row(account_id, email, UserProfile(name=name, pincode=pincode)))
        return account_id
    return _make


@pytest.fixture
def make_collector(store):
    def _make(pincode=PINCODE, materials=('paper', 'metal'), prices=None, available=True, rating=0,
              latitude=None, longitude=None, name='Ravi'):
        account_id, email = _account(store, 'scrapper')
        profile = CollectorProfile(
            name=name,
            pincode=pincode,
            material_types=list(materials),
            scrap_prices=prices or {},
            available=available,
        )
        row = profiles.collector_row(account_id, email, profile)
        row.update({'rating': rating, 'latitude': latitude, 'longitude': longitude})
        store.insert('scrappers', row)
        return account_id
    return _make


@pytest.fixture
def make_pickup(store, make_user, tomorrow):
    def _make(user_id=None, weight=10, pincode=PINCODE, materials=('paper',)):
        user_id = user_id or make_user(pincode=pincode)
        pickup, _ = pickups.create_request(
            store, user_id, weight, '12 MG Road', pincode, tomorrow, 'morning', list(materials)
        )
        return pickup
    return _make


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'DB_PATH': str(tmp_path / 'api.sqlite'),
        'SEED_REWARDS': True,
        'DEV_MODE_OTP': True,
        'SMTP_HOST': '',
        'SCRAPER_FUNCTION_URL': 'http://scraper.test/scrape-business',
    })
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
