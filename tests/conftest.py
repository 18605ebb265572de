"""Test configuration and fixtures."""

import os
import tempfile
from pathlib import Path

import pytest

from app import create_app
from helpers import encode_npub
from models import db as _db

OWNER_HEX = '7e7e9c42a91bfef19fa929e5fda1b72e0ebc1a4c1141673e2794234d86addf4e'
OTHER_HEX = 'f' * 63 + 'e'


@pytest.fixture
def app():
    """Application bound to a throwaway SQLite file."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_path}',
        'ANALYTICS_TIMEZONE': 'UTC',
    })

    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()

    for suffix in ('', '-wal', '-shm'):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    return _db.session


@pytest.fixture
def owner_hex():
    return OWNER_HEX


@pytest.fixture
def owner_npub():
    return encode_npub(OWNER_HEX)


@pytest.fixture
def other_hex():
    return OTHER_HEX
