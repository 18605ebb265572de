from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.orm import validates
from datetime import datetime

from identity import normalize_pubkey
from normalize import DEVICE_TYPES

db = SQLAlchemy()

class Site(db.Model):
    __tablename__ = 'sites'

    id = db.Column(db.Integer, primary_key=True)
    site_uuid = db.Column(db.String(128), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200))

    # Owner identity as supplied, plus its canonical hex form for lookups
    owner_npub = db.Column(db.String(128), index=True)
    owner_pubkey = db.Column(db.String(64), index=True)

    secret_token = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @validates('site_uuid')
    def validate_site_uuid(self, key, value):
        if not value or not value.strip():
            raise ValueError('site_uuid must be non-empty')
        return value

    @validates('owner_npub')
    def validate_owner_npub(self, key, value):
        self.owner_pubkey = normalize_pubkey(value)
        return value

    def to_dict(self):
        return {
            'site_uuid': self.site_uuid,
            'name': self.name,
            'owner_npub': self.owner_npub,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

class Visit(db.Model):
    __tablename__ = 'visits'

    id = db.Column(db.BigInteger().with_variant(db.Integer, 'sqlite'), primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id', ondelete='CASCADE'), nullable=False, index=True)
    page_path = db.Column(db.Text, nullable=False)
    device_type = db.Column(db.String(10), nullable=False)  # desktop | mobile | tablet | other

    # Caller supplied delivery id; a repeated id is dropped, not counted
    event_id = db.Column(db.String(128), unique=True)
    visited_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.Index('ix_visits_site_page', 'site_id', 'page_path'),
    )

    @validates('page_path')
    def validate_page_path(self, key, value):
        return _check_page_path(value)

    @validates('device_type')
    def validate_device_type(self, key, value):
        return _check_device_type(value)

class PageStat(db.Model):
    __tablename__ = 'page_stats'

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id', ondelete='CASCADE'), nullable=False, index=True)
    page_path = db.Column(db.Text, nullable=False)
    device_type = db.Column(db.String(10), nullable=False)
    visit_count = db.Column(db.Integer, nullable=False, default=0)
    last_seen = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('site_id', 'page_path', 'device_type', name='uq_page_stats_site_page_device'),
    )

    @validates('page_path')
    def validate_page_path(self, key, value):
        return _check_page_path(value)

    @validates('device_type')
    def validate_device_type(self, key, value):
        return _check_device_type(value)

    @validates('visit_count')
    def validate_visit_count(self, key, value):
        if value is None or value < 0:
            raise ValueError('visit_count must be a non-negative integer')
        return value


def _check_page_path(value):
    if not value or not value.startswith('/'):
        raise ValueError(f'page_path must be absolute: {value!r}')
    return value


def _check_device_type(value):
    if value not in DEVICE_TYPES:
        raise ValueError(f'device_type must be one of {DEVICE_TYPES}: {value!r}')
    return value


def configure_sqlite(engine):
    """Make SQLite transactions real: FK enforcement and one writer per transaction."""
    if engine.dialect.name != 'sqlite':
        return

    file_backed = engine.url.database not in (None, '', ':memory:')

    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN instead of the driver
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        if file_backed:
            cursor.execute('PRAGMA journal_mode=WAL')
        cursor.close()

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')
