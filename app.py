from flask import Blueprint, Flask, Response, current_app, request, jsonify, g
from models import configure_sqlite, db
import click
import logging
import time
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from errors import AnalyticsError, AuthenticationRequired, ValidationFailed
from sites import delete_site, list_sites_for_owner, register_site, update_site
from stats import get_site_stats
from visits import record_visit

logger = logging.getLogger(__name__)

# Prometheus metrics
visits_counter = Counter('visits_total', 'Total visits recorded', ['device_type'])
duplicate_counter = Counter('duplicate_visits_total', 'Visit deliveries dropped as duplicates')
request_duration = Histogram('request_duration_seconds', 'Request duration', ['endpoint'])
error_counter = Counter('errors_total', 'Total errors', ['type'])

api = Blueprint('api', __name__)


def string_field(data, field, required=False, min_length=None):
    value = data.get(field)
    if value is None:
        if required:
            raise ValidationFailed(f'Missing {field}')
        return None
    if not isinstance(value, str):
        raise ValidationFailed(f'{field} must be a string')
    if min_length and len(value.strip()) < min_length:
        raise ValidationFailed(f'{field} must be at least {min_length} characters')
    return value


def site_uuid_field(value):
    site_uuid = string_field(
        {'site_uuid': value},
        'site_uuid',
        required=True,
        min_length=current_app.config['SITE_UUID_MIN_LENGTH'],
    )
    return site_uuid.strip()


@api.before_request
def load_caller():
    """Caller identity, already verified upstream, for owner-gated routes."""
    data = request.get_json(silent=True) or {}
    caller = data.get('caller_pubkey')

    if not caller:
        caller = request.headers.get('X-Caller-Pubkey')

    if isinstance(caller, str) and caller.strip():
        g.caller_pubkey = caller.strip()
    else:
        g.caller_pubkey = None


def require_caller():
    if not g.caller_pubkey:
        raise AuthenticationRequired()
    return g.caller_pubkey


@api.route('/')
def home():
    return "Collector is running"

@api.route('/health')
def health():
    return {'status': 'healthy', 'timestamp': datetime.utcnow().isoformat()}

@api.route('/metrics')
def metrics():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

@api.route('/api/sites', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}

    site = register_site(
        db.session,
        site_uuid_field(data.get('site_uuid')),
        string_field(data, 'owner_npub', required=True),
        name=string_field(data, 'name'),
    )
    return jsonify(site.to_dict())

@api.route('/api/sites', methods=['GET'])
def list_sites():
    owner = request.args.get('owner')
    if not owner:
        raise ValidationFailed('Missing owner')

    sites = list_sites_for_owner(db.session, owner)
    return jsonify([site.to_dict() for site in sites])

@api.route('/api/visits', methods=['POST'])
def track_visit():
    start_time = time.time()
    data = request.get_json(silent=True) or {}

    site_uuid = site_uuid_field(data.get('site_uuid'))
    user_agent = string_field(data, 'user_agent')
    event_id = string_field(data, 'event_id')

    if user_agent is None:
        user_agent = request.headers.get('User-Agent')
    if event_id is None:
        event_id = request.headers.get('X-Event-Id')

    visit = record_visit(
        db.session,
        site_uuid,
        page_path=string_field(data, 'page_path'),
        device_type=string_field(data, 'device_type'),
        user_agent=user_agent,
        event_id=event_id,
    )

    # Update Prometheus metrics
    if visit.duplicate:
        duplicate_counter.inc()
    else:
        visits_counter.labels(device_type=visit.device_type).inc()

    request_duration.labels(endpoint='/api/visits').observe(time.time() - start_time)

    return jsonify(visit.to_dict()), 200 if visit.duplicate else 201

@api.route('/api/sites/<site_uuid>/stats')
def site_stats(site_uuid):
    start_time = time.time()

    stats = get_site_stats(
        db.session,
        site_uuid_field(site_uuid),
        require_caller(),
        tz=current_app.config['ANALYTICS_TIMEZONE'],
    )

    request_duration.labels(endpoint='/api/sites/stats').observe(time.time() - start_time)
    return jsonify(stats)

@api.route('/api/sites/<site_uuid>', methods=['PATCH'])
def update(site_uuid):
    data = request.get_json(silent=True) or {}

    # Only fields present in the body are written; an explicit null clears
    fields = {}
    if 'name' in data:
        fields['name'] = string_field(data, 'name')

    site = update_site(db.session, site_uuid_field(site_uuid), require_caller(), **fields)
    return jsonify(site.to_dict())

@api.route('/api/sites/<site_uuid>', methods=['DELETE'])
def delete(site_uuid):
    result = delete_site(db.session, site_uuid_field(site_uuid), require_caller())
    return jsonify(result)


def handle_analytics_error(e):
    error_counter.labels(type=e.error_type).inc()
    return jsonify({'error': e.message}), e.status_code


def handle_storage_error(e):
    db.session.rollback()
    logger.exception('Storage error while handling %s %s', request.method, request.path)
    error_counter.labels(type='processing').inc()
    return jsonify({'error': 'Failed to process request'}), 500


def check_timezone(name):
    """Fail at startup instead of on every stats request."""
    if not name:
        return
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f'Unknown ANALYTICS_TIMEZONE: {name!r}') from e


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.from_mapping(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    app.logger.setLevel(app.config['LOG_LEVEL'])

    check_timezone(app.config['ANALYTICS_TIMEZONE'])

    db.init_app(app)
    with app.app_context():
        configure_sqlite(db.engine)

    app.register_blueprint(api)
    app.register_error_handler(AnalyticsError, handle_analytics_error)
    app.register_error_handler(SQLAlchemyError, handle_storage_error)

    @app.cli.command('init-db')
    def init_db():
        """Create the sites, visits and page_stats tables."""
        db.create_all()
        click.echo('Database initialized')

    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(debug=True, port=5000)
