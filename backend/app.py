import logging
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_cors import CORS

from . import auth, business, pickups, points, profiles, realtime
from .auth import Session
from .config import load_config
from .db import Store
from .errors import AppError, ValidationError
from .models import Collector, Identity, PickupStatus, parse_profile

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')

SSE_HEADERS = {
    'Content-Type': 'text/event-stream',
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no'  # for some proxies
}


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    settings = load_config(overrides)
    app = Flask(__name__)
    app.config.update(settings)

    store = Store(settings['DB_PATH'])
    store.init_schema()
    if settings.get('SEED_REWARDS'):
        points.seed_rewards(store)
    app.extensions['store'] = store

    CORS(app, resources={r"/api/*": {"origins": settings['CORS_ORIGINS']}})
    app.register_blueprint(api)

    @app.errorhandler(AppError)
    def handle_app_error(err: AppError):
        if err.status_code >= 500:
            logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def not_found(_err):
        return jsonify({"error": "not found"}), 404

    @app.teardown_request
    def dispose_session(exc: Optional[BaseException] = None) -> None:
        session = g.pop('session', None)
        if session is not None:
            session.dispose()

    return app


def get_store() -> Store:
    return current_app.extensions['store']


def parse_token_from_auth() -> Optional[str]:
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    return auth_header.split(' ', 1)[1].strip() or None


def parse_token_from_param() -> Optional[str]:
    """Token from the query string (for SSE/EventSource)."""
    return (request.args.get('token') or '').strip() or None


def current_session() -> Session:
    if 'session' not in g:
        token = parse_token_from_auth() or (parse_token_from_param() if request.path.endswith('/stream') else None)
        g.session = Session(get_store()).resume(token)
    return g.session


def require(role: Optional[str] = None) -> Identity:
    return current_session().require(role)


def _session_payload(session: Session) -> Dict[str, Any]:
    return {"user": _me(session.identity), "token": session.token}


def _me(identity: Identity) -> Dict[str, Any]:
    profile = profiles.get_profile(get_store(), identity)
    body = profile.to_dict() if isinstance(profile, Collector) else profile.model_dump()
    body['role'] = identity.role
    return body


def _float_arg(name: str, default: Optional[float] = None) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number")


# ======== Health & auth ========
@api.route('/health', methods=['GET'])
def health() -> Tuple[Any, int]:
    return jsonify({"status": "ok"}), 200


@api.route('/signup', methods=['POST'])
def signup() -> Tuple[Any, int]:
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    email = data.get('email')
    password: str = (data.get('password') or '').strip()
    fields = {k: v for k, v in data.items() if k not in ('email', 'password')}
    fields.setdefault('role', 'user')
    profile = parse_profile(fields)
    session = Session(get_store())
    g.session = session
    session.sign_up(email, password, profile)
    return jsonify(_session_payload(session)), 201


@api.route('/login', methods=['POST'])
def login() -> Tuple[Any, int]:
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    session = Session(get_store())
    g.session = session
    session.sign_in_with_password(data.get('email'), (data.get('password') or '').strip())
    return jsonify(_session_payload(session)), 200


@api.route('/otp/request', methods=['POST'])
def request_otp() -> Tuple[Any, int]:
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    code = auth.request_sign_in_otp(get_store(), data.get('email'), current_app.config)
    body: Dict[str, Any] = {"status": "sent"}
    if current_app.config.get('DEV_MODE_OTP'):
        body["dev_otp"] = code
    return jsonify(body), 200


@api.route('/otp/verify', methods=['POST'])
def verify_otp() -> Tuple[Any, int]:
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    session = Session(get_store())
    g.session = session
    session.sign_in_with_otp(data.get('email'), (data.get('code') or '').strip())
    return jsonify(_session_payload(session)), 200


@api.route('/logout', methods=['POST'])
def logout() -> Tuple[Any, int]:
    session = current_session()
    session.require()
    session.sign_out()
    return jsonify({"status": "signed out"}), 200


@api.route('/me', methods=['GET'])
def me() -> Tuple[Any, int]:
    identity = require()
    return jsonify({"user": _me(identity)}), 200


@api.route('/profile', methods=['PUT'])
def update_profile() -> Tuple[Any, int]:
    identity = require()
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    profiles.update_profile(get_store(), identity, data)
    return jsonify({"user": _me(identity)}), 200


# ======== Collectors ========
@api.route('/scrapper/location', methods=['POST'])
def update_location() -> Tuple[Any, int]:
    identity = require('scrapper')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    collector = profiles.update_location(get_store(), identity.id, data.get('latitude'), data.get('longitude'))
    return jsonify({"scrapper": collector.to_dict()}), 200


@api.route('/scrapper/availability', methods=['POST'])
def update_availability() -> Tuple[Any, int]:
    identity = require('scrapper')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    if not isinstance(data.get('available'), bool):
        return jsonify({"error": "available must be true or false"}), 400
    collector = profiles.set_availability(get_store(), identity.id, data['available'])
    return jsonify({"scrapper": collector.to_dict()}), 200


@api.route('/scrappers/nearby', methods=['GET'])
def nearby_scrappers() -> Tuple[Any, int]:
    require()
    found = profiles.nearby_collectors(
        get_store(),
        request.args.get('lat'),
        request.args.get('lng'),
        radius_km=_float_arg('radius_km', 10.0),
    )
    items = []
    for collector, distance in found:
        item = collector.to_dict()
        item['distance_km'] = distance
        items.append(item)
    return jsonify({"scrappers": items}), 200


# ======== Pickups ========
@api.route('/pickups', methods=['POST'])
def create_pickup() -> Tuple[Any, int]:
    identity = require('user')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    pickup, candidates = pickups.create_request(
        get_store(),
        identity.id,
        weight=data.get('weight'),
        address=data.get('address'),
        pincode=data.get('pincode'),
        pickup_date=data.get('date'),
        time_slot=data.get('time_slot'),
        material_types=data.get('type'),
        latitude=data.get('latitude'),
        longitude=data.get('longitude'),
    )
    items = []
    for collector in candidates:
        item = collector.to_dict()
        item['estimated_price'] = collector.quote(pickup.weight, pickup.material_types)
        items.append(item)
    return jsonify({"pickup": pickup.to_dict(), "candidates": items}), 201


@api.route('/pickups', methods=['GET'])
def list_my_pickups() -> Tuple[Any, int]:
    identity = require('user')
    items = pickups.list_requests_for_user(get_store(), identity.id)
    return jsonify({"pickups": [p.to_dict() for p in items]}), 200


def _status_arg():
    raw = (request.args.get('status') or '').strip()
    if not raw:
        return None
    return [s for s in raw.split(',') if s.strip()]


@api.route('/pickups/open', methods=['GET'])
def list_open_pickups() -> Tuple[Any, int]:
    identity = require('scrapper')
    pincode = request.args.get('pincode') or profiles.get_collector(get_store(), identity.id).pincode
    items = pickups.list_requests_for_collector(get_store(), pincode, _status_arg())
    return jsonify({"pickups": [p.to_dict() for p in items]}), 200


@api.route('/pickups/assigned', methods=['GET'])
def list_assigned_pickups() -> Tuple[Any, int]:
    identity = require('scrapper')
    status_filter = _status_arg()
    if status_filter is None:
        items = pickups.list_assigned(get_store(), identity.id)
    else:
        items = pickups.list_assigned(get_store(), identity.id, status_filter)
    return jsonify({"pickups": [p.to_dict() for p in items]}), 200


@api.route('/pickups/active', methods=['GET'])
def active_pickup() -> Tuple[Any, int]:
    identity = require('scrapper')
    pickup = pickups.get_active_pickup(get_store(), identity.id)
    return jsonify({"pickup": pickup.to_dict() if pickup else None}), 200


@api.route('/pickups/<pickup_id>/accept', methods=['POST'])
def accept_pickup(pickup_id: str) -> Tuple[Any, int]:
    identity = require('scrapper')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    pickup = pickups.accept_request(get_store(), pickup_id, identity.id, data.get('status') or PickupStatus.SCHEDULED)
    return jsonify({"pickup": pickup.to_dict()}), 200


@api.route('/pickups/<pickup_id>/reject', methods=['POST'])
def reject_pickup(pickup_id: str) -> Tuple[Any, int]:
    identity = require()
    if identity.role == 'scrapper':
        pickup = pickups.reject_request(get_store(), pickup_id, collector_id=identity.id)
    else:
        pickup = pickups.reject_request(get_store(), pickup_id, user_id=identity.id)
    return jsonify({"pickup": pickup.to_dict()}), 200


@api.route('/pickups/<pickup_id>/status', methods=['POST'])
def update_pickup_status(pickup_id: str) -> Tuple[Any, int]:
    identity = require('scrapper')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    if not data.get('status'):
        return jsonify({"error": "status is required"}), 400
    pickup = pickups.advance_status(get_store(), pickup_id, data['status'], collector_id=identity.id)
    return jsonify({"pickup": pickup.to_dict()}), 200


@api.route('/pickups/stream')
def pickups_stream():
    """Server-Sent Events stream of the caller's live pickup list."""
    # For SSE we accept token as query param due to EventSource limitations
    identity = require()
    store = get_store()
    if identity.role == 'user':
        live = realtime.user_pickups_view(store, identity.id)
    elif (request.args.get('view') or 'area') == 'assigned':
        live = realtime.assigned_pickups_view(store, identity.id)
    else:
        live = realtime.area_requests_view(store, profiles.get_collector(store, identity.id).pincode)
    live.start()
    keepalive = current_app.config.get('STREAM_KEEPALIVE_SECONDS', 15)
    return Response(realtime.sse_stream(live, keepalive), headers=SSE_HEADERS)


# ======== Points & rewards ========
@api.route('/points', methods=['GET'])
def get_points() -> Tuple[Any, int]:
    identity = require('user')
    store = get_store()
    return jsonify({
        "balance": points.get_balance(store, identity.id),
        "history": [e.model_dump() for e in points.list_ledger(store, identity.id)],
    }), 200


@api.route('/impact', methods=['GET'])
def get_impact() -> Tuple[Any, int]:
    identity = require('user')
    return jsonify(points.user_impact(get_store(), identity.id)), 200


@api.route('/rewards', methods=['GET'])
def list_rewards() -> Tuple[Any, int]:
    return jsonify({"rewards": [r.model_dump() for r in points.list_rewards(get_store())]}), 200


@api.route('/rewards/<reward_id>/redeem', methods=['POST'])
def redeem_reward(reward_id: str) -> Tuple[Any, int]:
    identity = require('user')
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    redemption, entry, balance = points.redeem_reward(
        get_store(), identity.id, reward_id, data.get('points_required')
    )
    return jsonify({
        "redemption": redemption.model_dump(),
        "entry": entry.model_dump(),
        "balance": balance,
    }), 200


# ======== Business locations ========
@api.route('/business/scrape', methods=['POST'])
def scrape_business() -> Tuple[Any, int]:
    require()
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    location = business.scrape_business(get_store(), data.get('url'), current_app.config)
    return jsonify({"location": location.model_dump()}), 201


@api.route('/business', methods=['GET'])
def list_business() -> Tuple[Any, int]:
    locations = business.list_business_locations(get_store(), request.args.get('q'))
    return jsonify({"locations": [loc.model_dump() for loc in locations]}), 200


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    application = create_app()
    application.run(host='0.0.0.0', port=application.config['PORT'])
