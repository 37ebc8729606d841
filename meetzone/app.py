import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Optional

from flask import Flask, current_app, g, jsonify, request
from flask_cors import CORS

from .config import Settings
from .errors import MissingCredentials, UpstreamUnavailable
from .geometry import travel_distances
from .maps_service import AzureMapsService, GoogleMapsService
from .models import GeoPoint, Location, MeetingZoneState
from .orchestrator import MeetingZoneOrchestrator
from .place_resolver import PlaceResolver
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'meetzone'


class InvalidRequest(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def run_async(coro):
    """Run a coroutine to completion on a fresh event loop"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        asyncio.set_event_loop(None)
        loop.close()


def _build_services(settings: Settings):
    google_service = None
    azure_service = None
    if settings.has_google_key:
        try:
            logger.info("Initializing Google Maps service...")
            google_service = GoogleMapsService(settings.google_maps_api_key, timeout=settings.request_timeout)
        except (MissingCredentials, ValueError) as e:
            logger.error(f"Error initializing Google Maps service: {e}")
    else:
        logger.warning("GOOGLE_MAPS_API_KEY not found or not configured in environment variables")
    if settings.has_azure_key:
        logger.info("Initializing Azure Maps service...")
        azure_service = AzureMapsService(settings.azure_maps_key, timeout=settings.request_timeout)
    else:
        logger.warning("AZURE_MAPS_KEY not found or not configured in environment variables")
    return google_service, azure_service


def _ext() -> Dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def _require_google() -> GoogleMapsService:
    service = _ext()['google']
    if service is None:
        raise MissingCredentials("Google Maps API key not configured")
    return service


def _new_orchestrator() -> MeetingZoneOrchestrator:
    factory = _ext()['factory']
    return factory()


def _parse_location(payload: Any, field_name: str) -> Optional[Location]:
    """
    Accepts {lat, lng, name?}, {address} or a bare address string.
    Returns None for null / empty payloads.
    """
    if payload is None or payload == {} or payload == "":
        return None
    if isinstance(payload, str):
        payload = {'address': payload}
    if not isinstance(payload, dict):
        raise InvalidRequest(f"{field_name} must be an object or an address string")
    if 'lat' in payload and 'lng' in payload:
        try:
            return Location.from_dict(payload)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"{field_name} has invalid coordinates: {e}")
    address = payload.get('address')
    if not address:
        raise InvalidRequest(f"{field_name} must have lat and lng properties or an address")
    location = _require_google().geocode_address(address)
    if location is None:
        raise InvalidRequest(f"Could not geocode the provided address: {address}", 404)
    return location


def _state_payload(state: MeetingZoneState) -> Dict[str, Any]:
    payload = state.to_dict()
    for place, entry in zip(state.places, payload['places']):
        entry.update(travel_distances(place.position, state.location_a, state.location_b))
    if state.focal_point is not None:
        payload['focal_point'].update(travel_distances(state.focal_point, state.location_a, state.location_b))
    return payload


def _session_or_404(session_id: str):
    entry = _ext()['sessions'].get(session_id)
    if entry is None:
        raise InvalidRequest(f"Unknown session: {session_id}", 404)
    return entry


def create_app(
    settings: Optional[Settings] = None,
    google_service: Optional[GoogleMapsService] = None,
    azure_service: Optional[AzureMapsService] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    if google_service is None and azure_service is None:
        google_service, azure_service = _build_services(settings)

    def orchestrator_factory() -> MeetingZoneOrchestrator:
        if google_service is None:
            raise MissingCredentials("Google Maps API key not configured")
        if azure_service is None:
            raise MissingCredentials("Azure Maps subscription key not configured")
        resolver = PlaceResolver(
            azure_service,
            categories=settings.place_categories,
            result_cap=settings.place_result_cap,
            timeout=settings.request_timeout,
        )
        return MeetingZoneOrchestrator(
            google_service,
            azure_service,
            resolver,
            buffer_seconds=settings.buffer_seconds,
            timeout=settings.request_timeout,
            travel_mode=settings.travel_mode,
        )

    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes
    app.extensions[EXTENSION_KEY] = {
        'settings': settings,
        'google': google_service,
        'azure': azure_service,
        'factory': orchestrator_factory,
        'sessions': SessionRegistry(orchestrator_factory, idle_timeout=settings.session_idle_timeout),
    }

    # Per-request timing: record start time and log duration on completion
    @app.before_request
    def _start_timer():
        g._start_time = perf_counter()

    @app.after_request
    def _log_request_duration(response):
        start = getattr(g, '_start_time', None)
        if start is not None:
            duration_ms = (perf_counter() - start) * 1000.0
            response.headers['X-Process-Time-ms'] = f"{duration_ms:.1f}"
            logger.info(
                "request completed: method=%s path=%s status=%s duration_ms=%.1f remote_addr=%s",
                request.method,
                request.full_path if request.query_string else request.path,
                response.status_code,
                duration_ms,
                request.remote_addr,
            )
        return response

    @app.errorhandler(InvalidRequest)
    def _invalid_request(error: InvalidRequest):
        logger.warning("Rejected request: %s", error.message)
        return jsonify({'success': False, 'error': error.message}), error.status_code

    @app.errorhandler(MissingCredentials)
    def _missing_credentials(error: MissingCredentials):
        logger.error("Service not configured: %s", error.message)
        return jsonify({'success': False, 'error': error.message, 'kind': error.kind.value}), 500

    @app.errorhandler(UpstreamUnavailable)
    def _upstream_unavailable(error: UpstreamUnavailable):
        logger.error("Upstream failure: %s", error.message)
        return jsonify({'success': False, 'error': error.message, 'kind': error.kind.value}), 502

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'error': 'Internal server error'}), 500

    @app.route('/', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'message': 'Meeting Zone API is running!',
            'endpoints': {
                'meeting_zone': '/api/meeting-zone',
                'sessions': '/api/sessions',
                'geocode': '/api/geocode',
                'travel_time': '/api/travel-time',
                'config': '/api/config',
                'health': '/'
            },
            'services': {
                'google_maps': google_service is not None,
                'azure_maps': azure_service is not None,
            },
            'status': 'healthy'
        })

    @app.route('/api/config', methods=['GET'])
    def get_config():
        """Frontend configuration including the Google Maps key used for rendering"""
        return jsonify({
            'success': True,
            'data': {
                'googleMapsApiKey': settings.google_maps_api_key,
                'apiBaseUrl': request.host_url.rstrip('/'),
                'placeCategories': list(settings.place_categories),
            }
        })

    @app.route('/api/geocode', methods=['POST'])
    def geocode_address():
        """
        Geocode a single address
        Expected JSON: {"address": "123 Main St, City, State"}
        """
        data = request.get_json(silent=True)
        if not data or 'address' not in data:
            raise InvalidRequest('Address is required')
        location = _parse_location({'address': data['address']}, 'address')
        logger.info(f"Geocoding successful - lat: {location.latitude}, lng: {location.longitude}")
        return jsonify({'success': True, 'data': location.to_dict()})

    @app.route('/api/travel-time', methods=['POST'])
    def get_travel_time():
        """
        Get travel time between two points
        Expected JSON: {
            "origin": {"lat": 37.77, "lng": -122.42},
            "destination": {"lat": 37.39, "lng": -122.08}
        }
        """
        data = request.get_json(silent=True)
        if not data:
            raise InvalidRequest('JSON data is required')
        points = {}
        for name in ('origin', 'destination'):
            point = data.get(name)
            if not isinstance(point, dict) or 'lat' not in point or 'lng' not in point:
                raise InvalidRequest(f'{name} must have lat and lng properties')
            try:
                points[name] = GeoPoint.from_dict(point)
            except (TypeError, ValueError) as e:
                raise InvalidRequest(f'{name} has invalid coordinates: {e}')

        seconds = _require_google().get_travel_time(points['origin'], points['destination'], settings.travel_mode)
        if seconds is None:
            raise InvalidRequest('Could not calculate travel time between the provided points', 404)
        return jsonify({
            'success': True,
            'data': {
                'travel_time_seconds': seconds,
                'travel_time_minutes': round(seconds / 60, 1)
            }
        })

    @app.route('/api/meeting-zone', methods=['POST'])
    def find_meeting_zone():
        """
        One-shot meeting-zone computation
        Expected JSON: {
            "location_a": {"lat": .., "lng": .., "name": ..} | "address_a": "...",
            "location_b": {...} | "address_b": "..."
        }
        """
        logger.info("=== MEETING ZONE REQUEST ===")
        data = request.get_json(silent=True)
        if not data:
            raise InvalidRequest('JSON data is required')
        location_a = _parse_location(data.get('location_a') or data.get('address_a'), 'location_a')
        location_b = _parse_location(data.get('location_b') or data.get('address_b'), 'location_b')
        if location_a is None or location_b is None:
            raise InvalidRequest('Both location_a and location_b are required')

        orchestrator = _new_orchestrator()

        async def _compute() -> MeetingZoneState:
            orchestrator.set_locations(location_a, location_b)
            return await orchestrator.settle()

        _algo_start = perf_counter()
        state = run_async(_compute())
        _compute_ms = (perf_counter() - _algo_start) * 1000.0
        logger.info("Time to compute meeting zone = %.1f ms (phase=%s)", _compute_ms, state.phase.value)

        response = jsonify({
            'success': state.last_error is None,
            'error': state.last_error.message if state.last_error else None,
            'data': _state_payload(state),
        })
        response.headers['X-Compute-Time-ms'] = f"{_compute_ms:.1f}"
        return response

    # --- Stateful sessions ---
    @app.route('/api/sessions', methods=['POST'])
    def create_session():
        sessions: SessionRegistry = _ext()['sessions']
        session_id = sessions.create()
        orchestrator, _lock = sessions.get(session_id)
        logger.info("Created session %s", session_id)
        return jsonify({'success': True, 'session_id': session_id, 'data': _state_payload(orchestrator.state)}), 201

    @app.route('/api/sessions/<session_id>', methods=['GET'])
    def get_session(session_id: str):
        orchestrator, _lock = _session_or_404(session_id)
        return jsonify({'success': True, 'data': _state_payload(orchestrator.state)})

    @app.route('/api/sessions/<session_id>', methods=['DELETE'])
    def delete_session(session_id: str):
        if not _ext()['sessions'].delete(session_id):
            raise InvalidRequest(f"Unknown session: {session_id}", 404)
        return jsonify({'success': True})

    @app.route('/api/sessions/<session_id>/locations/<side>', methods=['PUT'])
    def set_session_location(session_id: str, side: str):
        side = side.lower()
        if side not in ('a', 'b'):
            raise InvalidRequest("side must be 'a' or 'b'")
        orchestrator, lock = _session_or_404(session_id)
        location = _parse_location(request.get_json(silent=True), f'location_{side}')

        async def _apply() -> MeetingZoneState:
            if side == 'a':
                orchestrator.set_location_a(location)
            else:
                orchestrator.set_location_b(location)
            return await orchestrator.settle()

        with lock:
            state = run_async(_apply())
        return jsonify({'success': state.last_error is None, 'data': _state_payload(state)})

    @app.route('/api/sessions/<session_id>/select', methods=['POST'])
    def select_session_place(session_id: str):
        """Expected JSON: {"index": 0} to select a place, {} or {"index": null} to clear"""
        orchestrator, lock = _session_or_404(session_id)
        data = request.get_json(silent=True) or {}
        index = data.get('index')
        with lock:
            places = orchestrator.state.places
            if index is None:
                orchestrator.select_place(None)
            elif not isinstance(index, int) or not 0 <= index < len(places):
                raise InvalidRequest(f"index must be between 0 and {len(places) - 1}")
            else:
                orchestrator.select_place(places[index])
            state = orchestrator.state
        return jsonify({'success': True, 'data': _state_payload(state)})

    @app.route('/api/sessions/<session_id>/reset', methods=['POST'])
    def reset_session(session_id: str):
        orchestrator, lock = _session_or_404(session_id)
        with lock:
            orchestrator.reset()
            state = orchestrator.state
        return jsonify({'success': True, 'data': _state_payload(state)})

    return app
