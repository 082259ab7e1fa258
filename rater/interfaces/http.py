import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from rater.crosscutting.config import ConfigError
from rater.domain.entities import Provider, SyncMode, Track
from rater.domain.errors import (
    AuthenticationRequired, AuthorizationDenied, Conflict, NotFound, RateLimited, RemoteUnavailable,
)
from rater.interfaces.container import Container, Runtime

VERSION = "0.1.0"


class HTTPServer:
    """HTTP interface: OAuth callbacks, auth status and engine commands."""

    def __init__(self, container: Container, runtime: Runtime,
                 host: str = '127.0.0.1', port: int = 3000, debug: bool = False,
                 request_timeout: Optional[float] = 30.0):
        """Initialize HTTP server.

        Args:
            container: Wired application services
            runtime: Event loop the services live on
            request_timeout: Upper bound for waiting on a coroutine, None waits forever
        """
        self.container = container
        self.runtime = runtime
        self.host = host
        self.port = port
        self.debug = debug
        self.request_timeout = request_timeout
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = VERSION
        self.commit = os.getenv('GIT_COMMIT', 'unknown')
        self.last_rated: Optional[Dict[str, Any]] = None

        self._unsubscribe = container.engine.on_rating_complete(self._on_rating_complete)
        self._setup_routes()
        self._setup_error_handlers()

    def _on_rating_complete(self, track: Track, rating: float) -> None:
        self.last_rated = {
            'trackId': track.track_id,
            'rating': rating,
            'ratedAt': datetime.now().isoformat(),
        }

    def _run(self, coro, timeout: Optional[float] = None):
        return self.runtime.run(coro, timeout or self.request_timeout)

    def _json(self) -> Dict[str, Any]:
        return request.get_json(silent=True) or {}

    def _state(self) -> Dict[str, Any]:
        return {
            'state': self.container.engine.state.to_dict(),
            'auth': self.container.session.status().to_dict(),
            'visible': self.container.engine.is_visible(),
            'lastRated': self.last_rated,
        }

    def _setup_error_handlers(self) -> None:
        def error_response(status: int, message: str, error: Exception) -> Tuple[Any, int]:
            return jsonify({'error': message, 'details': str(error)}), status

        @self.app.errorhandler(AuthenticationRequired)
        def authentication_required(e):
            return error_response(401, 'Authentication required', e)

        @self.app.errorhandler(AuthorizationDenied)
        def authorization_denied(e):
            return error_response(403, 'Authorization denied', e)

        @self.app.errorhandler(NotFound)
        def not_found(e):
            return error_response(404, 'Not found', e)

        @self.app.errorhandler(Conflict)
        def conflict(e):
            return error_response(409, 'Conflict', e)

        @self.app.errorhandler(RateLimited)
        def rate_limited(e):
            response, status = error_response(429, 'Rate limited', e)
            response.headers['Retry-After'] = str(max(1, e.retry_after_ms // 1000))
            return response, status

        @self.app.errorhandler(RemoteUnavailable)
        def remote_unavailable(e):
            return error_response(502, 'Remote service unavailable', e)

        @self.app.errorhandler(ValueError)
        def bad_request(e):
            return error_response(400, 'Invalid request', e)

        @self.app.errorhandler(RuntimeError)
        def wrong_state(e):
            return error_response(409, 'Engine not ready', e)

        @self.app.errorhandler(ConfigError)
        def config_error(e):
            self.logger.error(f"Configuration error: {e}")
            return error_response(500, 'Configuration error', e)

    def _setup_routes(self) -> None:
        """Setup Flask routes."""
        engine = self.container.engine
        session = self.container.session

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'Track Rater HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'auth_status': '/auth/status',
                    'login': '/auth/<provider>/login',
                    'oauth_callback': '/callback',
                    'google_callback': '/google/callback',
                    'state': '/state',
                    'stats': '/stats',
                    'metrics': '/metrics',
                }
            }), 200

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            query = request.args.to_dict()
            if query.get('error'):
                self._run(session.complete_authorization(query))
                return jsonify({
                    'error': 'OAuth authorization failed',
                    'details': query['error']
                }), 400

            if not query.get('code'):
                return jsonify({'error': 'Missing authorization code'}), 400

            self._run(session.complete_authorization(query))
            self.logger.info("Spotify authorization completed")
            return jsonify({
                'status': 'success',
                'auth': session.status().to_dict(),
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/google/callback', methods=['GET'])
        def google_callback():
            """OAuth callback endpoint for Google."""
            handled = self._run(self.container.google_client.handle_callback(request.args.to_dict()))
            if not handled:
                return jsonify({'error': 'No pending Google authorization for this state'}), 400
            return jsonify({'status': 'received', 'auth': session.status().to_dict()}), 200

        @self.app.route('/auth/status', methods=['GET'])
        def auth_status():
            return jsonify(session.status().to_dict()), 200

        @self.app.route('/auth/<provider>/login', methods=['POST'])
        def login(provider: str):
            """Start an interactive authorization; completion arrives on a callback."""
            try:
                target = Provider(provider)
            except ValueError:
                return jsonify({'error': f'Unknown provider: {provider}'}), 404

            auth_url = self._run(session.begin_authorization(target))
            return jsonify({'provider': target.value, 'auth_url': auth_url}), 202

        @self.app.route('/auth/logout', methods=['POST'])
        def logout():
            self._run(engine.stop())
            self.runtime.call(session.logout, timeout=self.request_timeout)
            return jsonify(session.status().to_dict()), 200

        @self.app.route('/state', methods=['GET'])
        def state():
            return jsonify(self._state()), 200

        @self.app.route('/engine/start', methods=['POST'])
        def engine_start():
            mode = SyncMode(self._json().get('mode', SyncMode.QUEUE.value))
            self._run(engine.start(mode))
            return jsonify(self._state()), 200

        @self.app.route('/engine/stop', methods=['POST'])
        def engine_stop():
            self._run(engine.stop())
            return jsonify(self._state()), 200

        @self.app.route('/engine/load-next', methods=['POST'])
        def engine_load_next():
            self._run(engine.load_next(play=bool(self._json().get('play', True))))
            return jsonify(self._state()), 200

        @self.app.route('/engine/refresh', methods=['POST'])
        def engine_refresh():
            self._run(engine.refresh_now_playing())
            return jsonify(self._state()), 200

        @self.app.route('/engine/rate', methods=['POST'])
        def engine_rate():
            body = self._json()
            track_id = body.get('trackId')
            if not track_id or body.get('rating') is None:
                return jsonify({'error': 'trackId and rating are required'}), 400
            saved = self._run(engine.rate(track_id, float(body['rating'])))
            return jsonify({'saved': saved, **self._state()}), 200 if saved else 409

        @self.app.route('/engine/toggle', methods=['POST'])
        def engine_toggle():
            self._run(engine.toggle_playback())
            return jsonify(self._state()), 200

        @self.app.route('/engine/next', methods=['POST'])
        def engine_next():
            self._run(engine.next_track())
            return jsonify(self._state()), 200

        @self.app.route('/engine/previous', methods=['POST'])
        def engine_previous():
            self._run(engine.previous_track())
            return jsonify(self._state()), 200

        @self.app.route('/engine/seek', methods=['POST'])
        def engine_seek():
            position = self._json().get('positionMs')
            if position is None:
                return jsonify({'error': 'positionMs is required'}), 400
            self._run(engine.seek(int(position)))
            return jsonify(self._state()), 200

        @self.app.route('/engine/retry', methods=['POST'])
        def engine_retry():
            retried = self._run(engine.retry(), timeout=self.container.settings.interactive_timeout)
            return jsonify({'retried': retried, **self._state()}), 200

        @self.app.route('/engine/visibility', methods=['POST'])
        def engine_visibility():
            self.runtime.call(engine.set_visible, bool(self._json().get('visible', True)),
                              timeout=self.request_timeout)
            return jsonify(self._state()), 200

        @self.app.route('/engine/remaining', methods=['GET'])
        def engine_remaining():
            return jsonify({'remaining': self._run(engine.collection_size())}), 200

        @self.app.route('/stats', methods=['GET'])
        def stats():
            result = self._run(self.container.ratings.stats())
            return jsonify(result.to_dict()), 200

        @self.app.route('/metrics', methods=['GET'])
        def metrics():
            return jsonify(self.container.metrics.to_dict()), 200

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting rater HTTP server on {self.host}:{self.port}")
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug,
            use_reloader=False,
        )
