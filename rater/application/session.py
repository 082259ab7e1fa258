"""
Dual-session token manager.

Owns the Spotify and Google credentials and hands out bearer tokens on demand.
Spotify tokens are refreshed with the stored refresh token; Google tokens are
re-issued silently by the token client. Refreshes and interactive
authorizations are single-flight per provider: concurrent callers await the
same task or future instead of starting a second one.
"""

import asyncio
import logging
import webbrowser
from typing import Any, Callable, Dict, Mapping, Optional

from rater.application.observable import Broadcaster
from rater.crosscutting.logging import log_auth_change
from rater.crosscutting.metrics import MetricsCollector
from rater.domain.entities import AuthStatus, Credential, Provider, TokenResponse
from rater.domain.errors import AuthenticationRequired, AuthorizationDenied, RemoteUnavailable
from rater.domain.ports import Clock, KeyValueStorage, TokenClient, TokenEndpoint
from rater.infrastructure.oauth import (
    build_spotify_authorize_url, generate_code_challenge, generate_random_string,
)

logger = logging.getLogger(__name__)

SPOTIFY_TOKEN_KEY = 'spotify_token'
SPOTIFY_EXPIRY_KEY = 'spotify_expiry'
SPOTIFY_REFRESH_KEY = 'spotify_refresh_token'
SPOTIFY_VERIFIER_KEY = 'spotify_code_verifier'
SPOTIFY_STATE_KEY = 'spotify_auth_state'
GOOGLE_TOKEN_KEY = 'google_token'
GOOGLE_EXPIRY_KEY = 'google_expiry'

ALL_KEYS = (
    SPOTIFY_TOKEN_KEY, SPOTIFY_EXPIRY_KEY, SPOTIFY_REFRESH_KEY,
    SPOTIFY_VERIFIER_KEY, SPOTIFY_STATE_KEY,
    GOOGLE_TOKEN_KEY, GOOGLE_EXPIRY_KEY,
)

_CREDENTIAL_KEYS = {
    Provider.SPOTIFY: (SPOTIFY_TOKEN_KEY, SPOTIFY_EXPIRY_KEY, SPOTIFY_REFRESH_KEY),
    Provider.GOOGLE: (GOOGLE_TOKEN_KEY, GOOGLE_EXPIRY_KEY, None),
}


class SessionStore:
    """Produces valid bearer tokens for both providers and broadcasts auth status."""

    def __init__(self,
                 storage: KeyValueStorage,
                 clock: Clock,
                 token_endpoint: TokenEndpoint,
                 token_client: TokenClient,
                 spotify_client_id: str,
                 spotify_redirect_uri: str,
                 spotify_scope: str,
                 open_url: Callable[[str], Any] = webbrowser.open,
                 metrics: Optional[MetricsCollector] = None,
                 expiry_margin: float = 60.0,
                 refresh_threshold: float = 300.0,
                 refresh_check_interval: float = 60.0,
                 interactive_timeout: float = 300.0):
        """Initialize the store and restore persisted credentials.

        Args:
            storage: Durable key/value storage for tokens and the PKCE verifier
            clock: Wall clock in epoch seconds
            token_endpoint: Spotify token endpoint (code exchange and refresh)
            token_client: Google token client (silent and interactive requests)
            expiry_margin: Tokens closer than this to expiry are not handed out
            refresh_threshold: Proactively refresh Google below this remaining lifetime
            refresh_check_interval: Period of the proactive refresh check
            interactive_timeout: How long a Spotify authorization waits for its redirect
        """
        self._storage = storage
        self._clock = clock
        self._token_endpoint = token_endpoint
        self._token_client = token_client
        self._spotify_client_id = spotify_client_id
        self._spotify_redirect_uri = spotify_redirect_uri
        self._spotify_scope = spotify_scope
        self._open_url = open_url
        self._metrics = metrics
        self._expiry_margin = expiry_margin
        self._refresh_threshold = refresh_threshold
        self._refresh_check_interval = refresh_check_interval
        self._interactive_timeout = interactive_timeout

        self._credentials: Dict[Provider, Credential] = {
            Provider.SPOTIFY: Credential(),
            Provider.GOOGLE: Credential(),
        }
        self._refreshing: Dict[Provider, asyncio.Task] = {}
        self._authorizing: Dict[Provider, asyncio.Future] = {}
        self._authorization_timer: Optional[asyncio.TimerHandle] = None
        self._proactive_task: Optional[asyncio.Task] = None
        # Bumped on logout so in-flight refreshes do not resurrect cleared credentials
        self._epoch = 0
        self.authorize_url: Optional[str] = None

        self._broadcaster: Broadcaster[AuthStatus] = Broadcaster(self.status)
        self._restore()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_authorized(self, provider: Provider) -> bool:
        return self._credentials[provider].is_valid(self._clock.now())

    def is_fully_authorized(self) -> bool:
        return self.is_authorized(Provider.SPOTIFY) and self.is_authorized(Provider.GOOGLE)

    def status(self) -> AuthStatus:
        return AuthStatus(
            spotify=self.is_authorized(Provider.SPOTIFY),
            google=self.is_authorized(Provider.GOOGLE),
        )

    def subscribe(self, listener: Callable[[AuthStatus], None]) -> Callable[[], None]:
        """Register a status listener; it is called now and on every change."""
        return self._broadcaster.subscribe(listener)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_token(self, provider: Provider, allow_interactive: bool = False) -> str:
        """Return a currently valid access token for the provider.

        Raises:
            AuthenticationRequired: no usable token and interactive flow not allowed
            AuthorizationDenied: the interactive flow was rejected
            RemoteUnavailable: the refresh could not reach the provider
        """
        credential = self._credentials[provider]
        if credential.remaining(self._clock.now()) > self._expiry_margin:
            return credential.access_token

        try:
            return await self._shared_refresh(provider)
        except (AuthenticationRequired, AuthorizationDenied) as e:
            if not allow_interactive:
                if isinstance(e, AuthenticationRequired):
                    raise
                raise AuthenticationRequired(provider.value, str(e)) from e
            logger.info(f"Silent refresh for {provider.value} failed, falling back to interactive flow")

        return await self.authorize(provider)

    async def refresh(self, provider: Provider) -> str:
        """Force a refresh, e.g. after the provider answered 401 to a valid-looking token."""
        return await self._shared_refresh(provider)

    async def _shared_refresh(self, provider: Provider) -> str:
        task = self._refreshing.get(provider)
        if task is None or task.done():
            task = asyncio.ensure_future(self._do_refresh(provider))
            self._refreshing[provider] = task
            task.add_done_callback(lambda t, p=provider: self._refresh_finished(p, t))
        return await asyncio.shield(task)

    def _refresh_finished(self, provider: Provider, task: asyncio.Task) -> None:
        if self._refreshing.get(provider) is task:
            del self._refreshing[provider]
        if not task.cancelled():
            # Mark the exception retrieved; callers re-raise it through the shield
            task.exception()

    async def _do_refresh(self, provider: Provider) -> str:
        epoch = self._epoch
        if provider is Provider.SPOTIFY:
            token = await self._refresh_spotify()
        else:
            token = await self._refresh_google()

        if epoch != self._epoch:
            raise AuthenticationRequired(provider.value, "Logged out during refresh")

        self._apply_token(provider, token, reason='refresh')
        return token.access_token

    async def _refresh_spotify(self) -> TokenResponse:
        refresh_token = self._credentials[Provider.SPOTIFY].refresh_token
        if not refresh_token:
            raise AuthenticationRequired('spotify', "No Spotify refresh token stored")

        epoch = self._epoch
        try:
            token = await asyncio.to_thread(self._token_endpoint.refresh, refresh_token)
        except AuthorizationDenied as e:
            self._record_refresh(False)
            logger.warning(f"Spotify refresh token rejected, signing out of Spotify: {e}")
            if epoch == self._epoch:
                self._clear(Provider.SPOTIFY)
                log_auth_change(logger, 'spotify', False, 'refresh_rejected')
                self._broadcaster.publish()
            raise AuthenticationRequired('spotify', "Spotify session expired") from e
        except RemoteUnavailable:
            self._record_refresh(False)
            raise

        self._record_refresh(True)
        return token

    async def _refresh_google(self) -> TokenResponse:
        # Silent re-issue only renews an existing grant; it opens a browser page
        if not self._credentials[Provider.GOOGLE].access_token:
            raise AuthenticationRequired('google', "Google has not been authorized")

        try:
            token = await self._token_client.request_token(interactive=False)
        except (AuthenticationRequired, AuthorizationDenied) as e:
            self._record_refresh(False)
            logger.info(f"Silent Google authorization failed: {e}")
            raise AuthenticationRequired('google', "Google authorization required") from e
        except RemoteUnavailable:
            self._record_refresh(False)
            raise

        self._record_refresh(True)
        return token

    def _record_refresh(self, success: bool) -> None:
        if self._metrics:
            self._metrics.record_token_refresh(success)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(self, provider: Provider) -> str:
        """Run (or join) the interactive authorization and return the new access token."""
        future = self._authorization_future(provider)
        return await asyncio.shield(future)

    async def begin_authorization(self, provider: Provider) -> Optional[str]:
        """Start (or join) an interactive authorization without waiting for it.

        Returns the Spotify authorization URL, None for Google.
        """
        self._authorization_future(provider)
        return self.authorize_url if provider is Provider.SPOTIFY else None

    def _authorization_future(self, provider: Provider) -> asyncio.Future:
        existing = self._authorizing.get(provider)
        if existing is not None and not existing.done():
            return existing

        future = self._new_future()
        self._authorizing[provider] = future
        if provider is Provider.SPOTIFY:
            self._start_spotify_authorization(future)
        else:
            asyncio.ensure_future(self._run_google_authorization(future))
        return future

    def _start_spotify_authorization(self, future: asyncio.Future) -> None:
        verifier = generate_random_string(128)
        state = generate_random_string(16)
        self._storage.set(SPOTIFY_VERIFIER_KEY, verifier)
        self._storage.set(SPOTIFY_STATE_KEY, state)

        self.authorize_url = build_spotify_authorize_url(
            self._spotify_client_id,
            self._spotify_redirect_uri,
            self._spotify_scope,
            state,
            generate_code_challenge(verifier),
        )

        loop = asyncio.get_running_loop()
        if self._authorization_timer is not None:
            self._authorization_timer.cancel()
        self._authorization_timer = loop.call_later(
            self._interactive_timeout,
            self._fail_authorization,
            Provider.SPOTIFY,
            AuthenticationRequired('spotify', "Timed out waiting for Spotify authorization"),
        )

        logger.info("Opening Spotify authorization page")
        try:
            self._open_url(self.authorize_url)
        except Exception as e:
            self._fail_authorization(Provider.SPOTIFY, AuthenticationRequired(
                'spotify', f"Could not open the authorization page: {e}"))

    async def _run_google_authorization(self, future: asyncio.Future) -> None:
        epoch = self._epoch
        try:
            token = await self._token_client.request_token(interactive=True)
        except Exception as e:
            # Interactive failures leave stored credentials untouched
            logger.warning(f"Google authorization failed: {e}")
            if not future.done():
                future.set_exception(e)
            return

        if epoch != self._epoch:
            if not future.done():
                future.set_exception(AuthenticationRequired('google', "Logged out during authorization"))
            return

        self._apply_token(Provider.GOOGLE, token, reason='authorized')
        if not future.done():
            future.set_result(token.access_token)

    async def complete_authorization(self, query: Mapping[str, str]) -> bool:
        """Handle the Spotify redirect query.

        Returns True when a code was exchanged, False when the query carried an
        error or nothing relevant. An error parameter is not a logout: stored
        credentials and the verifier are left as they are.

        Raises:
            AuthorizationDenied: state mismatch, missing verifier or rejected exchange
            RemoteUnavailable: the token endpoint could not be reached
        """
        error = query.get('error')
        if error:
            logger.error(f"OAuth error: {error}")
            self._fail_authorization(Provider.SPOTIFY, AuthorizationDenied(
                f"Spotify authorization failed: {error}", error={'error': error}))
            return False

        code = query.get('code')
        if not code:
            return False

        expected_state = self._storage.get(SPOTIFY_STATE_KEY)
        if expected_state and query.get('state') != expected_state:
            denied = AuthorizationDenied("OAuth state mismatch", error={'error': 'state_mismatch'})
            self._fail_authorization(Provider.SPOTIFY, denied)
            raise denied

        verifier = self._storage.get(SPOTIFY_VERIFIER_KEY)
        if not verifier:
            raise AuthorizationDenied("No pending Spotify authorization", error={'error': 'missing_verifier'})

        try:
            token = await asyncio.to_thread(self._token_endpoint.exchange_code, code, verifier)
        except (AuthorizationDenied, RemoteUnavailable) as e:
            logger.error(f"Failed to exchange code: {e}")
            self._fail_authorization(Provider.SPOTIFY, e)
            raise

        self._storage.remove(SPOTIFY_VERIFIER_KEY)
        self._storage.remove(SPOTIFY_STATE_KEY)
        self._apply_token(Provider.SPOTIFY, token, reason='authorized')

        future = self._authorizing.get(Provider.SPOTIFY)
        if future is not None and not future.done():
            future.set_result(token.access_token)
        self._cancel_authorization_timer()
        return True

    def _fail_authorization(self, provider: Provider, error: Exception) -> None:
        future = self._authorizing.get(provider)
        if future is not None and not future.done():
            future.set_exception(error)
        if provider is Provider.SPOTIFY:
            self._cancel_authorization_timer()

    def _cancel_authorization_timer(self) -> None:
        if self._authorization_timer is not None:
            self._authorization_timer.cancel()
            self._authorization_timer = None

    def _new_future(self) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        return future

    # ------------------------------------------------------------------
    # Proactive refresh
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the proactive refresh task. Needs a running event loop."""
        self._ensure_proactive_refresh()
        self._broadcaster.publish()

    def _ensure_proactive_refresh(self) -> None:
        if self._proactive_task is not None and not self._proactive_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._proactive_task = asyncio.ensure_future(self._proactive_refresh_loop())

    async def _proactive_refresh_loop(self) -> None:
        while True:
            await self.check_proactive_refresh()
            await asyncio.sleep(self._refresh_check_interval)

    async def check_proactive_refresh(self) -> None:
        """Refresh the Google token if it is about to expire; publish status changes."""
        self._broadcaster.publish()
        credential = self._credentials[Provider.GOOGLE]
        if not credential.access_token:
            return
        if credential.remaining(self._clock.now()) >= self._refresh_threshold:
            return

        logger.info("Google token close to expiry, refreshing proactively")
        try:
            await self._shared_refresh(Provider.GOOGLE)
        except (AuthenticationRequired, AuthorizationDenied, RemoteUnavailable) as e:
            logger.warning(f"Proactive Google refresh failed: {e}")
        self._broadcaster.publish()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _apply_token(self, provider: Provider, token: TokenResponse, reason: str) -> None:
        credential = self._credentials[provider]
        credential.access_token = token.access_token
        credential.expiry = self._clock.now() + token.expires_in
        if provider is Provider.SPOTIFY and token.refresh_token:
            credential.refresh_token = token.refresh_token
        self._persist(provider)

        if provider is Provider.GOOGLE:
            self._ensure_proactive_refresh()
        log_auth_change(logger, provider.value, True, reason, expires_in=token.expires_in)
        self._broadcaster.publish()

    def _persist(self, provider: Provider) -> None:
        token_key, expiry_key, refresh_key = _CREDENTIAL_KEYS[provider]
        credential = self._credentials[provider]
        self._store(token_key, credential.access_token)
        self._store(expiry_key, None if credential.expiry is None else repr(credential.expiry))
        if refresh_key:
            self._store(refresh_key, credential.refresh_token)

    def _store(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._storage.remove(key)
        else:
            self._storage.set(key, value)

    def _restore(self) -> None:
        for provider, (token_key, expiry_key, refresh_key) in _CREDENTIAL_KEYS.items():
            credential = self._credentials[provider]
            credential.access_token = self._storage.get(token_key)
            raw_expiry = self._storage.get(expiry_key)
            try:
                credential.expiry = float(raw_expiry) if raw_expiry else None
            except ValueError:
                logger.warning(f"Ignoring malformed expiry for {provider.value}")
                credential.expiry = None
            if refresh_key:
                credential.refresh_token = self._storage.get(refresh_key)

    def _clear(self, provider: Provider) -> None:
        self._credentials[provider] = Credential()
        for key in _CREDENTIAL_KEYS[provider]:
            if key:
                self._storage.remove(key)

    # ------------------------------------------------------------------
    # Logout / shutdown
    # ------------------------------------------------------------------

    def logout(self) -> None:
        """Clear both sessions, all stored keys and the proactive refresh task."""
        self._epoch += 1
        self._credentials = {
            Provider.SPOTIFY: Credential(),
            Provider.GOOGLE: Credential(),
        }
        for key in ALL_KEYS:
            self._storage.remove(key)

        if self._proactive_task is not None:
            self._proactive_task.cancel()
            self._proactive_task = None

        for provider in list(self._authorizing):
            self._fail_authorization(provider, AuthenticationRequired(provider.value, "Logged out"))
        self._authorizing.clear()

        log_auth_change(logger, 'all', False, 'logout')
        self._broadcaster.publish()

    async def close(self) -> None:
        """Cancel background work. Credentials stay persisted."""
        self._cancel_authorization_timer()
        task, self._proactive_task = self._proactive_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
