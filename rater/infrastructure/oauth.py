"""
OAuth plumbing for both providers.

Spotify uses the authorization code flow with PKCE (public client, refresh
tokens). Google hands out short-lived access tokens only; a new one is obtained
by re-running the authorization with ``prompt=none`` (silent) or with a consent
screen (interactive). The session store owns the resulting credentials, this
module only talks to the endpoints.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import string
import webbrowser
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests

from rater.crosscutting.config import (
    GOOGLE_AUTHORIZE_URL, GOOGLE_TOKEN_URL, SPOTIFY_AUTHORIZE_URL, SPOTIFY_TOKEN_URL,
)
from rater.domain.entities import TokenResponse
from rater.domain.errors import AuthenticationRequired, AuthorizationDenied, RemoteUnavailable

logger = logging.getLogger(__name__)

_POSSIBLE = string.ascii_letters + string.digits


def generate_random_string(length: int) -> str:
    """Random string from letters and digits, suitable for verifiers and state values."""
    return ''.join(secrets.choice(_POSSIBLE) for _ in range(length))


def generate_code_challenge(code_verifier: str) -> str:
    """S256 PKCE challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')


def build_spotify_authorize_url(client_id: str, redirect_uri: str, scope: str,
                                state: str, code_challenge: str) -> str:
    params = {
        'client_id': client_id,
        'response_type': 'code',
        'redirect_uri': redirect_uri,
        'state': state,
        'scope': scope,
        'code_challenge_method': 'S256',
        'code_challenge': code_challenge,
    }
    return f"{SPOTIFY_AUTHORIZE_URL}?{urlencode(params)}"


def post_token_request(url: str, data: Dict[str, str], timeout: float = 15) -> TokenResponse:
    """POST a form to a token endpoint and parse the token response.

    Raises:
        AuthorizationDenied: the endpoint rejected the grant (4xx)
        RemoteUnavailable: transport failure or 5xx
    """
    try:
        response = requests.post(
            url,
            data=data,
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise RemoteUnavailable(f"Token endpoint unreachable: {e}")

    if response.status_code != 200:
        payload = _error_payload(response)
        if 400 <= response.status_code < 500:
            raise AuthorizationDenied(
                f"Token request rejected: {response.status_code} {payload.get('error', '')}".strip(),
                error=payload,
            )
        raise RemoteUnavailable(f"Token endpoint error: {response.status_code}")

    data = response.json()
    if not data.get('access_token'):
        raise RemoteUnavailable("Token endpoint returned no access token")

    return TokenResponse(
        access_token=data['access_token'],
        expires_in=int(data.get('expires_in') or 3600),
        refresh_token=data.get('refresh_token'),
        scope=data.get('scope'),
    )


def _error_payload(response: requests.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {'error': response.text}
    return payload if isinstance(payload, dict) else {'error': payload}


class SpotifyTokenEndpoint:
    """Spotify accounts token endpoint for a PKCE public client."""

    def __init__(self, client_id: str, redirect_uri: str, token_url: str = SPOTIFY_TOKEN_URL):
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.token_url = token_url

    def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        logger.info("Exchanging Spotify authorization code")
        return post_token_request(self.token_url, {
            'client_id': self.client_id,
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
            'code_verifier': code_verifier,
        })

    def refresh(self, refresh_token: str) -> TokenResponse:
        logger.info("Refreshing Spotify access token")
        return post_token_request(self.token_url, {
            'client_id': self.client_id,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })


class GoogleTokenClient:
    """Token-issuing client for the spreadsheet service.

    Each request opens the authorization URL and waits for the redirect, which
    the HTTP interface hands to ``handle_callback``. Pending requests are keyed
    by their OAuth state value so a callback can only resolve the request that
    produced it.
    """

    def __init__(self, client_id: str, redirect_uri: str, scope: str,
                 client_secret: Optional[str] = None,
                 open_url: Callable[[str], Any] = webbrowser.open,
                 interactive_timeout: float = 300.0,
                 silent_timeout: float = 30.0,
                 authorize_url: str = GOOGLE_AUTHORIZE_URL,
                 token_url: str = GOOGLE_TOKEN_URL):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.authorize_url = authorize_url
        self.token_url = token_url
        self._open_url = open_url
        self._interactive_timeout = interactive_timeout
        self._silent_timeout = silent_timeout
        # state -> (future, code_verifier)
        self._pending: Dict[str, tuple] = {}

    def build_authorize_url(self, state: str, code_challenge: str, interactive: bool) -> str:
        params = {
            'client_id': self.client_id,
            'response_type': 'code',
            'redirect_uri': self.redirect_uri,
            'scope': self.scope,
            'state': state,
            'code_challenge_method': 'S256',
            'code_challenge': code_challenge,
            'access_type': 'online',
            'include_granted_scopes': 'true',
            'prompt': 'consent' if interactive else 'none',
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def request_token(self, interactive: bool) -> TokenResponse:
        loop = asyncio.get_running_loop()
        state = generate_random_string(16)
        verifier = generate_random_string(128)
        future = loop.create_future()
        self._pending[state] = (future, verifier)

        url = self.build_authorize_url(state, generate_code_challenge(verifier), interactive)
        logger.info(f"Requesting Google token ({'interactive' if interactive else 'silent'})")
        try:
            self._open_url(url)
            timeout = self._interactive_timeout if interactive else self._silent_timeout
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            raise AuthenticationRequired('google', "Timed out waiting for Google authorization")
        finally:
            self._pending.pop(state, None)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    async def handle_callback(self, query: Mapping[str, str]) -> bool:
        """Resolve the pending request named by the callback's state value.

        Returns False when the callback does not belong to any pending request.
        """
        state = query.get('state')
        entry = self._pending.get(state) if state else None
        if entry is None:
            logger.warning("Ignoring Google callback with unknown state")
            return False

        future, verifier = entry
        if future.done():
            return False

        error = query.get('error')
        if error:
            future.set_exception(AuthorizationDenied(
                f"Google authorization failed: {error}",
                error={'error': error, 'error_description': query.get('error_description')},
            ))
            return True

        code = query.get('code')
        if not code:
            future.set_exception(AuthorizationDenied("Google callback carried no code",
                                                     error={'error': 'missing_code'}))
            return True

        data = {
            'client_id': self.client_id,
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
            'code_verifier': verifier,
        }
        if self.client_secret:
            data['client_secret'] = self.client_secret

        try:
            token = await asyncio.to_thread(post_token_request, self.token_url, data)
        except (AuthorizationDenied, RemoteUnavailable) as e:
            if not future.done():
                future.set_exception(e)
            return True

        if not future.done():
            future.set_result(token)
        return True
