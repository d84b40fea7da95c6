import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from musichub.crosscutting.config import ConfigError, SessionStore
from musichub.domain.entities import AuthUser, SessionEvent, SignUpResult
from musichub.domain.errors import AuthError
from musichub.domain.ports import IdentityProvider, SessionListener

logger = logging.getLogger(__name__)


class SupabaseIdentityProvider(IdentityProvider):
    """Identity provider adapter for the Supabase auth REST API.

    The REST API has no push channel, so this adapter emits the session events
    itself after each successful call, mirroring the browser SDK.
    """

    def __init__(self,
                 url: str,
                 anon_key: str,
                 timeout_sec: float = 15.0,
                 session: Optional[requests.Session] = None,
                 session_store: Optional[SessionStore] = None,
                 redirect_url: Optional[str] = None):
        """Initialize identity provider.

        Args:
            url: Project URL, e.g. https://<ref>.supabase.co
            anon_key: Public anon key sent as apikey
            timeout_sec: Per-request timeout
            session: Optional shared requests session
            session_store: Where tokens survive restarts; None keeps them in memory only
            redirect_url: Where OAuth and email confirmation links return to
        """
        self.url = url.rstrip('/')
        self.anon_key = anon_key
        self.timeout_sec = timeout_sec
        self.redirect_url = redirect_url
        self._session = session or requests.Session()
        self._store = session_store
        self._listeners: List[SessionListener] = []
        self._tokens: Dict[str, str] = {}
        self.current_user: Optional[AuthUser] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.get('access_token')

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, user: Optional[AuthUser]) -> None:
        self.current_user = user
        logger.debug(f"Emitting session event {event}")
        for listener in list(self._listeners):
            listener(SessionEvent(event=event, user=user))

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        return {
            'apikey': self.anon_key,
            'Authorization': f"Bearer {token or self.anon_key}",
            'Content-Type': 'application/json',
        }

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, str]] = None,
                 token: Optional[str] = None) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method,
                f"{self.url}/auth/v1/{path}",
                json=payload,
                params=params,
                headers=self._headers(token),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise AuthError(f"Identity provider unreachable: {e}")

        if response.status_code >= 400:
            raise AuthError(self._error_message(response))

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(f"Identity provider returned invalid JSON: {e}")
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            for key in ('error_description', 'msg', 'message', 'error'):
                if data.get(key):
                    return str(data[key])
        return f"Identity provider error ({response.status_code})"

    @staticmethod
    def parse_user(data: Dict[str, Any]) -> AuthUser:
        """Map an auth user object to AuthUser."""
        if not data or not data.get('id'):
            raise AuthError("Identity provider returned no user")
        metadata = data.get('user_metadata') or {}
        return AuthUser(
            user_id=str(data['id']),
            email_verified=bool(data.get('email_confirmed_at') or data.get('confirmed_at')),
            email=data.get('email'),
            full_name=metadata.get('full_name') or None,
            avatar_url=metadata.get('avatar_url') or None,
        )

    def _store_tokens(self, data: Dict[str, Any]) -> None:
        self._tokens = {
            'access_token': data.get('access_token', ''),
            'refresh_token': data.get('refresh_token', ''),
        }
        if self._store is None:
            return
        try:
            self._store.save(self._tokens)
        except ConfigError as e:
            logger.warning(f"Could not persist session: {e}")

    def _clear_tokens(self) -> None:
        self._tokens = {}
        if self._store is None:
            return
        try:
            self._store.clear()
        except ConfigError as e:
            logger.warning(f"Could not remove saved session: {e}")

    async def start(self) -> None:
        """Restore a saved session if possible and emit INITIAL_SESSION."""
        user = await asyncio.to_thread(self._restore_blocking)
        self._emit('INITIAL_SESSION', user)

    def _restore_blocking(self) -> Optional[AuthUser]:
        if self._store is None:
            return None
        try:
            saved = self._store.load()
        except ConfigError as e:
            logger.warning(f"Ignoring unreadable saved session: {e}")
            return None

        access_token = saved.get('access_token')
        if not access_token:
            return None
        try:
            self._tokens = dict(saved)
            return self.parse_user(self._request('GET', 'user', token=access_token))
        except AuthError as e:
            logger.info(f"Saved session rejected, trying refresh: {e}")

        refresh_token = saved.get('refresh_token')
        if refresh_token:
            try:
                data = self._request('POST', 'token', {'refresh_token': refresh_token},
                                     params={'grant_type': 'refresh_token'})
                self._store_tokens(data)
                return self.parse_user(data.get('user') or {})
            except AuthError as e:
                logger.info(f"Session refresh failed: {e}")
        self._clear_tokens()
        return None

    async def sign_up(self, email: str, password: str,
                      metadata: Optional[Dict[str, Any]] = None) -> SignUpResult:
        payload: Dict[str, Any] = {'email': email, 'password': password, 'data': metadata or {}}
        params = {'redirect_to': self.redirect_url} if self.redirect_url else None
        data = await asyncio.to_thread(self._request, 'POST', 'signup', payload, params)

        if data.get('access_token'):
            self._store_tokens(data)
            user = self.parse_user(data.get('user') or {})
            self._emit('SIGNED_IN', user)
            return SignUpResult(user=user, session_active=True)

        # confirmation pending: the response body is the bare user object
        user = self.parse_user(data.get('user') or data) if (data.get('user') or data.get('id')) else None
        if user is not None:
            self._emit('SIGNED_UP', user)
        return SignUpResult(user=user, session_active=False)

    async def sign_in_with_password(self, email: str, password: str) -> AuthUser:
        data = await asyncio.to_thread(self._request, 'POST', 'token',
                                       {'email': email, 'password': password},
                                       {'grant_type': 'password'})
        self._store_tokens(data)
        user = self.parse_user(data.get('user') or {})
        self._emit('SIGNED_IN', user)
        return user

    async def sign_in_with_oauth(self, provider: str) -> str:
        params = {'provider': provider}
        if self.redirect_url:
            params['redirect_to'] = self.redirect_url
        return requests.Request('GET', f"{self.url}/auth/v1/authorize", params=params).prepare().url

    async def complete_oauth(self, access_token: str, refresh_token: str) -> AuthUser:
        """Adopt the tokens returned on the OAuth redirect."""
        data = await asyncio.to_thread(self._request, 'GET', 'user', None, None, access_token)
        user = self.parse_user(data)
        self._store_tokens({'access_token': access_token, 'refresh_token': refresh_token})
        self._emit('SIGNED_IN', user)
        return user

    async def sign_out(self) -> None:
        token = self.access_token
        if token:
            try:
                await asyncio.to_thread(self._request, 'POST', 'logout', None, None, token)
            except AuthError as e:
                logger.warning(f"Remote sign-out failed, clearing local session anyway: {e}")
        self._clear_tokens()
        self._emit('SIGNED_OUT', None)
