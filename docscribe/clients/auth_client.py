"""
Identity provider client (Supabase GoTrue REST API).

The core never handles credentials: it only resolves access tokens into users
and waits for the redirect-based sign-in callback.
"""
import asyncio
import logging
from typing import Callable, List, Optional
from urllib.parse import urlencode

import requests
from pydantic import BaseModel

from docscribe.config import config

logger = logging.getLogger(__name__)

AuthListener = Callable[[str, Optional["AuthUser"]], None]


class AuthUser(BaseModel):
    id: str
    email: str = ""
    name: str = ""


class AuthError(Exception):
    """Raised when a token cannot be resolved into a user"""
    pass


class SupabaseAuthClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        callback_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.SUPABASE_URL).rstrip("/")
        self.api_key = api_key or config.SUPABASE_SERVICE_KEY
        self.callback_timeout = callback_timeout or config.AUTH_CALLBACK_TIMEOUT
        self.session = session or requests.Session()
        self._user: Optional[AuthUser] = None
        self._listeners: List[AuthListener] = []
        self._pending: Optional[asyncio.Future] = None

    def current_user(self) -> Optional[AuthUser]:
        return self._user

    def on_auth_change(self, listener: AuthListener) -> Callable[[], None]:
        """Subscribe to SIGNED_IN / SIGNED_OUT events, returns an unsubscribe callable"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self._user)
            except Exception as e:
                logger.warning("Auth listener failed on %s: %s", event, e)

    def get_user(self, access_token: str) -> AuthUser:
        """Resolve an access token into the user it belongs to"""
        try:
            response = self.session.get(
                f"{self.base_url}/auth/v1/user",
                headers={"Authorization": f"Bearer {access_token}", "apikey": self.api_key or ""},
                timeout=10,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise AuthError(f"Identity provider unreachable: {e}") from e

        if response.status_code != 200:
            raise AuthError(f"Invalid access token ({response.status_code})")

        data = response.json()
        metadata = data.get("user_metadata") or {}
        email = data.get("email") or ""
        return AuthUser(
            id=data["id"],
            email=email,
            name=metadata.get("full_name") or metadata.get("name") or email.split("@")[0],
        )

    def sign_in_with_token(self, access_token: str) -> AuthUser:
        self._user = self.get_user(access_token)
        logger.info("Signed in user %s", self._user.id)
        self._emit("SIGNED_IN")
        return self._user

    def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info("Signed out user %s", self._user.id)
        self._user = None
        self._emit("SIGNED_OUT")

    def authorize_url(self, provider: str, redirect_to: str) -> str:
        """URL the browser is sent to for a redirect-based sign-in"""
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return f"{self.base_url}/auth/v1/authorize?{query}"

    async def wait_for_callback(self, timeout: Optional[float] = None) -> AuthUser:
        """Suspend until handle_callback() delivers a token, or the timeout elapses"""
        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        try:
            return await asyncio.wait_for(self._pending, timeout or self.callback_timeout)
        except asyncio.TimeoutError:
            logger.warning("Sign-in callback did not arrive in time")
            raise
        finally:
            self._pending = None

    def handle_callback(self, access_token: str) -> AuthUser:
        """Out-of-band redirect callback: resolve the pending sign-in"""
        pending = self._pending
        try:
            user = self.sign_in_with_token(access_token)
        except AuthError as e:
            _resolve(pending, error=e)
            raise
        _resolve(pending, result=user)
        return user


def _resolve(future: Optional[asyncio.Future], result=None, error: Optional[Exception] = None) -> None:
    if future is None:
        return

    def settle():
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    future.get_loop().call_soon_threadsafe(settle)
