"""Client for the hosted identity provider (GoTrue-compatible auth API).

Sign-in is delegated entirely: the browser is sent to the provider's
``/authorize`` endpoint, comes back to ``/auth/callback`` with a one-time code
(or, for the implicit flow, an access token) and the code is exchanged here
for a session describing the signed-in user.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("google", "github")
PROVIDER_QUERY_PARAMS = {
    "google": {"access_type": "offline", "prompt": "consent"},
}


class IdentityError(RuntimeError):
    """Raised when the identity provider rejects or fails a request."""


@dataclass
class IdentitySession:
    access_token: str
    refresh_token: str
    user_id: str
    email: str
    provider: str


def generate_pkce_pair():
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def session_user_fields(user):
    if not isinstance(user, dict) or not user.get("id"):
        raise IdentityError("Identity provider returned no user")
    metadata = user.get("app_metadata") or {}
    return str(user["id"]), user.get("email") or "", metadata.get("provider") or ""


class IdentityClient:
    def __init__(self, base_url, api_key, timeout=10):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("IDENTITY_URL"),
            config.get("IDENTITY_ANON_KEY"),
            timeout=float(config.get("IDENTITY_TIMEOUT", 10)),
        )

    @property
    def configured(self):
        return bool(self.base_url and self.api_key)

    def _headers(self, access_token=None):
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _request(self, method, path, **kwargs):
        if not self.configured:
            raise IdentityError("Identity provider is not configured")
        url = f"{self.base_url}/auth/v1/{path}"
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise IdentityError(f"Identity provider unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.status_code >= 400:
            message = (
                payload.get("error_description")
                or payload.get("msg")
                or payload.get("error")
                or f"HTTP {response.status_code}"
            )
            raise IdentityError(message)
        return payload

    def authorize_url(self, provider, redirect_to, code_challenge):
        if not self.configured:
            raise IdentityError("Identity provider is not configured")
        if provider not in SUPPORTED_PROVIDERS:
            raise IdentityError(f"Unsupported provider: {provider}")
        params = {
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge,
            "code_challenge_method": "s256",
        }
        params.update(PROVIDER_QUERY_PARAMS.get(provider, {}))
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    def exchange_code(self, code, code_verifier):
        if not code_verifier:
            raise IdentityError("Sign-in session expired, please try again")
        payload = self._request(
            "POST",
            "token?grant_type=pkce",
            json={"auth_code": code, "code_verifier": code_verifier},
            headers=self._headers(),
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise IdentityError("Identity provider returned no access token")
        user_id, email, provider = session_user_fields(payload.get("user"))
        logger.info("Exchanged authorization code for user %s", user_id)
        return IdentitySession(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or "",
            user_id=user_id,
            email=email,
            provider=provider,
        )

    def get_user(self, access_token, refresh_token=""):
        payload = self._request("GET", "user", headers=self._headers(access_token))
        user_id, email, provider = session_user_fields(payload)
        return IdentitySession(
            access_token=access_token,
            refresh_token=refresh_token or "",
            user_id=user_id,
            email=email,
            provider=provider,
        )
