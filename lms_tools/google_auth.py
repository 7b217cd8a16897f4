"""Service-account OAuth2 tokens for the Google APIs.

The service account signs a short-lived RS256 assertion locally and trades it
at the OAuth2 token endpoint for a bearer token. Tokens are cached until
shortly before they expire.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import httpx
import jwt
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential


TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DRIVE_SCOPES = (
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/drive.file",
)
ASSERTION_LIFETIME = 3600
EXPIRY_SKEW = 60


class GoogleAuthError(RuntimeError):
    """Raised when the service account cannot obtain an access token."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class ServiceAccount:
    client_email: str
    private_key: str
    private_key_id: Optional[str] = None
    token_uri: str = TOKEN_URI

    @classmethod
    def from_info(cls, info: Mapping[str, str]) -> "ServiceAccount":
        email = info.get("client_email")
        key = info.get("private_key")
        if not email or not key:
            raise GoogleAuthError("Service account info needs client_email and private_key")
        return cls(
            client_email=email,
            private_key=key,
            private_key_id=info.get("private_key_id") or None,
            token_uri=info.get("token_uri") or TOKEN_URI,
        )

    @classmethod
    def from_file(cls, path: Path) -> "ServiceAccount":
        try:
            info = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise GoogleAuthError(f"Cannot read service account file {path}: {exc}") from exc
        return cls.from_info(info)

    @classmethod
    def from_settings(cls, settings) -> "ServiceAccount":
        settings.require_google()
        if settings.google_service_account_file:
            return cls.from_file(Path(settings.google_service_account_file))
        return cls(
            client_email=settings.google_client_email,
            private_key=settings.google_private_key,
            private_key_id=settings.google_private_key_id,
        )


def build_assertion(account: ServiceAccount, scopes: Sequence[str], now: float) -> str:
    issued = int(now)
    claims = {
        "iss": account.client_email,
        "scope": " ".join(scopes),
        "aud": account.token_uri,
        "iat": issued,
        "exp": issued + ASSERTION_LIFETIME,
    }
    headers = {"kid": account.private_key_id} if account.private_key_id else None
    try:
        return jwt.encode(claims, account.private_key, algorithm="RS256", headers=headers)
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise GoogleAuthError(f"Cannot sign service account assertion: {exc}") from exc


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, GoogleAuthError) and exc.status is not None and (
        exc.status == 429 or exc.status >= 500
    )


class TokenProvider:
    """Caches one access token per service account and scope set."""

    def __init__(
        self,
        account: ServiceAccount,
        scopes: Sequence[str] = DRIVE_SCOPES,
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.account = account
        self.scopes = tuple(scopes)
        self._http = http or httpx.Client(timeout=30.0)
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    def token(self) -> str:
        now = self._clock()
        if self._token and now < self._expires_at - EXPIRY_SKEW:
            return self._token
        payload = self._exchange(build_assertion(self.account, self.scopes, now))
        access_token = payload.get("access_token")
        if not access_token:
            raise GoogleAuthError(f"Token response without access_token: {payload}")
        self._token = access_token
        self._expires_at = now + float(payload.get("expires_in") or ASSERTION_LIFETIME)
        return access_token

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    def _exchange(self, assertion: str) -> dict:
        response = self._http.post(
            self.account.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code >= 400:
            raise GoogleAuthError(
                f"Token exchange failed: {response.status_code} {response.text}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GoogleAuthError(f"Malformed token response: {response.text}") from exc
