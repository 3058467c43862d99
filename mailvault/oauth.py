#!/usr/bin/env python3

"""
oauth.py

OAuth2 authorization-code flow and token lifecycle for the Microsoft identity platform:
- build the authorization URL
- exchange an authorization code for tokens
- refresh tokens in place (same principal/provider row)
- hand out a valid access token, attempting at most one refresh
- revoke

The store never retries on its own. A failed refresh is surfaced as None so the
caller treats it as "re-authenticate", not as a transient error.
"""

from __future__ import annotations

import datetime
import secrets
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import requests

from mailvault import db
from mailvault.config import Settings
from mailvault.errors import AuthExchangeError, RefreshError, Unauthenticated
from mailvault.logger import get_logger
from mailvault.models import OAuthToken
from mailvault.utils import to_iso, utcnow

PROVIDER = "microsoft"


class TokenStore:
    """Token persistence plus the provider calls that produce tokens."""

    def __init__(
            self,
            settings: Settings,
            session: Optional[requests.Session] = None,
            clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.clock = clock
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def build_authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "scope": self.settings.scopes,
            "state": state or secrets.token_urlsafe(16),
            "response_mode": "query",
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    def exchange_code(self, code: str, principal: Optional[str] = None) -> OAuthToken:
        """
        Exchange an authorization code and persist the token for `principal`.

        The scope is implied by the authorization and is not sent again.
        """
        principal = principal or self.settings.backup_principal
        payload = self._post_token(
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
                "grant_type": "authorization_code",
            },
            AuthExchangeError,
        )
        token = self._token_from_payload(payload, principal)
        self._persist(token)
        self.logger.info(f"Stored new token for principal {principal}")
        return token

    def refresh(self, token: OAuthToken) -> OAuthToken:
        if not token.refresh_token:
            raise RefreshError(f"No refresh token stored for {token.principal}")
        payload = self._post_token(
            {
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "refresh_token": token.refresh_token,
                "grant_type": "refresh_token",
            },
            RefreshError,
        )
        refreshed = self._token_from_payload(payload, token.principal, previous_refresh=token.refresh_token)
        self._persist(refreshed)
        self.logger.info(f"Refreshed token for principal {token.principal}")
        return refreshed

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_token(self, principal: Optional[str] = None) -> Optional[OAuthToken]:
        row = db.get_token(self.settings.db_path, principal or self.settings.backup_principal, PROVIDER)
        return OAuthToken.from_row(row) if row else None

    def get_valid_access_token(self, principal: Optional[str] = None) -> Optional[str]:
        principal = principal or self.settings.backup_principal
        token = self.get_token(principal)
        if token is None:
            self.logger.warning(f"No token stored for principal {principal}")
            return None

        if token.is_valid(self.clock(), self.settings.token_skew):
            return token.access_token

        if not token.refresh_token:
            self.logger.error(f"Token for {principal} expired and has no refresh token; re-authentication required")
            return None

        try:
            return self.refresh(token).access_token
        except RefreshError as e:
            self.logger.error(f"Token refresh failed for {principal}: {e}")
            return None

    def require_access_token(self, principal: Optional[str] = None) -> str:
        principal = principal or self.settings.backup_principal
        access_token = self.get_valid_access_token(principal)
        if access_token is None:
            raise Unauthenticated(principal)
        return access_token

    def revoke(self, principal: Optional[str] = None) -> bool:
        principal = principal or self.settings.backup_principal
        removed = db.delete_token(self.settings.db_path, principal, PROVIDER)
        if removed:
            self.logger.info(f"Revoked token for principal {principal}")
        return removed

    def is_authenticated(self, principal: Optional[str] = None) -> bool:
        return self.get_valid_access_token(principal) is not None

    def token_status(self, principal: Optional[str] = None, expiring_within: int = 600) -> Dict[str, object]:
        token = self.get_token(principal)
        if token is None:
            return {"authenticated": False, "principal": principal or self.settings.backup_principal}
        now = self.clock()
        return {
            "authenticated": True,
            "principal": token.principal,
            "expires_at": to_iso(token.expires_at),
            "is_expired": not token.is_valid(now),
            "expiring_soon": token.is_valid(now) and token.expires_at <= now + datetime.timedelta(
                seconds=expiring_within),
            "has_refresh_token": bool(token.refresh_token),
            "scopes": token.scopes,
        }

    def refresh_expiring(self, within: int = 600) -> Dict[str, bool]:
        """
        Refresh every stored token that expires within `within` seconds.
        Returns principal -> success. Tokens without a refresh token are reported as failed.
        """
        results: Dict[str, bool] = {}
        horizon = self.clock() + datetime.timedelta(seconds=within)
        for row in db.fetch_tokens(self.settings.db_path, PROVIDER):
            token = OAuthToken.from_row(row)
            if token.expires_at > horizon:
                continue
            try:
                self.refresh(token)
                results[token.principal] = True
            except RefreshError as e:
                self.logger.error(f"Scheduled refresh failed for {token.principal}: {e}")
                results[token.principal] = False
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _post_token(self, data: Dict[str, str], error_cls: type) -> dict:
        try:
            resp = self.session.post(self.settings.token_url, data=data, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise error_cls(f"Token endpoint unreachable: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise error_cls(f"Token endpoint returned {resp.status_code}: {_error_description(resp)}",
                            resp.status_code)
        try:
            payload = resp.json()
        except ValueError as e:
            raise error_cls("Token endpoint returned a non-JSON body", resp.status_code) from e
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise error_cls("Token response has no access_token", resp.status_code)
        return payload

    def _token_from_payload(self, payload: dict, principal: str, previous_refresh: Optional[str] = None) -> OAuthToken:
        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        return OAuthToken(
            principal=principal,
            provider=PROVIDER,
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh,
            expires_at=self.clock() + datetime.timedelta(seconds=expires_in),
            scopes=payload.get("scope") or self.settings.scopes,
            token_type=payload.get("token_type") or "Bearer",
        )

    def _persist(self, token: OAuthToken) -> None:
        db.save_token(
            self.settings.db_path,
            token.principal,
            token.provider,
            token.access_token,
            token.refresh_token,
            to_iso(token.expires_at),
            token.scopes,
            token.token_type,
        )


def _error_description(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)[:200]
    return str(body)[:200]
