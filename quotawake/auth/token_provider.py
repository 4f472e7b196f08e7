"""Access-token status for stored accounts, refreshing via the OAuth refresh_token grant."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from quotawake.interfaces import AccountStore
from quotawake.models import AccessTokenResult, TokenState

logger = logging.getLogger(__name__)

# Refresh a little before the token actually expires
REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_TIMEOUT_SECONDS = 15


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class OAuthTokenProvider:
    def __init__(
        self,
        accounts: AccountStore,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.accounts = accounts
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.clock = clock

    async def get_access_token_status(self, email: str) -> AccessTokenResult:
        credential = await self.accounts.get_credential(email)
        if credential is None:
            return AccessTokenResult(state=TokenState.MISSING, error=f"No credential for {email}")

        now = self.clock()
        expires_at = _parse_expiry(credential.expires_at)
        if credential.access_token and expires_at is not None and expires_at - now >= REFRESH_BUFFER:
            return AccessTokenResult(state=TokenState.OK, token=credential.access_token)

        is_expired = expires_at is None or expires_at <= now
        logger.info("Access token for %s expiring soon, refreshing", email)
        result = await self._refresh(email)
        if result.state == TokenState.MISSING and is_expired:
            return AccessTokenResult(state=TokenState.EXPIRED, error="Access token expired")
        return result

    async def _refresh(self, email: str) -> AccessTokenResult:
        credential = await self.accounts.get_credential(email)
        if credential is None or not credential.refresh_token:
            logger.warning("No refresh token available for %s", email)
            return AccessTokenResult(state=TokenState.MISSING)

        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.token_url, data=form)
        except httpx.HTTPError as e:
            logger.error("Token refresh for %s failed: %s: %s", email, type(e).__name__, e)
            return AccessTokenResult(state=TokenState.REFRESH_FAILED, error=f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            body = response.text[:500]
            if "invalid_grant" in body.lower():
                logger.warning("Refresh token for %s is no longer valid (invalid_grant)", email)
                await self.accounts.save_credential(email, credential.model_copy(update={"is_invalid": True}))
                return AccessTokenResult(state=TokenState.INVALID_GRANT, error=body)
            message = f"Token refresh failed: HTTP {response.status_code} - {body}"
            logger.error("%s (%s)", message, email)
            return AccessTokenResult(state=TokenState.REFRESH_FAILED, error=message)

        try:
            data = response.json()
        except ValueError:
            logger.error("Token refresh for %s returned a non-JSON body", email)
            return AccessTokenResult(state=TokenState.REFRESH_FAILED, error="Token response was not valid JSON")

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            return AccessTokenResult(state=TokenState.REFRESH_FAILED, error="Token response had no access_token")

        expires_at = self.clock() + timedelta(seconds=int(data.get("expires_in", 3600)))
        await self.accounts.save_credential(
            email,
            credential.model_copy(
                update={"access_token": access_token, "expires_at": expires_at.isoformat(), "is_invalid": False}
            ),
        )
        logger.info("Access token refreshed for %s", email)
        return AccessTokenResult(state=TokenState.OK, token=access_token)
