"""
Token Provider - Bearer Credential Lifecycle

Exchanges the platform e-mail/password (HTTP Basic) for a bearer token, caches
it, and refreshes it shortly before it expires or when a call comes back 401.
Concurrent callers share one refresh. Token values are never logged.
"""

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from campaign_sync.transport import RequestSpec, ResilientTransport
from campaign_sync.utils.config import Settings
from campaign_sync.utils.schemas import Credential, TokenResponse

TOKEN_PATH = "/auth/token"


class TokenProvider:
    """Owns the cached Credential; the only component that mutates it."""

    def __init__(
        self,
        transport: ResilientTransport,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            transport: Transport used for the token exchange; it must not hold a
                token provider itself
            settings: Credentials, auth deadline and refresh buffer
            clock: Epoch-seconds clock
            logger: Event sink, defaults to this module's logger
        """
        self.transport = transport
        self.settings = settings
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _usable(self, credential: Optional[Credential]) -> bool:
        return credential is not None and credential.is_usable(
            self._clock(), self.settings.TOKEN_REFRESH_BUFFER
        )

    async def get_token(self) -> Credential:
        """Return a usable credential, refreshing it if needed.

        Raises:
            AuthError: If the platform rejects the credentials
            TransportError: If the token endpoint could not be reached
        """
        if self._usable(self._credential):
            return self._credential

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._usable(self._credential):
                return self._credential
            self._credential = await self._refresh()
            return self._credential

    def invalidate(self, credential: Optional[Credential] = None) -> None:
        """Drop the cached credential.

        When `credential` is given, the cache is only cleared if it still holds
        that credential.
        """
        if credential is not None and credential is not self._credential:
            return
        if self._credential is not None:
            self._logger.info("Token invalidated")
        self._credential = None

    def _basic_auth(self) -> str:
        raw = f"{self.settings.AD_PLATFORM_EMAIL}:{self.settings.AD_PLATFORM_PASSWORD.get_secret_value()}"
        return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")

    async def _refresh(self) -> Credential:
        self._logger.info("Fetching new access token")
        requested_at = self._clock()
        spec = RequestSpec(
            "POST",
            TOKEN_PATH,
            timeout=self.settings.AUTH_TIMEOUT,
            headers={"Authorization": self._basic_auth()},
            authenticated=False,
        )
        token = await self.transport.execute_model(spec, TokenResponse)

        # Lifetime counts from before the request went out, never from the server clock
        credential = Credential(
            access_token=token.access_token,
            token_type=token.token_type,
            issued_at=requested_at,
            expires_in=token.expires_in,
        )
        self.refresh_count += 1
        self._logger.info(
            "Token refreshed",
            extra={
                "expires_at": datetime.fromtimestamp(credential.expires_at, tz=timezone.utc).isoformat(),
                "expires_in": credential.expires_in,
            },
        )
        return credential
