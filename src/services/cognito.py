"""AWS Cognito token provider for the Emporia API.

Emporia authenticates API calls with a Cognito user-pool ID token sent in
the ``authtoken`` header.  Tokens are obtained with the username/password
flow and renewed with the refresh token shortly before they expire.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.metering.base import AuthenticationError, utcnow

logger = logging.getLogger("emporia.cognito")

# Refresh this long before the ID token actually expires
_REFRESH_BUFFER = timedelta(minutes=5)


class CognitoAuthenticator:
    """Obtain and refresh Cognito ID tokens for one user.

    Usage::

        auth = CognitoAuthenticator(
            username="me@example.com", password="...",
            client_id="4qte47jbstod8apnfic0bunmrq", pool_id="us-east-2_ghlOXVLi1",
            region="us-east-2",
        )
        headers = {"authtoken": await auth.id_token()}
    """

    def __init__(
        self,
        username: str,
        password: str,
        client_id: str,
        pool_id: str,
        region: str,
        client: Any | None = None,
    ) -> None:
        """Initialize the authenticator.

        Args:
            username:  Emporia account username (email).
            password:  Emporia account password.
            client_id: Cognito app client ID.
            pool_id:   Cognito user pool ID.
            region:    AWS region of the user pool.
            client:    Optional pre-built ``cognito-idp`` client (for testing).
        """
        self._username = username
        self._password = password
        self._client_id = client_id
        self.pool_id = pool_id
        self._client = client or boto3.client("cognito-idp", region_name=region)
        self._id_token: str | None = None
        self._refresh_token: str | None = None
        self._expires_at: datetime | None = None

    def needs_refresh(self) -> bool:
        if self._id_token is None or self._expires_at is None:
            return True
        return self._expires_at - utcnow() < _REFRESH_BUFFER

    async def id_token(self) -> str:
        """Return a valid ID token, authenticating or refreshing as needed.

        Raises:
            AuthenticationError: If Cognito rejects the credentials.
        """
        if not self.needs_refresh():
            return self._id_token  # type: ignore[return-value]

        if self._refresh_token:
            try:
                self._initiate(
                    "REFRESH_TOKEN_AUTH", {"REFRESH_TOKEN": self._refresh_token}
                )
                logger.info("Refreshed Cognito token for %s", self._username)
                return self._id_token  # type: ignore[return-value]
            except AuthenticationError as exc:
                logger.warning(
                    "Token refresh failed for %s: %s. Re-authenticating.",
                    self._username, exc,
                )
                self._refresh_token = None

        self._initiate(
            "USER_PASSWORD_AUTH",
            {"USERNAME": self._username, "PASSWORD": self._password},
        )
        logger.info("Authenticated %s with Cognito pool %s", self._username, self.pool_id)
        return self._id_token  # type: ignore[return-value]

    def invalidate(self) -> None:
        """Force the next ``id_token()`` call to renew the token."""
        self._expires_at = None

    def _initiate(self, flow: str, parameters: dict[str, str]) -> None:
        try:
            response = self._client.initiate_auth(
                ClientId=self._client_id,
                AuthFlow=flow,
                AuthParameters=parameters,
            )
        except (ClientError, BotoCoreError) as exc:
            raise AuthenticationError(f"Cognito {flow} failed: {exc}") from exc

        result = response.get("AuthenticationResult")
        if not result or "IdToken" not in result:
            challenge = response.get("ChallengeName", "unknown")
            raise AuthenticationError(f"Cognito {flow} returned challenge {challenge}")

        self._id_token = result["IdToken"]
        self._refresh_token = result.get("RefreshToken", self._refresh_token)
        self._expires_at = utcnow() + timedelta(seconds=int(result.get("ExpiresIn", 3600)))
