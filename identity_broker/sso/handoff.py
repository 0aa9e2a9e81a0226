"""
CTFd single sign-on handoff.

The browser of a signed-in student is sent to CTFd carrying a short-lived
opaque token; CTFd redeems it server-to-server (authenticated with the
pre-shared API key) for the student's identity. Each user holds at most one
outstanding handoff token, and a token is redeemable once.
"""

import logging
from datetime import timedelta
from typing import Optional

from identity_broker.auth.tokens import CODE_BYTES, SessionClaims, mint_opaque_token
from identity_broker.config import Settings
from identity_broker.errors import InvalidRequest, InvalidToken
from identity_broker.models import SSOUser
from identity_broker.store import CredentialStore, SSOHandoffToken
from identity_broker.store.base import utcnow

logger = logging.getLogger(__name__)


class SSOHandoffService:
    """Issues and redeems CTFd handoff tokens."""

    def __init__(self, store: CredentialStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def initiate(self, session: SessionClaims) -> str:
        """
        Mint a handoff token for the session's user.

        Any token previously issued to the same user stops being redeemable.

        Returns:
            The opaque token to pass to CTFd
        """
        record = await self.store.put_sso_token(
            SSOHandoffToken(
                token=mint_opaque_token(CODE_BYTES),
                user_id=session.subject,
                email=session.email,
                name=session.name,
                expires_at=utcnow() + timedelta(seconds=self.settings.SSO_TOKEN_TTL_SECONDS),
            )
        )
        logger.info("Issued CTFd handoff token", extra={"user_id": session.subject})
        return record.token

    async def redeem(self, token: Optional[str]) -> SSOUser:
        """
        Exchange a handoff token for the identity it was issued to.

        The caller must already have checked the CTFd API key.

        Raises:
            InvalidRequest: If no token was presented
            InvalidToken: If the token is unknown, expired or already used
        """
        if not token:
            raise InvalidRequest("Missing token")

        record = await self.store.consume_sso_token(token)
        if record is None:
            raise InvalidToken("Invalid or expired token")

        logger.info("Redeemed CTFd handoff token", extra={"user_id": record.user_id})
        return SSOUser(id=record.user_id, email=record.email, name=record.name)
