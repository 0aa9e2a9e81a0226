"""
VPN profile download route.

A student gets one profile: the first request provisions it through the VPN
backend and records its path and tunnel address on the user; later requests
serve the saved file.
"""

import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from identity_broker.auth.tokens import SessionClaims
from identity_broker.config import Settings
from identity_broker.dependencies import get_app_settings, get_current_session, get_store
from identity_broker.errors import InvalidSession, UpstreamError
from identity_broker.store import CredentialStore
from identity_broker.vpn.client import VpnProvisioner, default_profile_name, save_profile

logger = logging.getLogger(__name__)

vpn_router = APIRouter(prefix="/vpn", tags=["vpn"])

PROFILE_MEDIA_TYPE = "application/x-openvpn-profile"


def get_vpn_provisioner(settings: Settings = Depends(get_app_settings)) -> VpnProvisioner:
    return VpnProvisioner(settings)


def _attachment(content: str, file_name: str) -> PlainTextResponse:
    return PlainTextResponse(
        content,
        media_type=PROFILE_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@vpn_router.get("/profile")
async def vpn_profile(
    session: SessionClaims = Depends(get_current_session),
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    provisioner: VpnProvisioner = Depends(get_vpn_provisioner),
) -> PlainTextResponse:
    user = await store.get_user_by_id(session.subject)
    if user is None:
        raise InvalidSession("User not found")

    if user.vpn_config_path:
        try:
            content = await asyncio.to_thread(Path(user.vpn_config_path).read_text, encoding="utf-8")
            return _attachment(content, default_profile_name(user.email))
        except OSError:
            logger.warning("Saved VPN profile unreadable, provisioning again", extra={"user_id": user.id})

    profile = await provisioner.request_profile(user.email)
    if not profile.success or not profile.file_content:
        raise UpstreamError(profile.error or "Failed to provision VPN profile")

    path = await asyncio.to_thread(save_profile, settings.DATA_DIR, user.email, profile.file_content)
    await store.update_user(
        user.id,
        vpn_config_path=str(path),
        vpn_assigned_ip=profile.assigned_ip,
    )
    logger.info("Provisioned VPN profile", extra={"user_id": user.id, "assigned_ip": profile.assigned_ip})

    return _attachment(profile.file_content, profile.file_name or default_profile_name(user.email))
