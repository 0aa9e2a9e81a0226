"""
VPN provisioning client.

Talks to the separate VPN backend, which generates an OpenVPN client profile
for a student and answers with the ``.ovpn`` file as a download. The backend
announces the tunnel address it assigned in ``X-VPN-IP``; older backends only
embed it as an ``ifconfig`` line in the profile itself.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from identity_broker.config import Settings

logger = logging.getLogger(__name__)

_IFCONFIG_PATTERN = re.compile(r"ifconfig\s+(\d+\.\d+\.\d+\.\d+)", re.IGNORECASE)
_FILENAME_PATTERN = re.compile(r'filename="?([^";]+)"?', re.IGNORECASE)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9@._-]", re.IGNORECASE)


@dataclass
class VpnProfile:
    success: bool
    file_content: Optional[str] = None
    file_name: Optional[str] = None
    assigned_ip: Optional[str] = None
    error: Optional[str] = None


def default_profile_name(email: str) -> str:
    return f"{email.split('@')[0]}.ovpn"


class VpnProvisioner:
    """Client for the VPN backend's ``/api/profile`` endpoint."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def endpoint(self) -> str:
        return f"{self.settings.VPN_BACKEND_URL.rstrip('/')}/api/profile"

    async def request_profile(self, email: str) -> VpnProfile:
        """
        Ask the backend to provision a profile for ``email``.

        Failures are reported in the returned VpnProfile rather than raised,
        so the caller decides how to present them.
        """
        logger.info("Requesting VPN profile", extra={"endpoint": self.endpoint})

        try:
            async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(self.endpoint, json={"email": email})
        except httpx.HTTPError as e:
            logger.warning("VPN backend unreachable", extra={"reason": type(e).__name__})
            return VpnProfile(success=False, error="VPN backend is unreachable")

        if not response.is_success:
            logger.warning("VPN backend returned an error", extra={"status_code": response.status_code})
            return VpnProfile(success=False, error=f"Backend returned {response.status_code}")

        content = response.text

        disposition = response.headers.get("content-disposition", "")
        match = _FILENAME_PATTERN.search(disposition)
        file_name = match.group(1).strip() if match else default_profile_name(email)

        assigned_ip = response.headers.get("x-vpn-ip")
        if not assigned_ip:
            ip_match = _IFCONFIG_PATTERN.search(content)
            assigned_ip = ip_match.group(1) if ip_match else None

        return VpnProfile(
            success=True,
            file_content=content,
            file_name=file_name,
            assigned_ip=assigned_ip,
        )


def save_profile(data_dir: Path, email: str, content: str) -> Path:
    """Write a profile under ``data_dir/vpn-profiles`` and return its path."""
    profile_dir = Path(data_dir) / "vpn-profiles"
    profile_dir.mkdir(parents=True, exist_ok=True)

    path = profile_dir / f"{_UNSAFE_FILENAME_CHARS.sub('_', email)}.ovpn"
    path.write_text(content, encoding="utf-8")
    path.chmod(0o600)
    return path
