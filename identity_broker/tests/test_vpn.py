"""
VPN Provisioning Tests
"""

from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from conftest import run
from identity_broker.vpn.client import VpnProvisioner, save_profile

PROFILE = "client\ndev tun\nifconfig 10.8.0.42 255.255.255.0\n"


def _response(text=PROFILE, status_code=200, headers=None):
    response = Mock()
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    response.text = text
    response.headers = httpx.Headers(headers or {})
    return response


def mock_async_client(post):
    client = MagicMock()
    client.post = AsyncMock(side_effect=post) if isinstance(post, Exception) else AsyncMock(return_value=post)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=client)
    context.__aexit__ = AsyncMock(return_value=False)
    return Mock(return_value=context), client


class TestVpnProvisioner:
    @pytest.mark.asyncio
    async def test_profile_with_ip_header(self, settings):
        factory, client = mock_async_client(
            _response(
                headers={
                    "Content-Disposition": 'attachment; filename="thandi.ovpn"',
                    "X-VPN-IP": "10.8.0.7",
                }
            )
        )

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            profile = await VpnProvisioner(settings).request_profile("thandi@students.wits.ac.za")

        assert profile.success is True
        assert profile.file_name == "thandi.ovpn"
        assert profile.assigned_ip == "10.8.0.7"
        assert profile.file_content == PROFILE
        assert client.post.call_args.args[0] == "http://vpn.test/api/profile"
        assert client.post.call_args.kwargs["json"] == {"email": "thandi@students.wits.ac.za"}

    @pytest.mark.asyncio
    async def test_ip_falls_back_to_ifconfig_line(self, settings):
        factory, _ = mock_async_client(_response())

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            profile = await VpnProvisioner(settings).request_profile("thandi@students.wits.ac.za")

        assert profile.assigned_ip == "10.8.0.42"
        assert profile.file_name == "thandi.ovpn"

    @pytest.mark.asyncio
    async def test_backend_error(self, settings):
        factory, _ = mock_async_client(_response(text="boom", status_code=500))

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            profile = await VpnProvisioner(settings).request_profile("a@students.wits.ac.za")

        assert profile.success is False
        assert "500" in profile.error

    @pytest.mark.asyncio
    async def test_backend_unreachable(self, settings):
        factory, _ = mock_async_client(httpx.ConnectError("refused"))

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            profile = await VpnProvisioner(settings).request_profile("a@students.wits.ac.za")

        assert profile.success is False


def test_save_profile_sanitises_file_name(tmp_path):
    path = save_profile(tmp_path, "we/ird@students.wits.ac.za", PROFILE)

    assert path.parent == tmp_path / "vpn-profiles"
    assert path.name == "we_ird@students.wits.ac.za.ovpn"
    assert path.read_text() == PROFILE


class TestProfileRoute:
    def test_requires_session(self, client):
        assert client.get("/vpn/profile").status_code == 401

    def test_first_download_provisions_and_records(self, logged_in_client, store, user):
        factory, client = mock_async_client(_response(headers={"X-VPN-IP": "10.8.0.9"}))

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            response = logged_in_client.get("/vpn/profile")

        assert response.status_code == 200
        assert response.text == PROFILE
        assert response.headers["content-type"].startswith("application/x-openvpn-profile")
        assert "attachment" in response.headers["content-disposition"]

        updated = run(store.get_user_by_id(user.id))
        assert updated.vpn_assigned_ip == "10.8.0.9"
        assert updated.vpn_config_path

    def test_second_download_serves_saved_file(self, logged_in_client, store, user):
        factory, client = mock_async_client(_response())

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            logged_in_client.get("/vpn/profile")
            second = logged_in_client.get("/vpn/profile")

        assert second.status_code == 200
        assert second.text == PROFILE
        assert client.post.await_count == 1

    def test_backend_failure_is_502(self, logged_in_client):
        factory, _ = mock_async_client(_response(text="down", status_code=503))

        with patch("identity_broker.vpn.client.httpx.AsyncClient", factory):
            response = logged_in_client.get("/vpn/profile")

        assert response.status_code == 502
