"""Tests for workspace_gate/google/auth.py."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from workspace_gate.exceptions import AuthError
from workspace_gate.google.auth import AuthProvider, load_credentials


def fresh_creds():
    return MagicMock(expired=False)


# ── Credential chain ───────────────────────────────────────────────────────────

class TestLoadCredentials:
    def test_service_account_key_first(self, tmp_path):
        key = tmp_path / "sa.json"
        key.write_text("{}")
        creds = fresh_creds()
        with patch(
            "google.oauth2.service_account.Credentials.from_service_account_file",
            return_value=creds,
        ) as from_file, patch("workspace_gate.google.auth._try_adc") as adc:
            assert load_credentials(str(key)) is creds
        from_file.assert_called_once()
        adc.assert_not_called()

    def test_missing_service_account_key(self, tmp_path):
        with pytest.raises(AuthError, match="not found"):
            load_credentials(str(tmp_path / "missing.json"))

    def test_adc_used_when_no_key(self):
        creds = fresh_creds()
        with patch("workspace_gate.google.auth._try_adc", return_value=creds):
            assert load_credentials() is creds

    def test_token_file_fallback(self):
        from google.auth.exceptions import DefaultCredentialsError

        creds = fresh_creds()
        with patch("workspace_gate.google.auth._try_adc",
                   side_effect=DefaultCredentialsError("no adc")), \
             patch("workspace_gate.google.auth._from_token_file", return_value=creds) as from_token:
            assert load_credentials(token_file="token.json") is creds
        from_token.assert_called_once()

    def test_nothing_configured(self):
        from google.auth.exceptions import DefaultCredentialsError

        with patch("workspace_gate.google.auth._try_adc",
                   side_effect=DefaultCredentialsError("no adc")):
            with pytest.raises(AuthError, match="not configured"):
                load_credentials()

    def test_missing_token_file(self, tmp_path):
        from google.auth.exceptions import DefaultCredentialsError

        with patch("workspace_gate.google.auth._try_adc",
                   side_effect=DefaultCredentialsError("no adc")):
            with pytest.raises(AuthError, match="Token file not found"):
                load_credentials(token_file=str(tmp_path / "token.json"))


# ── Single-flight provider ─────────────────────────────────────────────────────

class TestAuthProvider:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self):
        creds = fresh_creds()
        provider = AuthProvider()

        def slow_load(*args):
            import time
            time.sleep(0.05)
            return creds

        with patch("workspace_gate.google.auth.load_credentials", side_effect=slow_load) as load:
            results = await asyncio.gather(*(provider.get_credentials() for _ in range(5)))

        assert all(r is creds for r in results)
        assert load.call_count == 1
        assert provider.loaded

    @pytest.mark.asyncio
    async def test_cached_after_load(self):
        provider = AuthProvider()
        with patch("workspace_gate.google.auth.load_credentials", return_value=fresh_creds()) as load:
            await provider.get_credentials()
            await provider.get_credentials()
        assert load.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_load_is_not_cached(self):
        creds = fresh_creds()
        provider = AuthProvider()
        with patch(
            "workspace_gate.google.auth.load_credentials",
            side_effect=[AuthError("nope"), creds],
        ) as load:
            with pytest.raises(AuthError):
                await provider.get_credentials()
            assert await provider.get_credentials() is creds
        assert load.call_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_auth_errors(self):
        provider = AuthProvider()
        with patch("workspace_gate.google.auth.load_credentials",
                   side_effect=RuntimeError("disk on fire")):
            with pytest.raises(AuthError) as exc_info:
                await provider.get_credentials()
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_expired_credentials_are_reloaded(self):
        first, second = fresh_creds(), fresh_creds()
        provider = AuthProvider()
        with patch("workspace_gate.google.auth.load_credentials", side_effect=[first, second]):
            assert await provider.get_credentials() is first
            first.expired = True
            assert await provider.get_credentials() is second

    @pytest.mark.asyncio
    async def test_invalidate(self):
        provider = AuthProvider()
        with patch("workspace_gate.google.auth.load_credentials", return_value=fresh_creds()) as load:
            await provider.get_credentials()
            provider.invalidate()
            assert not provider.loaded
            await provider.get_credentials()
        assert load.call_count == 2

    @pytest.mark.asyncio
    async def test_build_service(self):
        creds = fresh_creds()
        provider = AuthProvider()
        with patch("workspace_gate.google.auth.load_credentials", return_value=creds), \
             patch("googleapiclient.discovery.build") as build:
            service = await provider.build_service("drive", "v3")
        build.assert_called_once_with("drive", "v3", credentials=creds, cache_discovery=False)
        assert service is build.return_value
