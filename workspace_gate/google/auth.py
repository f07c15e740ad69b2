"""
Google credential management.

Credentials are resolved from, in order:

  1. A service-account key file (GOOGLE_SERVICE_ACCOUNT_KEY_PATH).
  2. Application Default Credentials
     (``gcloud auth application-default login`` or GOOGLE_APPLICATION_CREDENTIALS).
  3. An authorized-user token file (GOOGLE_TOKEN_FILE), refreshed and saved
     when expired.

``AuthProvider`` loads them lazily. Concurrent first callers share a single
in-flight load; a failed load is not cached, so the next call tries again.
"""

import asyncio
import logging
from pathlib import Path

from ..constants import ERROR_MESSAGES
from ..exceptions import AuthError

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/calendar",
]


def _from_service_account(key_path: str, scopes: list[str]):
    from google.oauth2 import service_account

    path = Path(key_path)
    if not path.exists():
        raise AuthError(
            f"Service account key file not found: {key_path}",
            context={"key_path": key_path},
        )
    try:
        creds = service_account.Credentials.from_service_account_file(str(path), scopes=scopes)
    except ValueError as e:
        raise AuthError(
            f"Invalid service account key file: {e}", context={"key_path": key_path}
        ) from e
    logger.debug("Using service account credentials from %s", key_path)
    return creds


def _try_adc(scopes: list[str]):
    """
    Attempt Application Default Credentials.
    Returns credentials or raises google.auth.exceptions.DefaultCredentialsError.
    """
    from google.auth import default as google_auth_default
    from google.auth.transport.requests import Request

    creds, _ = google_auth_default(scopes=scopes)

    if getattr(creds, "expired", False) and hasattr(creds, "refresh"):
        creds.refresh(Request())
        logger.debug("ADC credentials refreshed")

    return creds


def _from_token_file(token_file: str, scopes: list[str]):
    from google.auth.exceptions import RefreshError
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials

    token_path = Path(token_file)
    if not token_path.exists():
        raise AuthError(
            f"Token file not found: {token_file}", context={"token_file": token_file}
        )

    creds = Credentials.from_authorized_user_file(str(token_path), scopes)
    if creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthError(
                f"Could not refresh token: {e}", context={"token_file": token_file}
            ) from e
        with open(token_path, "w") as f:
            f.write(creds.to_json())
        logger.debug("Token refreshed and saved to %s", token_file)

    return creds


def load_credentials(
    service_account_key_path: str | None = None,
    token_file: str | None = None,
    scopes: list[str] | None = None,
):
    """
    Return valid Google credentials from the first source that works.

    Raises AuthError if none is available.
    """
    from google.auth.exceptions import DefaultCredentialsError

    scopes = scopes or SCOPES

    if service_account_key_path:
        return _from_service_account(service_account_key_path, scopes)

    try:
        creds = _try_adc(scopes)
        logger.debug("Using Google Application Default Credentials")
        return creds
    except DefaultCredentialsError as adc_err:
        logger.debug("ADC not available (%s), trying token file", adc_err)

    if token_file:
        return _from_token_file(token_file, scopes)

    raise AuthError(ERROR_MESSAGES["google_not_configured"])


class AuthProvider:
    """Lazily loaded, shared Google credentials."""

    def __init__(
        self,
        *,
        service_account_key_path: str | None = None,
        token_file: str | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        self._service_account_key_path = service_account_key_path or None
        self._token_file = token_file or None
        self._scopes = scopes or SCOPES
        self._credentials = None
        self._pending: asyncio.Future | None = None

    @property
    def loaded(self) -> bool:
        return self._credentials is not None

    async def get_credentials(self):
        """Return cached credentials, loading (or reloading if expired) on demand."""
        creds = self._credentials
        if creds is not None and not getattr(creds, "expired", False):
            return creds

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._load())
        # Shield so one caller being cancelled does not abort the shared load.
        return await asyncio.shield(self._pending)

    async def _load(self):
        try:
            creds = await asyncio.to_thread(
                load_credentials,
                self._service_account_key_path,
                self._token_file,
                self._scopes,
            )
        except AuthError:
            logger.warning("Google credential load failed")
            raise
        except Exception as e:
            logger.warning("Google credential load failed: %s", e)
            raise AuthError(f"Could not load Google credentials: {e}") from e
        finally:
            self._pending = None
        self._credentials = creds
        return creds

    def invalidate(self) -> None:
        """Forget cached credentials; the next call reloads them."""
        self._credentials = None

    async def build_service(self, name: str, version: str):
        """Return a discovery client for ``name``/``version`` using these credentials."""
        from googleapiclient.discovery import build

        creds = await self.get_credentials()
        return build(name, version, credentials=creds, cache_discovery=False)
