"""
Google Drive v3 client, limited to what the folder policy needs: parent links.
"""

import asyncio
import logging

from .auth import AuthProvider
from .retry import RetryContext, RetryExecutor

logger = logging.getLogger(__name__)


class DriveFolderClient:
    """Wraps the Drive ``files.get`` call used by the folder-hierarchy walk."""

    def __init__(
        self,
        auth: AuthProvider | None = None,
        executor: RetryExecutor | None = None,
        service=None,
    ) -> None:
        if auth is None and service is None:
            raise ValueError("DriveFolderClient needs an AuthProvider or a prebuilt service")
        self._auth = auth
        self._executor = executor or RetryExecutor()
        self._service = service

    async def _drive(self):
        if self._service is None:
            self._service = await self._auth.build_service("drive", "v3")
        return self._service

    async def get_parents(self, file_id: str) -> list[str]:
        """
        Return the parent folder ids of ``file_id`` (empty for a root).
        Raises ServiceError/AuthError once retries are exhausted.
        """
        service = await self._drive()

        def _sync():
            return service.files().get(
                fileId=file_id,
                fields="parents",
                supportsAllDrives=True,
            ).execute()

        meta = await self._executor.execute(
            lambda: asyncio.to_thread(_sync),
            RetryContext(operation="files.get", service="drive", data={"file_id": file_id}),
        )
        parents = list((meta or {}).get("parents") or [])
        logger.debug("Drive parents of %s: %s", file_id, parents)
        return parents
