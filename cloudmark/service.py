"""
Service facade: the request/response surface used by front ends.

Every operation returns a ``ServiceResponse`` instead of raising, so a
caller (the CLI, a UI shell) only has to look at ``ok``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cloudmark.backup import BackupOrchestrator, BackupReason, Notifier
from cloudmark.config import CloudmarkConfig, Settings, WebDavSettings
from cloudmark.conflict import ConflictDetector
from cloudmark.errors import CloudmarkError, ConfigError
from cloudmark.storage import LocalStore
from cloudmark.sync import SyncExecutor
from cloudmark.validation_cache import ValidationCache
from cloudmark.webdav import WebDAVClient

logger = logging.getLogger(__name__)


@dataclass
class ServiceResponse:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "ServiceResponse":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "ServiceResponse":
        return cls(ok=False, error=str(error), error_type=type(error).__name__)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'ok': self.ok}
        if self.ok:
            result['value'] = self.value
        else:
            result['error'] = self.error
            result['error_type'] = self.error_type
        return result


class CloudService:
    """
    Wires the store, transport and backup components together.

    One ``ValidationCache`` is shared by every client the service builds,
    so repeated operations against the same server skip revalidation.
    """

    def __init__(self, store: LocalStore, config: Optional[CloudmarkConfig] = None,
                 notifier: Optional[Notifier] = None,
                 cache: Optional[ValidationCache] = None,
                 client_factory=None):
        self.store = store
        self.config = config or CloudmarkConfig()
        self.cache = cache if cache is not None else ValidationCache()
        self.client_factory = client_factory or self.client_for
        self.orchestrator = BackupOrchestrator(store, self.client_factory, notifier=notifier)
        self.detector = ConflictDetector(self.client_factory)
        self.executor = SyncExecutor(store, self.orchestrator, self.client_factory)

    def client_for(self, settings: Settings) -> WebDAVClient:
        return WebDAVClient.from_settings(settings.webdav, cache=self.cache,
                                          relay_url=self.config.relay_url)

    async def backup(self, source: Any = BackupReason.USER) -> ServiceResponse:
        try:
            result = await self.orchestrator.backup(source)
        except (CloudmarkError, OSError, ValueError) as e:
            return ServiceResponse.failure(e)
        return ServiceResponse.success(result.to_dict())

    async def list_snapshots(self) -> ServiceResponse:
        """Validate the connection, then list remote snapshots."""
        settings = self.store.read_settings()
        if not settings.is_configured():
            return ServiceResponse.failure(ConfigError("WebDAV is not configured"))

        try:
            async with self.client_factory(settings) as client:
                probe = await client.probe_reachable()
                probe.raise_for_failure()
                files = await client.list()
        except CloudmarkError as e:
            return ServiceResponse.failure(e)
        return ServiceResponse.success([f.to_dict() for f in files])

    async def restore(self, name: str) -> ServiceResponse:
        try:
            outcome = await self.executor.restore(name)
        except (CloudmarkError, OSError, ValueError) as e:
            return ServiceResponse.failure(e)
        return ServiceResponse.success(outcome.to_dict())

    async def check_remote(self) -> ServiceResponse:
        try:
            data, settings = self.store.read_all()
            result = await self.detector.check_for_newer_remote(data, settings)
        except (CloudmarkError, OSError, ValueError) as e:
            return ServiceResponse.failure(e)
        return ServiceResponse.success(result.to_dict())

    async def sync_from(self, name: str) -> ServiceResponse:
        """Safe restore; an overlapping request succeeds with status ``already_syncing``."""
        try:
            outcome = await self.executor.sync_from(name)
        except (CloudmarkError, OSError, ValueError) as e:
            return ServiceResponse.failure(e)
        return ServiceResponse.success(outcome.to_dict())

    async def test_connection(self, config: Union[WebDavSettings, Dict[str, Any], None] = None) -> ServiceResponse:
        """
        Strict connection test with a write probe.

        Args:
            config: Endpoint to test; defaults to the stored WebDAV settings
        """
        if config is None:
            webdav = self.store.read_settings().webdav
        elif isinstance(config, dict):
            webdav = WebDavSettings(
                url=config.get("url") or "",
                username=config.get("username") or "",
                password=config.get("password") or "",
            )
        else:
            webdav = config

        async with WebDAVClient.from_settings(webdav, cache=self.cache,
                                              relay_url=self.config.relay_url) as client:
            probe = await client.test_authentication()

        if not probe.success:
            logger.info(f"Connection test failed: {probe.error}")
            return ServiceResponse(ok=False, value=probe.to_dict(), error=probe.error,
                                   error_type=probe.error_type)
        return ServiceResponse.success(probe.to_dict())
