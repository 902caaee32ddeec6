"""
Engine wiring.

Everything the services share is constructed once at process start and
passed down explicitly: settings, the session factory, the configuration
cache, the per-key locks, and the external collaborators.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import EngineSettings, get_settings
from ..utils.clock import Clock
from .configuration import ConfigurationReader
from .generation import FileComposer, ManifestComposer
from .payments import PaymentAssigner, NullPaymentAssigner
from .store import BucketKeyLocks
from .transports import DeliveryTransport, UnconfiguredTransport, LocalDirectoryTransport

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    settings: EngineSettings
    session_factory: object
    config: ConfigurationReader
    locks: BucketKeyLocks
    composer: FileComposer
    payments: PaymentAssigner
    transport: DeliveryTransport
    clock: Clock


def default_transport(settings: EngineSettings) -> DeliveryTransport:
    if settings.delivery_output_dir:
        return LocalDirectoryTransport(settings.delivery_output_dir)
    if settings.delivery_enabled:
        logger.warning("DELIVERY_ENABLED is set but DELIVERY_OUTPUT_DIR is not; uploads will fail")
    return UnconfiguredTransport()


def build_context(
    settings: Optional[EngineSettings] = None,
    session_factory=None,
    composer: Optional[FileComposer] = None,
    payments: Optional[PaymentAssigner] = None,
    transport: Optional[DeliveryTransport] = None,
    clock: Optional[Clock] = None,
) -> EngineContext:
    settings = settings or get_settings()
    if session_factory is None:
        from ..database import SessionLocal
        session_factory = SessionLocal

    context = EngineContext(
        settings=settings,
        session_factory=session_factory,
        config=ConfigurationReader(session_factory),
        locks=BucketKeyLocks(),
        composer=composer or ManifestComposer(),
        payments=payments or NullPaymentAssigner(),
        transport=transport or default_transport(settings),
        clock=clock or Clock(),
    )
    logger.info(
        f"Engine context ready: transport={type(context.transport).__name__}, "
        f"delivery_enabled={settings.delivery_enabled}, "
        f"rejection_policy={settings.rejection_policy.value}"
    )
    return context
