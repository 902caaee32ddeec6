"""
Delivery transports (external collaborator).

A transport uploads one generated file to a payer's destination and reports
success or failure. Timeouts belong to the transport; any exception it
raises is counted by the retry coordinator as a failed attempt.
"""
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..models.domain import UploadResult

logger = logging.getLogger(__name__)

NO_TRANSPORT = "No delivery transport configured"


@dataclass(frozen=True)
class DeliveryDestination:
    """Where a payer's files go. Built from the payer's delivery fields."""
    payer_id: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_payer(cls, payer) -> Optional["DeliveryDestination"]:
        if payer is None:
            return None
        if not (payer.delivery_host or payer.delivery_path):
            return None
        return cls(
            payer_id=payer.payer_id,
            host=payer.delivery_host,
            port=payer.delivery_port,
            username=payer.delivery_username,
            path=payer.delivery_path,
        )

    def describe(self) -> str:
        target = self.path or "/"
        if self.host:
            user = f"{self.username}@" if self.username else ""
            port = f":{self.port}" if self.port else ""
            return f"{user}{self.host}{port}{target}"
        return target


class DeliveryTransport(ABC):

    @abstractmethod
    def upload(self, content: bytes, file_name: str, destination: DeliveryDestination) -> UploadResult:
        pass


class UnconfiguredTransport(DeliveryTransport):
    """Installed when no upload target is configured. Every upload fails."""

    def upload(self, content: bytes, file_name: str, destination: DeliveryDestination) -> UploadResult:
        logger.warning(f"No delivery transport configured; cannot upload {file_name} to {destination.describe()}")
        return UploadResult(success=False, message=NO_TRANSPORT)


class LocalDirectoryTransport(DeliveryTransport):
    """Writes files under a local root, one sub-directory per destination path."""

    def __init__(self, root_dir: str):
        self.root_dir = root_dir

    def upload(self, content: bytes, file_name: str, destination: DeliveryDestination) -> UploadResult:
        relative = (destination.path or destination.payer_id).strip("/")
        target_dir = os.path.join(self.root_dir, relative)
        os.makedirs(target_dir, exist_ok=True)
        target = os.path.join(target_dir, file_name)
        with open(target, "wb") as f:
            f.write(content or b"")
        logger.info(f"Wrote {file_name} to {target}")
        return UploadResult(success=True, message=target)
