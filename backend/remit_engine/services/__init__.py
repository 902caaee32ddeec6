"""
Remittance Engine Services

Claim change events -> Buckets -> Remittance files -> Delivery

- BucketingResolver / ClaimAggregator: group claims into accumulating buckets
- BucketLifecycleController / BucketStateMachine: thresholds, commit criteria, transitions
- ApprovalWorkflow: approve, reject, bulk approve, reset
- ThresholdMonitor / MonitorTicker: scheduled safety-net sweeps
- DeliveryRetryCoordinator: file delivery with exponential backoff
"""

from .store import BucketKeyLocks, BucketStore, FileHistoryStore
from .configuration import ConfigurationReader, ConfigurationRegistry, PartyDirectory
from .bucketing import BucketingResolver, validate_change_event
from .state_machine import BucketStateMachine
from .thresholds import ThresholdEvaluator
from .commit_criteria import CommitCriteriaEvaluator
from .payments import PaymentAssigner, NullPaymentAssigner, InstrumentPoolAssigner
from .transports import DeliveryDestination, DeliveryTransport, UnconfiguredTransport, LocalDirectoryTransport
from .generation import FileComposer, ManifestComposer, GenerationHandoff
from .context import EngineContext, build_context
from .lifecycle import BucketLifecycleController
from .aggregator import ClaimAggregator
from .approval import ApprovalWorkflow
from .delivery import DeliveryRetryCoordinator, compute_backoff_delay
from .monitor import ThresholdMonitor, MonitorTicker

__all__ = [
    'BucketKeyLocks',
    'BucketStore',
    'FileHistoryStore',
    'ConfigurationReader',
    'ConfigurationRegistry',
    'PartyDirectory',
    'BucketingResolver',
    'validate_change_event',
    'BucketStateMachine',
    'ThresholdEvaluator',
    'CommitCriteriaEvaluator',
    # External collaborators
    'PaymentAssigner',
    'NullPaymentAssigner',
    'InstrumentPoolAssigner',
    'DeliveryDestination',
    'DeliveryTransport',
    'UnconfiguredTransport',
    'LocalDirectoryTransport',
    'FileComposer',
    'ManifestComposer',
    'GenerationHandoff',
    # Wiring
    'EngineContext',
    'build_context',
    # Workflows
    'BucketLifecycleController',
    'ClaimAggregator',
    'ApprovalWorkflow',
    'DeliveryRetryCoordinator',
    'compute_backoff_delay',
    'ThresholdMonitor',
    'MonitorTicker',
]
