"""Delivery resilience: connectivity, backoff, offline queue and retries."""

from coach_chat.resilience.backoff import BackoffPolicy
from coach_chat.resilience.classifier import Classification, ErrorClassifier
from coach_chat.resilience.connectivity import (
    ConnectionType,
    ConnectivityMonitor,
    ProbeConnectivityMonitor,
)
from coach_chat.resilience.offline_queue import OfflineQueue
from coach_chat.resilience.retry import RetryCoordinator, SendOutcome

__all__ = [
    "BackoffPolicy",
    "Classification",
    "ConnectionType",
    "ConnectivityMonitor",
    "ErrorClassifier",
    "OfflineQueue",
    "ProbeConnectivityMonitor",
    "RetryCoordinator",
    "SendOutcome",
]
