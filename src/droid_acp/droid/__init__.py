"""Droid subprocess transport and stdout reconciliation."""

from .protocols import DroidEventHandler, DroidProcess
from .reconciler import MessageReconciler
from .transport import PROXY_BASE_URL_ENV, DroidTransport, TransportState

__all__ = [
    "PROXY_BASE_URL_ENV",
    "DroidEventHandler",
    "DroidProcess",
    "DroidTransport",
    "MessageReconciler",
    "TransportState",
]
