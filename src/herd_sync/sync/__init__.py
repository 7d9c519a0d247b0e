"""Sync module."""

from .engine import SyncEngine
from .reconciler import EventReconciler

__all__ = ["SyncEngine", "EventReconciler"]
