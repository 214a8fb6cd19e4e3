"""Periodic loops and process wiring."""

from alertpipe.runtime.sampler import RegistrySource, Sampler, SnapshotWindow
from alertpipe.runtime.tasks import AlertingRuntime, Handoff, PeriodicTask

__all__ = [
    "AlertingRuntime",
    "Handoff",
    "PeriodicTask",
    "RegistrySource",
    "Sampler",
    "SnapshotWindow",
]
