"""Best-effort synchronisation of discovered entities into external stores."""

from onboardlib.sync.base import SyncAction, SyncResult, SyncSummary
from onboardlib.sync.contacts import ContactsClient, ContactsSyncAdapter
from onboardlib.sync.tasks import TasksClient, TasksSyncAdapter

__all__ = [
    "ContactsClient",
    "ContactsSyncAdapter",
    "SyncAction",
    "SyncResult",
    "SyncSummary",
    "TasksClient",
    "TasksSyncAdapter",
]
