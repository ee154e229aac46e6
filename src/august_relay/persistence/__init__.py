from august_relay.persistence.bridge import CommitFlags, CommitResult, EphemeralMessageLog, PersistenceBridge
from august_relay.persistence.store import ChatStore

__all__ = [
    "ChatStore",
    "CommitFlags",
    "CommitResult",
    "EphemeralMessageLog",
    "PersistenceBridge",
]
