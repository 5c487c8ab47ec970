from consenthub.sync.gateway import ConsentGateway, LocalConsentGateway
from consenthub.sync.mirror import LOCAL_OWNER_ID, ConsentMirror, SyncState

__all__ = [
    "ConsentGateway",
    "ConsentMirror",
    "LOCAL_OWNER_ID",
    "LocalConsentGateway",
    "SyncState",
]
