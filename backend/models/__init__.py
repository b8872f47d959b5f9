"""Database models package."""
from models.database import Base, get_session, close_db, get_pool_status, get_engine
from models.contact import DealContact
from models.credential import ProviderCredential
from models.deal import Deal
from models.email import Email
from models.sync_watermark import SyncWatermark

__all__ = [
    "Base",
    "get_session",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Deal",
    "DealContact",
    "Email",
    "ProviderCredential",
    "SyncWatermark",
]
