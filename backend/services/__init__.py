"""Services package."""
from services.credentials import CredentialStore
from services.oauth import OAuthClient
from services.sync_orchestrator import SyncOrchestrator
from services.sync_watermarks import WatermarkStore
from services.token_refresher import TokenRefresher

__all__ = ["CredentialStore", "OAuthClient", "SyncOrchestrator", "TokenRefresher", "WatermarkStore"]
