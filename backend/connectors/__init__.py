"""Data connectors package."""
from connectors.base import BaseConnector
from connectors.folk import FolkConnector
from connectors.gmail import GmailConnector
from connectors.hubspot import HubSpotConnector
from connectors.pipedrive import PipedriveConnector
from connectors.salesforce import SalesforceConnector
from connectors.zoho import ZohoConnector

__all__ = [
    "BaseConnector",
    "FolkConnector",
    "GmailConnector",
    "HubSpotConnector",
    "PipedriveConnector",
    "SalesforceConnector",
    "ZohoConnector",
]
