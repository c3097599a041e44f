"""Billscan integrations module."""

from billscan.integrations.anthropic_extractor import AnthropicExtractor
from billscan.integrations.attachments import AttachmentStore, LocalAttachmentStore
from billscan.integrations.catalog import CatalogStore, SQLiteCatalogStore
from billscan.integrations.gdrive import GDriveAttachmentStore

__all__ = [
    "AnthropicExtractor",
    "AttachmentStore",
    "CatalogStore",
    "GDriveAttachmentStore",
    "LocalAttachmentStore",
    "SQLiteCatalogStore",
]
