"""Persistence layer: the file-backed sandbox registry."""

from sitebox_orchestrator.persistence.site_registry import RegistryListing, SiteRegistry

__all__ = ["RegistryListing", "SiteRegistry"]
