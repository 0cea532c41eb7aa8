"""
Pipeline Module - Rebuild cycles and the service facade.
========================================================

- rebuild: One Fetcher → Parser → Normalizer → IndexBuilder → publish cycle
- service: Coalesced background rebuilds, schedule, status, and search
"""

from coursefinder.pipeline.rebuild import RebuildPipeline
from coursefinder.pipeline.service import CatalogService

__all__ = ["RebuildPipeline", "CatalogService"]
