"""Image build module.

This module handles:
- The persistent build cache
- Source bundle staging
- Image builder backends
- The image build adapter used by runs
"""

from monodeploy.builds.models import CacheEntry

__all__ = ["CacheEntry"]

# Lazy imports for submodules to avoid circular imports
# Access via monodeploy.builds.service, etc.
