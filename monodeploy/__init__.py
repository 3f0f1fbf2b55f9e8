"""monodeploy - Build container images and apply Kubernetes manifests from a monorepo.

This package resolves a dependency graph of image, manifest and group targets
declared in per-directory BUILD.yaml files, builds stale images with a
content-addressed cache, and applies the bound manifests to their clusters.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
