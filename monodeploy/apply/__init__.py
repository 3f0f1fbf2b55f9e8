"""Apply module.

This module handles:
- The apply engine routing resolved manifests to clusters
- kubectl and HTTP server-side apply backends
"""
