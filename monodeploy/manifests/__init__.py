"""Manifest module.

This module handles:
- Kubernetes resource helpers (kinds, scopes, API paths)
- Binding image placeholders to built references
"""
