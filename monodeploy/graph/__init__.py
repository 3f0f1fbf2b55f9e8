"""Target graph module.

This module handles:
- Target and graph models with the dependency adjacency index
- Label parsing and visibility rules
- Declaration file schema and loading
- Target fingerprinting
"""

from monodeploy.graph.models import (
    DuplicateTargetError,
    ImageSpec,
    ManifestSpec,
    Target,
    TargetGraph,
    UnknownTargetError,
)

__all__ = [
    "DuplicateTargetError",
    "ImageSpec",
    "ManifestSpec",
    "Target",
    "TargetGraph",
    "UnknownTargetError",
]
