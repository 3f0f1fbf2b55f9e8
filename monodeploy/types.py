"""Shared type definitions for monodeploy.

This module contains enums, dataclasses and constants shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TargetKind(str, Enum):
    """Kind of a declared target."""

    IMAGE = "image"
    MANIFEST = "manifest"
    GROUP = "group"


class TargetStatus(str, Enum):
    """Outcome of a target within one run."""

    SUCCEEDED = "succeeded"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExitCode(int, Enum):
    """Process exit codes of the CLI."""

    OK = 0
    CONFIGURATION_ERROR = 1
    CYCLE = 3
    BUILD_FAILURE = 4
    APPLY_FAILURE = 5


@dataclass(frozen=True)
class BuildResult:
    """Output of a successful build, as recorded in the cache store.

    Attributes:
        target_id: Label of the built target.
        reference: Content-addressed reference (e.g. repo@sha256:...).
        built_at: When the result was produced.
        success: Whether the build succeeded.
    """

    target_id: str
    reference: str
    built_at: datetime
    success: bool = True


__all__ = [
    "BuildResult",
    "ExitCode",
    "TargetKind",
    "TargetStatus",
]
