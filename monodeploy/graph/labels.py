"""Target label parsing and visibility matching.

Labels identify targets hierarchically by package path and name:

- ``//services/api:server`` - absolute label
- ``//services/api`` - short for ``//services/api:api``
- ``:server`` or ``server`` - relative to the declaring package
"""

from __future__ import annotations

import re

PUBLIC = "//visibility:public"
PRIVATE = "//visibility:private"

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")
PACKAGE_PATTERN = re.compile(r"^([A-Za-z0-9_.\-]+(/[A-Za-z0-9_.\-]+)*)?$")


class LabelError(ValueError):
    """Raised when a label cannot be parsed."""

    def __init__(self, label: str, reason: str, code: str = "invalid_label") -> None:
        super().__init__(f"Invalid label '{label}': {reason}")
        self.label = label
        self.code = code


def make_label(package: str, name: str) -> str:
    """Build a canonical label from a package path and a target name."""
    return f"//{package}:{name}"


def split_label(label: str) -> tuple[str, str]:
    """Split a canonical label into (package, name).

    Args:
        label: Absolute label such as ``//a/b:c``.

    Returns:
        Tuple of package path and target name.

    Raises:
        LabelError: If the label is not absolute or malformed.
    """
    if not label.startswith("//"):
        raise LabelError(label, "expected an absolute label starting with '//'")
    body = label[2:]
    if ":" in body:
        package, name = body.split(":", 1)
    else:
        package = body
        name = body.rsplit("/", 1)[-1]
    if not name:
        raise LabelError(label, "missing target name")
    if not NAME_PATTERN.match(name):
        raise LabelError(label, f"target name must match {NAME_PATTERN.pattern}")
    if not PACKAGE_PATTERN.match(package):
        raise LabelError(label, f"package must match {PACKAGE_PATTERN.pattern}")
    return package, name


def normalize_label(label: str, current_package: str | None = None) -> str:
    """Resolve a possibly relative label to its canonical absolute form.

    Args:
        label: Label as written in a declaration file.
        current_package: Package the label was written in; required for
            relative labels.

    Returns:
        Canonical label ``//package:name``.

    Raises:
        LabelError: If the label is malformed or relative without a package.
    """
    label = label.strip()
    if label.startswith("//"):
        package, name = split_label(label)
        return make_label(package, name)

    if current_package is None:
        raise LabelError(label, "relative label used outside of a package")
    name = label[1:] if label.startswith(":") else label
    if not NAME_PATTERN.match(name):
        raise LabelError(label, f"target name must match {NAME_PATTERN.pattern}")
    return make_label(current_package, name)


def package_of(label: str) -> str:
    """Return the package path of a canonical label."""
    return split_label(label)[0]


def is_visible(
    target_label: str, visibility: tuple[str, ...], from_package: str
) -> bool:
    """Check whether a target may be depended on from a package.

    Args:
        target_label: Label of the target being depended on.
        visibility: Visibility patterns declared on that target.
        from_package: Package of the depending target.

    Returns:
        True if any visibility pattern admits ``from_package``.
    """
    own_package = package_of(target_label)
    if from_package == own_package:
        return True

    for pattern in visibility:
        if pattern == PUBLIC:
            return True
        if pattern == PRIVATE:
            continue
        if pattern == "//...":
            return True
        if pattern.endswith("/...") or pattern.endswith(":__subpackages__"):
            prefix = pattern[2:].removesuffix("/...").removesuffix(":__subpackages__")
            if from_package == prefix or from_package.startswith(prefix + "/"):
                return True
        elif pattern.endswith(":__pkg__"):
            if from_package == pattern[2:].removesuffix(":__pkg__"):
                return True
    return False


__all__ = [
    "PRIVATE",
    "PUBLIC",
    "LabelError",
    "is_visible",
    "make_label",
    "normalize_label",
    "package_of",
    "split_label",
]
