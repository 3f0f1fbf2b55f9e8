"""Pydantic models for declaration file validation.

This module defines the Pydantic models for validating the per-directory
BUILD.yaml files that declare targets, and the WORKSPACE.yaml file that
declares clusters.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from monodeploy.graph.labels import NAME_PATTERN, PUBLIC


class TargetSchema(BaseModel):
    """Schema for a single target declaration.

    Attributes:
        name: Target name, unique within its package.
        kind: image, manifest or group.
        deps: Dependency labels (absolute or package-relative).
        visibility: Visibility patterns.
        srcs: Image sources relative to the package directory.
        dockerfile: Image Dockerfile relative to the package directory.
        repository: Repository the image is named under.
        build_args: Image build arguments.
        target_stage: Optional multi-stage build target.
        templates: Manifest template files.
        images: Manifest placeholder -> image label mapping.
        cluster: Cluster assignment (manifest/group).
        namespace: Default namespace for manifest documents.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255, description="Target name")
    kind: Literal["image", "manifest", "group"]
    deps: list[str] = Field(default_factory=list, description="Dependency labels")
    visibility: list[str] = Field(
        default_factory=lambda: [PUBLIC], description="Visibility patterns"
    )

    # Image attributes
    srcs: list[str] | None = Field(default=None, description="Source paths")
    dockerfile: str | None = Field(default=None, description="Dockerfile path")
    repository: str | None = Field(default=None, description="Image repository")
    build_args: dict[str, str] | None = Field(default=None)
    target_stage: str | None = Field(default=None)

    # Manifest attributes
    templates: list[str] | None = Field(default=None, description="Template files")
    images: dict[str, str] | None = Field(
        default=None, description="Placeholder to image label mapping"
    )
    namespace: str | None = Field(default=None)

    # Manifest / group attributes
    cluster: str | None = Field(default=None, description="Cluster assignment")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches the label name pattern."""
        if not NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("deps", "srcs", "templates")
    @classmethod
    def validate_string_list(cls, v: list[str] | None) -> list[str] | None:
        """Validate list entries are non-empty and unique."""
        if v is None:
            return v
        for item in v:
            if not item or not item.strip():
                raise ValueError("list items must be non-empty strings")
        if len(set(v)) != len(v):
            raise ValueError("list items must be unique")
        return v

    @model_validator(mode="after")
    def validate_kind_attributes(self) -> "TargetSchema":
        """Validate attributes are consistent with the target kind."""
        image_fields = {
            "srcs": self.srcs,
            "dockerfile": self.dockerfile,
            "repository": self.repository,
            "build_args": self.build_args,
            "target_stage": self.target_stage,
        }
        manifest_fields = {
            "templates": self.templates,
            "images": self.images,
            "namespace": self.namespace,
        }

        if self.kind == "image":
            if not self.repository:
                raise ValueError("image targets require 'repository'")
            misplaced = [k for k, v in manifest_fields.items() if v is not None]
            if self.cluster is not None:
                misplaced.append("cluster")
        elif self.kind == "manifest":
            if not self.templates:
                raise ValueError("manifest targets require 'templates'")
            misplaced = [k for k, v in image_fields.items() if v is not None]
        else:
            misplaced = [
                k
                for k, v in {**image_fields, **manifest_fields}.items()
                if v is not None
            ]

        if misplaced:
            raise ValueError(
                f"{self.kind} targets do not accept: {', '.join(sorted(misplaced))}"
            )
        return self


class BuildFileSchema(BaseModel):
    """Schema for a BUILD.yaml file."""

    model_config = ConfigDict(extra="forbid")

    targets: list[TargetSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> "BuildFileSchema":
        """Validate target names are unique within the file."""
        seen: set[str] = set()
        for target in self.targets:
            if target.name in seen:
                raise ValueError(f"duplicate target name '{target.name}'")
            seen.add(target.name)
        return self


class ClusterSchema(BaseModel):
    """Schema for a cluster declaration.

    Attributes:
        context: kubeconfig context used by the kubectl applier.
        server: API server URL used by the HTTP applier.
        token_env: Environment variable holding a bearer token.
        namespace: Namespace for documents without one.
        verify_tls: Verify the API server certificate.
    """

    model_config = ConfigDict(extra="forbid")

    context: str | None = None
    server: str | None = None
    token_env: str | None = None
    namespace: str | None = None
    verify_tls: bool = True


class WorkspaceSchema(BaseModel):
    """Schema for the WORKSPACE.yaml file."""

    model_config = ConfigDict(extra="forbid")

    clusters: dict[str, ClusterSchema] = Field(default_factory=dict)
    default_cluster: str | None = None

    @model_validator(mode="after")
    def validate_default_cluster(self) -> "WorkspaceSchema":
        """Validate default_cluster names a declared cluster."""
        if self.default_cluster and self.default_cluster not in self.clusters:
            raise ValueError(
                f"default_cluster '{self.default_cluster}' is not declared in clusters"
            )
        return self


__all__ = [
    "BuildFileSchema",
    "ClusterSchema",
    "TargetSchema",
    "WorkspaceSchema",
]
