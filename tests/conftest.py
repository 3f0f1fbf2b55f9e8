"""Shared fixtures for monodeploy tests."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from monodeploy.apply.engine import ApplyExecutionError
from monodeploy.builds.builder import BuildExecutionError
from monodeploy.builds.cache import SqlCacheStore
from monodeploy.db import create_all_tables, get_engine, get_session_factory
from monodeploy.graph.models import ImageSpec, ManifestSpec, Target
from monodeploy.graph.schema import ClusterSchema
from monodeploy.types import TargetKind

DEPLOYMENT_TEMPLATE = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  template:
    spec:
      containers:
        - name: app
          image: app-image
---
apiVersion: v1
kind: Service
metadata:
  name: app
spec:
  ports:
    - port: 80
"""

INGRESS_TEMPLATE = """\
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: app
spec:
  rules:
    - host: app.example.com
"""


def write_yaml(path: Path, data: Any) -> Path:
    """Write data as YAML, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


@pytest.fixture
def cache_store() -> SqlCacheStore:
    """Create a cache store backed by an in-memory database."""
    engine = get_engine("sqlite://")
    create_all_tables(engine)
    return SqlCacheStore(get_session_factory(engine))


@pytest.fixture
def make_target():
    """Factory for in-memory targets that need no files on disk."""

    def _make(
        target_id: str,
        kind: TargetKind = TargetKind.IMAGE,
        deps: tuple[str, ...] = (),
        fingerprint: str | None = None,
        **kwargs: Any,
    ) -> Target:
        image = None
        manifest = None
        if kind is TargetKind.IMAGE:
            image = kwargs.pop(
                "image",
                ImageSpec(
                    package_dir=Path("."),
                    srcs=(".",),
                    dockerfile="Dockerfile",
                    repository="registry.example.com/" + target_id.rsplit(":", 1)[-1],
                ),
            )
        elif kind is TargetKind.MANIFEST:
            manifest = kwargs.pop(
                "manifest", ManifestSpec(template_paths=(), documents=())
            )
        return Target(
            id=target_id,
            kind=kind,
            deps=deps,
            fingerprint=fingerprint or f"sha256:{target_id}",
            image=image,
            manifest=manifest,
            **kwargs,
        )

    return _make


@pytest.fixture
def scenario_workspace(tmp_path: Path) -> Path:
    """Create a workspace with //app:app <- //app:deploy <- //app:ingress."""
    root = tmp_path / "repo"
    app_dir = root / "app"
    app_dir.mkdir(parents=True)
    (app_dir / "Dockerfile").write_text("FROM scratch\nCOPY main.py /\n")
    (app_dir / "main.py").write_text("print('hello')\n")
    (app_dir / "deployment.yaml").write_text(DEPLOYMENT_TEMPLATE)
    (app_dir / "ingress.yaml").write_text(INGRESS_TEMPLATE)
    write_yaml(
        app_dir / "BUILD.yaml",
        {
            "targets": [
                {
                    "name": "app",
                    "kind": "image",
                    "srcs": ["Dockerfile", "main.py"],
                    "repository": "registry.example.com/app",
                },
                {
                    "name": "deploy",
                    "kind": "manifest",
                    "templates": ["deployment.yaml"],
                    "images": {"app-image": ":app"},
                    "namespace": "apps",
                },
                {
                    "name": "ingress",
                    "kind": "manifest",
                    "templates": ["ingress.yaml"],
                    "deps": [":deploy"],
                },
            ]
        },
    )
    return root


class FailingBuilder:
    """Image builder that always fails."""

    def __init__(self, message: str = "docker build exited with 1") -> None:
        self.message = message
        self.calls: list[str] = []

    def build_image(self, bundle) -> str:
        self.calls.append(bundle.target_id)
        raise BuildExecutionError(self.message, exit_code=1, code="build_failed")


class RecordingApplier:
    """Cluster applier that records documents instead of sending them."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.applied: list[tuple[str, list[dict[str, Any]], ClusterSchema]] = []

    def apply_documents(
        self, documents: list[dict[str, Any]], cluster: ClusterSchema
    ) -> None:
        names = {doc["metadata"]["name"] for doc in documents}
        if names & self.fail_for:
            raise ApplyExecutionError("admission webhook denied the request")
        kinds = ",".join(doc["kind"] for doc in documents)
        self.applied.append((kinds, documents, cluster))


@pytest.fixture
def failing_builder() -> FailingBuilder:
    return FailingBuilder()


@pytest.fixture
def recording_applier() -> RecordingApplier:
    return RecordingApplier()
