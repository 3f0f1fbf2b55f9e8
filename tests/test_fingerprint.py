"""Tests for graph/fingerprint.py module.

Tests source hashing and fingerprint determinism.
"""

import pytest

from monodeploy.graph.fingerprint import (
    FINGERPRINT_SCHEMA_VERSION,
    FingerprintError,
    compute_fingerprint,
    group_inputs,
    hash_sources,
    hash_templates,
    image_inputs,
    manifest_inputs,
)


@pytest.fixture
def package_dir(tmp_path):
    """Create a package directory with a few sources."""
    pkg = tmp_path / "pkg"
    (pkg / "src").mkdir(parents=True)
    (pkg / "Dockerfile").write_text("FROM scratch\n")
    (pkg / "src" / "main.py").write_text("print(1)\n")
    (pkg / "src" / "util.py").write_text("X = 1\n")
    return pkg


class TestHashSources:
    """Tests for hash_sources function."""

    def test_deterministic(self, package_dir):
        """Same sources should hash identically."""
        a = hash_sources(package_dir, ["Dockerfile", "src"])
        b = hash_sources(package_dir, ["src", "Dockerfile"])
        assert a == b
        assert len(a) == 64

    def test_content_change(self, package_dir):
        """Changing a file changes the hash."""
        before = hash_sources(package_dir, ["src"])
        (package_dir / "src" / "util.py").write_text("X = 2\n")
        assert hash_sources(package_dir, ["src"]) != before

    def test_new_file_in_directory(self, package_dir):
        """Adding a file to a declared directory changes the hash."""
        before = hash_sources(package_dir, ["src"])
        (package_dir / "src" / "extra.py").write_text("")
        assert hash_sources(package_dir, ["src"]) != before

    def test_undeclared_file_ignored(self, package_dir):
        """Files outside srcs do not affect the hash."""
        before = hash_sources(package_dir, ["src"])
        (package_dir / "README.md").write_text("docs")
        assert hash_sources(package_dir, ["src"]) == before

    def test_missing_source(self, package_dir):
        """Missing sources are an error."""
        with pytest.raises(FingerprintError) as exc_info:
            hash_sources(package_dir, ["nope.py"])
        assert exc_info.value.code == "source_not_found"

    def test_path_traversal(self, package_dir):
        """Sources outside the package are rejected."""
        with pytest.raises(FingerprintError) as exc_info:
            hash_sources(package_dir, ["../outside"])
        assert exc_info.value.code == "path_traversal"


class TestComputeFingerprint:
    """Tests for compute_fingerprint and the input builders."""

    def test_format(self):
        """Fingerprints use the sha256: prefix."""
        fp = compute_fingerprint(group_inputs("//a:g", ["//a:x"]))
        assert fp.startswith("sha256:")
        assert len(fp) == len("sha256:") + 64

    def test_dep_order_irrelevant(self):
        """Dependency order does not change the fingerprint."""
        a = compute_fingerprint(group_inputs("//a:g", ["//a:x", "//a:y"]))
        b = compute_fingerprint(group_inputs("//a:g", ["//a:y", "//a:x"]))
        assert a == b

    def test_build_args_change(self):
        """Changing a build arg changes the image fingerprint."""
        base = {
            "target_id": "//a:img",
            "deps": [],
            "source_hash": "abc",
            "dockerfile": "Dockerfile",
            "repository": "reg/a",
        }
        a = compute_fingerprint(image_inputs(**base, build_args={"V": "1"}))
        b = compute_fingerprint(image_inputs(**base, build_args={"V": "2"}))
        assert a != b

    def test_manifest_cluster_change(self):
        """Moving a manifest to another cluster changes its fingerprint."""
        a = compute_fingerprint(manifest_inputs("//a:m", [], "h", cluster="prod"))
        b = compute_fingerprint(manifest_inputs("//a:m", [], "h", cluster="staging"))
        assert a != b

    def test_schema_version_recorded(self):
        """Inputs carry the schema version."""
        inputs = group_inputs("//a:g", [])
        assert inputs.to_dict()["schema_version"] == FINGERPRINT_SCHEMA_VERSION


class TestHashTemplates:
    """Tests for hash_templates function."""

    def test_template_change(self, tmp_path):
        """Editing a template changes the hash."""
        template = tmp_path / "deploy.yaml"
        template.write_text("kind: Deployment\n")
        before = hash_templates([template], tmp_path)
        template.write_text("kind: StatefulSet\n")
        assert hash_templates([template], tmp_path) != before
