"""Tests for stickyvault.version module."""

from importlib.metadata import PackageNotFoundError

from stickyvault import version


class TestGetVersion:
    """Tests for get_version."""

    def test_reads_own_pyproject(self, tmp_path):
        """The [project] version is used when the name matches."""
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text('[project]\nname = "stickyvault"\nversion = "9.8.7"\n')

        assert version.get_version(pyproject) == "9.8.7"

    def test_foreign_pyproject_is_ignored(self, tmp_path, monkeypatch):
        """Another project's pyproject falls through to installed metadata."""
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text('[project]\nname = "other"\nversion = "1.0.0"\n')
        monkeypatch.setattr(version, "metadata_version", lambda name: "2.0.0")

        assert version.get_version(pyproject) == "2.0.0"

    def test_unknown_when_nothing_available(self, tmp_path, monkeypatch):
        """Without a pyproject or metadata the placeholder version is returned."""

        def not_installed(name):
            raise PackageNotFoundError(name)

        monkeypatch.setattr(version, "metadata_version", not_installed)

        assert version.get_version(tmp_path / "missing.toml") == version.UNKNOWN_VERSION
