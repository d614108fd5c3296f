"""
Unit Tests for Configuration Loading

Tests the YAML loader, the config singleton and the section lookups the
component factories rely on.

Usage:
    pytest tests/test_config.py -v
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from biocapture.config import (
    get_config,
    get_project_root,
    get_section,
    get_section_or_default,
    load_config,
)
from biocapture.matcher import get_finger_matcher


class TestConfig:
    """Tests for biocapture.config."""

    def test_project_root_has_config(self):
        assert (get_project_root() / "config.yaml").exists()

    def test_singleton(self):
        assert get_config() is get_config()

    def test_get_section(self):
        pipeline = get_section("pipeline")
        assert pipeline["required_count"] == 3
        assert pipeline["max_buffer_size"] == 5

    def test_missing_section_raises(self):
        with pytest.raises(KeyError):
            get_section("no_such_section")

    def test_missing_section_defaults_to_empty(self):
        assert get_section_or_default("no_such_section") == {}
        assert get_section_or_default("capture")["min_luma"] == 50

    def test_load_config_from_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("pipeline:\n  required_count: 7\n")
        assert load_config(str(path)) == {"pipeline": {"required_count": 7}}

    def test_load_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_factory_reads_its_section(self):
        matcher = get_finger_matcher()
        assert matcher.max_distance == get_section("matching")["max_distance"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
