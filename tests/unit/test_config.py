"""
Unit tests for YAML configuration loading
"""

import pytest
import os
import sys

import yaml

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InvalidOptionsError
from migrator.config import (
    DEFAULTS,
    deep_merge,
    load_config,
    merge_options_from_config,
    thresholds_from_config,
)
from reconcile.options import DuplicateStrategy


def _write(tmp_path, data, name="params.yaml"):
    p = tmp_path / name
    p.write_text(yaml.safe_dump(data))
    return str(p)


class TestLoadConfig:
    """Defaults, overrides, env var"""

    def test_missing_file_gives_defaults(self, tmp_path):
        """No file, built-in defaults"""
        assert load_config(str(tmp_path / "nope.yaml")) == DEFAULTS

    def test_partial_override(self, tmp_path):
        """Missing keys keep their defaults"""
        P = load_config(_write(tmp_path, {"merge": {"duplicate_strategy": "smart"}}))
        assert P["merge"]["duplicate_strategy"] == "smart"
        assert P["merge"]["photo_match_threshold"] == 0.7
        assert P["logging"]["metrics_file"] == DEFAULTS["logging"]["metrics_file"]

    def test_env_var(self, tmp_path, monkeypatch):
        """MIGRATOR_CONFIG points at the file"""
        monkeypatch.setenv("MIGRATOR_CONFIG", _write(tmp_path, {"service": {"port": 9999}}))
        assert load_config()["service"]["port"] == 9999

    def test_empty_file(self, tmp_path):
        """Empty YAML is the defaults"""
        p = tmp_path / "empty.yaml"
        p.write_text("")
        assert load_config(str(p)) == DEFAULTS

    def test_non_mapping_root(self, tmp_path):
        """A list at the root is rejected"""
        p = tmp_path / "bad.yaml"
        p.write_text("- 1\n- 2\n")
        with pytest.raises(InvalidOptionsError):
            load_config(str(p))

    def test_shipped_params_parse(self):
        """config/params.yaml is valid and complete"""
        P = load_config(os.path.join(project_root, "config", "params.yaml"))
        assert set(P) == set(DEFAULTS)
        thresholds_from_config(P)
        merge_options_from_config(P)

    def test_deep_merge_does_not_mutate(self):
        """Inputs are left alone"""
        base = {"a": {"b": 1, "c": 2}}
        out = deep_merge(base, {"a": {"b": 5}})
        assert out == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}


class TestDerivedOptions:
    """MergeOptions / Thresholds from config"""

    def test_tolerance_from_rmse(self):
        """Null tolerance follows max(floor, ceil(rmse * factor))"""
        assert merge_options_from_config(DEFAULTS, rmse_px=3.0).coordinate_tolerance == 8.0
        assert merge_options_from_config(DEFAULTS, rmse_px=0.5).coordinate_tolerance == 5.0

    def test_tolerance_without_fit(self):
        """No RMSE available, floor"""
        assert merge_options_from_config(DEFAULTS).coordinate_tolerance == 5.0

    def test_explicit_tolerance(self):
        """Configured or overridden tolerance wins"""
        P = deep_merge(DEFAULTS, {"merge": {"coordinate_tolerance": 12}})
        assert merge_options_from_config(P, rmse_px=30.0).coordinate_tolerance == 12.0
        assert merge_options_from_config(P, coordinate_tolerance=3).coordinate_tolerance == 3.0

    def test_overrides(self):
        """CLI-style overrides, None means unset"""
        o = merge_options_from_config(DEFAULTS, duplicate_strategy="label", photo_match_threshold=None)
        assert o.duplicate_strategy is DuplicateStrategy.LABEL
        assert o.photo_match_threshold == 0.7
        assert o.preserve_timestamps is True

    def test_bad_merge_option(self):
        """Unknown keys in the merge section fail loudly"""
        P = deep_merge(DEFAULTS, {"merge": {"fuzzy": True}})
        with pytest.raises(InvalidOptionsError):
            merge_options_from_config(P)

    def test_thresholds(self):
        """Transform section maps onto Thresholds"""
        P = deep_merge(DEFAULTS, {"transform": {"high_rmse_px": 4}})
        assert thresholds_from_config(P).high_rmse_px == 4.0
        with pytest.raises(InvalidOptionsError):
            thresholds_from_config({"transform": {"bogus": 1}})
