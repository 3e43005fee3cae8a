"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from mender.config import (
    BreakerConfig,
    MenderConfig,
    ReviewConfig,
    load_config,
)


class TestDefaults:
    def test_top_level(self):
        c = MenderConfig()
        assert c.primary_provider == "claude"
        assert c.fallback_provider == "openai"
        assert c.workspace == Path("workspace")

    def test_review_defaults(self):
        c = ReviewConfig()
        assert c.max_trials == 3
        assert c.voting_threshold == 0.6
        assert c.judge_weights == {"claude": 0.6, "openai": 0.4}
        assert c.default_weight == 0.3
        assert c.required_judges == 2
        assert c.fallback_behavior == "reject"

    def test_breaker_defaults(self):
        c = BreakerConfig()
        assert c.max_attempts_per_error == 3
        assert c.max_consecutive_failures_per_source == 5
        assert c.max_consecutive_failures_global == 10
        assert c.cooldown == 3600
        assert c.half_open_test_count == 2

    def test_sections_not_shared(self):
        a, b = MenderConfig(), MenderConfig()
        a.guard.protected_patterns.append("secret/")
        assert "secret/" not in b.guard.protected_patterns

    def test_model_for(self):
        c = MenderConfig()
        assert c.model_for("openai") == "gpt-4o"
        assert c.model_for("nope") == ""


class TestLoadConfig:
    def test_missing_file(self, tmp_path: Path):
        c = load_config(tmp_path / "nonexistent.yaml")
        assert c == MenderConfig()

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "mender.yaml"
        path.write_text("")
        assert load_config(path) == MenderConfig()

    def test_sections(self, tmp_path: Path):
        path = tmp_path / "mender.yaml"
        path.write_text(yaml.dump({
            "primary_provider": "anthropic",
            "source_dir": "lib",
            "review": {"voting_threshold": 0.75, "fallback_behavior": "single-judge"},
            "breaker": {"cooldown": 60},
        }))
        c = load_config(path)
        assert c.primary_provider == "anthropic"
        assert c.source_dir == "lib"
        assert c.review.voting_threshold == 0.75
        assert c.review.fallback_behavior == "single-judge"
        assert c.review.max_trials == 3
        assert c.breaker.cooldown == 60

    def test_unknown_keys_ignored(self, tmp_path: Path):
        path = tmp_path / "mender.yaml"
        path.write_text(yaml.dump({"bogus": 1, "guard": {"nope": True, "max_lines_per_file": 10}}))
        c = load_config(path)
        assert c.guard.max_lines_per_file == 10
        assert not hasattr(c, "bogus")

    def test_non_mapping_rejected(self, tmp_path: Path):
        path = tmp_path / "mender.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_bad_section_rejected(self, tmp_path: Path):
        path = tmp_path / "mender.yaml"
        path.write_text(yaml.dump({"review": [1, 2]}))
        with pytest.raises(ValueError, match="review"):
            load_config(path)


class TestAlertWebhook:
    def test_config_wins(self):
        c = MenderConfig(alert_webhook="https://hooks.example/a")
        with patch.dict("os.environ", {"MENDER_ALERT_WEBHOOK": "https://hooks.example/env"}):
            assert c.resolve_alert_webhook() == "https://hooks.example/a"

    def test_env_fallback(self):
        with patch.dict("os.environ", {"MENDER_ALERT_WEBHOOK": "https://hooks.example/env"}):
            assert MenderConfig().resolve_alert_webhook() == "https://hooks.example/env"
