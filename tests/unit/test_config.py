"""Tests for configuration loading."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from gridshot.config import AppConfig
from gridshot.models.script import AppModel


class TestAppConfig:
    """Test configuration defaults and environment loading."""

    def test_defaults(self):
        config = AppConfig()
        assert config.render_model is AppModel.PRO
        assert config.aspect_ratio == "1:1"
        assert config.review_before_render is False
        assert config.auto_upscale is False

    def test_rejects_unknown_ratio(self):
        with pytest.raises(ValidationError):
            AppConfig(aspect_ratio="2:1")

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            AppConfig(request_timeout=0)

    def test_load_from_env(self, tmp_path):
        env = {
            "GOOGLE_API_KEY": "env-key",
            "GRIDSHOT_OUTPUT_DIR": str(tmp_path),
            "GRIDSHOT_TIMEOUT": "30",
            "GRIDSHOT_AUTO_UPSCALE": "yes",
        }
        with patch.dict("os.environ", env, clear=True):
            config = AppConfig.load()
        assert config.google_api_key == "env-key"
        assert config.output_dir == tmp_path
        assert config.request_timeout == 30.0
        assert config.auto_upscale is True
        assert config.review_before_render is False

    def test_gemini_key_fallback(self):
        with patch.dict("os.environ", {"GEMINI_API_KEY": "gemini-key"}, clear=True):
            config = AppConfig.load()
        assert config.google_api_key == "gemini-key"

    def test_load_without_env(self):
        with patch.dict("os.environ", {}, clear=True):
            config = AppConfig.load()
        assert config.google_api_key is None
        assert config.request_timeout == 180.0

    def test_ensure_directories(self, tmp_path):
        config = AppConfig(output_dir=tmp_path / "a" / "b")
        config.ensure_directories()
        assert config.output_dir.is_dir()
