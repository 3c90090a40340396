"""
Configuration Tests
===================

Defaults, YAML loading, environment overrides and validation.
"""

import pytest
from pydantic import ValidationError

from camrelay.config import Settings, load_config


class TestDefaults:
    """Tests for built-in defaults."""

    def test_default_values(self):
        settings = Settings()
        assert settings.mjpeg.target_fps == 10.0
        assert settings.rtsp.target_fps == 30.0
        assert settings.rtsp.port == 8554
        assert settings.telemetry.window_ms == 2000.0
        assert settings.telemetry.recompute_ms == 500.0
        assert settings.telemetry.publish_threshold == 0.5
        assert settings.watchdog.poll_interval_s == 5.0
        assert settings.watchdog.backoff_floor_s == 1.0
        assert settings.watchdog.backoff_ceiling_s == 30.0


class TestLoading:
    """Tests for load_config()."""

    def test_yaml_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "mjpeg:\n"
            "  target_fps: 5\n"
            "  jpeg_quality: 60\n"
            "rtsp:\n"
            "  enabled: false\n"
            "server:\n"
            "  port: 9000\n"
        )

        settings = load_config(str(path))

        assert settings.mjpeg.target_fps == 5.0
        assert settings.mjpeg.jpeg_quality == 60
        assert settings.rtsp.enabled is False
        assert settings.server.port == 9000

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("mjpeg:\n  target_fps: 5\n")
        monkeypatch.setenv("CAMRELAY_MJPEG_FPS", "12.5")
        monkeypatch.setenv("CAMRELAY_RTSP_ENABLED", "no")
        monkeypatch.setenv("CAMRELAY_SOURCE_BACKEND", "opencv")
        monkeypatch.setenv("PORT", "8181")

        settings = load_config(str(path))

        assert settings.mjpeg.target_fps == 12.5
        assert settings.rtsp.enabled is False
        assert settings.source.backend == "opencv"
        assert settings.server.port == 8181

    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CAMRELAY_MJPEG_FPS", raising=False)
        settings = load_config(str(tmp_path / "absent.yaml"))
        assert settings.mjpeg.target_fps == 10.0


class TestValidation:
    """Tests for rejected values."""

    def test_negative_fps_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"mjpeg": {"target_fps": -1}})

    def test_zero_fps_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"rtsp": {"target_fps": 0}})

    def test_bad_orientation_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"source": {"orientation": 45}})

    def test_backoff_ceiling_below_floor_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"watchdog": {"backoff_floor_s": 10, "backoff_ceiling_s": 5}})

    def test_jpeg_quality_range(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"mjpeg": {"jpeg_quality": 0}})
