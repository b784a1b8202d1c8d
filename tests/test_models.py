"""Tests for GimbalConfig validation and environment loading."""

import pytest

from gimbal_lib.models import FrameTerminator, GimbalConfig, TelemetrySample


def test_defaults() -> None:
    config = GimbalConfig()

    assert config.baud == 115200
    assert config.encoding == "latin-1"
    assert config.frame_terminator is FrameTerminator.DOUBLE_SEMICOLON
    assert config.poll_period_s == 0.05
    assert config.ui_update_interval_s == 0.1


def test_frame_terminator_from_string() -> None:
    config = GimbalConfig(frame_terminator="any_delimiter")
    assert config.frame_terminator is FrameTerminator.ANY_DELIMITER


@pytest.mark.parametrize(
    "kwargs",
    [
        {"baud": 0},
        {"poll_period_s": 0},
        {"read_timeout_s": -1.0},
        {"frame_terminator": "newline"},
    ],
)
def test_invalid_values_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        GimbalConfig(**kwargs)


def test_unknown_encoding_rejected() -> None:
    with pytest.raises(LookupError):
        GimbalConfig(encoding="not-a-codec")


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("GIMBAL_BAUD", "230400")
    monkeypatch.setenv("GIMBAL_POLL_PERIOD_MS", "20")
    monkeypatch.setenv("GIMBAL_UI_UPDATE_MS", "250")
    monkeypatch.setenv("GIMBAL_FRAME_TERMINATOR", "any_delimiter")

    config = GimbalConfig.from_env()

    assert config.baud == 230400
    assert config.poll_period_s == pytest.approx(0.02)
    assert config.ui_update_interval_s == pytest.approx(0.25)
    assert config.frame_terminator is FrameTerminator.ANY_DELIMITER
    assert config.read_timeout_s == 1.0


def test_sample_validity() -> None:
    assert TelemetrySample(1, 2, 3, 4, 5, 6, 7).is_valid
    assert not TelemetrySample(1, 2, 3, 4, 5, 6).is_valid
    assert not TelemetrySample(1, 2, 3, 4, 5, 6, float("nan")).is_valid
