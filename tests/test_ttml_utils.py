import pytest

from dashpack.utils.ttml_utils import (
    TimingParameters,
    format_time_expression,
    parse_time_expression,
    segment_count,
)


@pytest.mark.parametrize(
    "expression, seconds",
    [
        ("00:00:05.120", 5.12),
        ("01:02:03", 3723.0),
        ("00:00:01:12", 1.4),
        ("5.5s", 5.5),
        ("250ms", 0.25),
        ("2m", 120.0),
        ("1.5h", 5400.0),
        ("45f", 1.5),
    ],
)
def test_parse_time_expression(expression, seconds):
    assert parse_time_expression(expression) == pytest.approx(seconds)


def test_parse_time_expression_uses_timing_parameters():
    timing = TimingParameters.from_attributes({"ttp:frameRate": "25", "ttp:tickRate": "10000000"})
    assert parse_time_expression("50f", timing) == pytest.approx(2.0)
    assert parse_time_expression("00:00:01:05", timing) == pytest.approx(1.2)
    assert parse_time_expression("25000000t", timing) == pytest.approx(2.5)


def test_frame_rate_multiplier():
    timing = TimingParameters.from_attributes({"ttp:frameRate": "30", "ttp:frameRateMultiplier": "1000 1001"})
    assert timing.frame_rate == pytest.approx(29.97, abs=0.001)
    assert timing.tick_rate == pytest.approx(timing.frame_rate)


def test_invalid_time_expression():
    with pytest.raises(ValueError):
        parse_time_expression("5 seconds")


def test_format_time_expression():
    assert format_time_expression(0) == "00:00:00.000"
    assert format_time_expression(3723.5) == "01:02:03.500"
    assert parse_time_expression(format_time_expression(17.999)) == pytest.approx(17.999)


def test_segment_count():
    assert segment_count(18.0, 6.0) == 3
    assert segment_count(18.5, 6.0) == 4
    assert segment_count(0.5, 6.0) == 1
    assert segment_count(0, 6.0) == 0
