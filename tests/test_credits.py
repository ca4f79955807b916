import pytest

from avatar_relay.generations.credits import estimate_credits


@pytest.mark.parametrize(
    "duration,expected",
    [
        (None, 1),
        (0, 1),
        (0.5, 1),
        (60, 1),
        (61, 2),
        (120, 2),
        (121, 3),
    ],
)
def test_one_credit_per_started_minute(duration, expected):
    assert estimate_credits(duration) == expected


@pytest.mark.parametrize("duration", [None, 0, 61, 600])
def test_test_mode_is_free(duration):
    assert estimate_credits(duration, test_mode=True) == 0


def test_garbage_duration_counts_as_missing():
    assert estimate_credits("n/a") == 1
