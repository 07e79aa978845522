from datetime import date

import pytest

from wgchores.values import (
    ScoreResetInterval,
    generate_token,
    hash_password,
    password_needs_rehash,
    verify_password,
)


@pytest.mark.parametrize(
    "interval, today, expected",
    [
        (ScoreResetInterval.Monthly, date(2024, 2, 10), (date(2024, 2, 1), date(2024, 2, 29))),
        (ScoreResetInterval.Quarterly, date(2024, 5, 15), (date(2024, 4, 1), date(2024, 6, 30))),
        (ScoreResetInterval.HalfYearly, date(2024, 12, 31), (date(2024, 7, 1), date(2024, 12, 31))),
        (ScoreResetInterval.Yearly, date(2024, 1, 1), (date(2024, 1, 1), date(2024, 12, 31))),
    ],
)
def test_score_windows_are_aligned_on_january(interval, today, expected):
    assert interval.current_window(today) == expected


def test_never_has_no_window():
    assert ScoreResetInterval.Never.as_months() is None
    assert ScoreResetInterval.Never.current_window(date(2024, 5, 1)) is None


def test_generate_token_is_hex_of_requested_length():
    token = generate_token()

    assert len(token) == 128
    int(token, 16)
    assert generate_token() != token


def test_password_hashing_uses_argon2():
    password_hash = hash_password("hunter2")

    assert password_hash.startswith("$argon2")
    assert verify_password("hunter2", password_hash)
    assert not verify_password("hunter3", password_hash)
    assert not password_needs_rehash(password_hash)


def test_verify_password_rejects_missing_or_corrupt_hash():
    assert not verify_password("hunter2", "")
    assert not verify_password("hunter2", "not-a-hash")
