from unittest import mock

import pytest

from cloudbridge.remote import retry


def no_delay(attempt):
    return 0


def test_stops_when_predicate_accepts():
    action = mock.Mock(side_effect=["stale", "stale", "fresh", "fresh", "fresh"])
    sleep = mock.Mock()

    result = retry.do(no_delay, action, lambda r: r == "stale", 0.3, 5, sleep=sleep)

    assert result == "fresh"
    assert action.call_count == 3
    assert sleep.call_args_list == [mock.call(0.3), mock.call(0.3)]


def test_returns_final_result_when_attempts_run_out():
    action = mock.Mock(return_value="stale")
    sleep = mock.Mock()

    result = retry.do(no_delay, action, lambda r: True, 0.3, 5, sleep=sleep)

    assert result == "stale"
    assert action.call_count == 5
    assert sleep.call_count == 4


def test_single_attempt_never_sleeps():
    action = mock.Mock(return_value=1)
    sleep = mock.Mock()

    assert retry.do(no_delay, action, lambda r: True, 1.0, 1, sleep=sleep) == 1
    sleep.assert_not_called()


def test_pre_delay_per_attempt():
    sleep = mock.Mock()
    results = iter([True, True, False])

    retry.do(
        lambda attempt: 0.5 if attempt == 1 else 0,
        lambda: next(results),
        lambda r: r,
        0.1,
        5,
        sleep=sleep,
    )

    assert sleep.call_args_list == [mock.call(0.5), mock.call(0.1), mock.call(0.1)]


def test_exceptions_propagate():
    action = mock.Mock(side_effect=RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        retry.do(no_delay, action, lambda r: True, 0, 5, sleep=mock.Mock())

    assert action.call_count == 1


def test_requires_an_attempt():
    with pytest.raises(ValueError):
        retry.do(no_delay, mock.Mock(), lambda r: False, 0, 0)
