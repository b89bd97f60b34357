import pytest

from sdnnet.errors import AggregateError, raise_aggregate


def test_single_error_message_is_that_error():
    err = ValueError("node IP conflicts")
    agg = AggregateError([err])
    assert str(agg) == str(err)
    assert agg.errors == [err]


def test_multiple_errors_are_bracketed():
    agg = AggregateError([ValueError("first"), ValueError("second")])
    assert str(agg) == "[first, second]"
    assert len(agg.errors) == 2


def test_duplicate_messages_are_shown_once_but_kept():
    errs = [ValueError("same"), ValueError("same")]
    agg = AggregateError(errs)
    assert str(agg) == "same"
    assert agg.errors == errs


def test_raise_aggregate_raises_with_all_errors():
    errs = [ValueError("a"), KeyError("b")]
    with pytest.raises(AggregateError) as excinfo:
        raise_aggregate(errs)
    assert excinfo.value.errors == errs


def test_raise_aggregate_accepts_generators():
    with pytest.raises(AggregateError) as excinfo:
        raise_aggregate(ValueError(x) for x in ("one", "two", "three"))
    assert [str(e) for e in excinfo.value.errors] == ["one", "two", "three"]


def test_raise_aggregate_with_no_errors_returns_none():
    assert raise_aggregate([]) is None
    assert raise_aggregate(iter(())) is None