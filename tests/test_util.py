from collections import deque

import pytest

from uarchsim.util import extract_if, get_span, get_span_p, transform_while_n


def is_even(x):
    return x % 2 == 0


@pytest.mark.parametrize("size", [0, 1, 2, 4, 10, 20, 100, 400])
def test_get_span_empty_list(size):
    assert get_span([], size) == []


@pytest.mark.parametrize("size", [0, 1, 2, 4, 10, 20, 100])
def test_get_span_capped_by_size(size):
    assert len(get_span([-1] * 400, size)) == size


def test_get_span_rejects_negative_size():
    with pytest.raises(ValueError):
        get_span([1, 2, 3], -1)


@pytest.mark.parametrize("size", [0, 1, 2, 4, 10, 20, 100, 400])
def test_get_span_p_empty_list(size):
    assert get_span_p([], lambda _: True, size) == []


@pytest.mark.parametrize("size", [0, 1, 2, 4, 10, 20, 100])
def test_get_span_p_capped_by_size(size):
    assert len(get_span_p([-1] * 400, lambda _: True, size)) == size


def test_get_span_p_capped_by_function():
    items = [-1] * 400
    items[10] = 1
    assert len(get_span_p(items, lambda x: x < 0, 400)) == 10


def test_get_span_p_unbounded_size():
    items = [-1] * 400
    items[300] = 1
    assert len(get_span_p(items, lambda x: x < 0)) == 300


def test_get_span_works_on_deque():
    assert get_span(deque([5, 6, 7]), 2) == [5, 6]


def test_extract_if_empty():
    kept, extracted = extract_if([], is_even)
    assert kept == []
    assert extracted == []


def test_extract_if_moves_none():
    kept, extracted = extract_if([1] * 400, is_even)
    assert len(kept) == 400
    assert all(not is_even(x) for x in kept)
    assert extracted == []


def test_extract_if_moves_all():
    kept, extracted = extract_if([2] * 400, is_even)
    assert kept == []
    assert len(extracted) == 400
    assert all(is_even(x) for x in extracted)


def test_extract_if_splits_mixed_list():
    kept, extracted = extract_if(range(400), is_even)
    assert len(kept) == 200
    assert all(not is_even(x) for x in kept)
    assert len(extracted) == 200
    assert all(is_even(x) for x in extracted)


def test_extract_if_preserves_order():
    kept, extracted = extract_if(range(10), is_even)
    assert kept == sorted(kept)
    assert extracted == sorted(extracted)


def test_transform_while_n_empty():
    source = []
    result = transform_while_n(source, 4000, lambda _: True, lambda x: x)
    assert result == []
    assert len(result) == 0


@pytest.mark.parametrize("size", [0, 1, 2, 4, 10, 20, 100])
def test_transform_while_n_capped_by_size(size):
    source = [-1] * 400
    result = transform_while_n(source, size, lambda _: True, lambda x: -x)
    assert result == [1] * size
    assert len(source) == 400 - size


def test_transform_while_n_capped_by_function():
    source = [-1] * 400
    source[10] = 1
    result = transform_while_n(source, 4000, lambda x: x < 0, lambda x: -x)
    assert result == [1] * 10
    assert source[0] == 1
    assert len(source) == 390


def test_transform_while_n_on_deque():
    source = deque([-1, -1, 3, -1])
    result = transform_while_n(source, 10, lambda x: x < 0, lambda x: -x)
    assert result == [1, 1]
    assert list(source) == [3, -1]