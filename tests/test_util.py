from concurrent.futures import ThreadPoolExecutor

import pytest

from moltransit.util import LETTERS, random_string


def test_many_threads_get_unique_strings():
    threads_num = 1000
    with ThreadPoolExecutor(max_workers=50) as pool:
        results = list(pool.map(random_string, [12] * threads_num))

    assert len(results) == threads_num
    assert all(len(value) == 12 for value in results)
    assert len(set(results)) == threads_num


@pytest.mark.parametrize("size", [1, 5, 12, 50])
def test_length_matches_size(size):
    assert len(random_string(size)) == size


def test_only_letters_used():
    value = random_string(200)
    assert set(value) <= set(LETTERS)


def test_zero_size_is_empty():
    assert random_string(0) == ""


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        random_string(-1)