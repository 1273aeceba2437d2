import pytest

from coreason_codebox.output import OutputCapture


def test_output_under_cap_is_kept_whole() -> None:
    capture = OutputCapture(max_bytes=16)
    assert capture.feed("stdout", b"hello ")
    assert capture.feed("stdout", b"world")

    assert capture.stdout == "hello world"
    assert capture.stderr == ""
    assert not capture.truncated
    assert not capture.overflowed


def test_output_over_cap_is_truncated_without_overflow() -> None:
    capture = OutputCapture(max_bytes=4, hard_multiplier=4)

    assert capture.feed("stdout", b"abcdef")
    assert capture.feed("stdout", b"gh")

    assert capture.stdout == "abcd"
    assert capture.truncated
    assert not capture.overflowed
    assert capture.size("stdout") == 8


def test_streams_are_capped_independently() -> None:
    capture = OutputCapture(max_bytes=3)
    capture.feed("stdout", b"abc")
    capture.feed("stderr", b"xyz")

    assert capture.stdout == "abc"
    assert capture.stderr == "xyz"
    assert not capture.truncated


def test_crossing_hard_limit_overflows() -> None:
    capture = OutputCapture(max_bytes=2, hard_multiplier=2)

    assert capture.feed("stderr", b"1234")
    assert not capture.feed("stderr", b"5")

    assert capture.overflowed
    assert capture.truncated
    assert capture.stderr == "12"


def test_empty_chunks_are_ignored() -> None:
    capture = OutputCapture(max_bytes=2)
    assert capture.feed("stdout", None)
    assert capture.feed("stdout", b"")
    assert capture.size("stdout") == 0


def test_invalid_utf8_is_replaced() -> None:
    capture = OutputCapture(max_bytes=16)
    capture.feed("stdout", b"ok\xff")
    assert capture.stdout == "ok�"


def test_zero_cap_is_rejected() -> None:
    with pytest.raises(ValueError):
        OutputCapture(max_bytes=0)
