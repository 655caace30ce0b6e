"""Tests for SessionCallbacks."""

from __future__ import annotations

from canon._callbacks import SessionCallbacks


def test_dispatches_to_each_channel() -> None:
    cb = SessionCallbacks()
    seen: list[tuple[str, str]] = []
    cb.on_output(lambda m: seen.append(("output", m)))
    cb.on_status(lambda m: seen.append(("status", m)))
    cb.on_warning(lambda m: seen.append(("warning", m)))
    cb.on_debug(lambda m: seen.append(("debug", m)))

    cb.output("o")
    cb.status("s")
    cb.warning("w")
    cb.debug("d")

    assert seen == [("output", "o"), ("status", "s"), ("warning", "w"), ("debug", "d")]


def test_multiple_callbacks_in_order() -> None:
    cb = SessionCallbacks()
    seen: list[int] = []
    cb.on_status(lambda _m: seen.append(1))
    cb.on_status(lambda _m: seen.append(2))
    cb.status("x")
    assert seen == [1, 2]


def test_errors_are_suppressed() -> None:
    cb = SessionCallbacks()
    seen: list[str] = []

    def broken(_message: str) -> None:
        raise RuntimeError

    cb.on_warning(broken)
    cb.on_warning(seen.append)
    cb.warning("still delivered")
    assert seen == ["still delivered"]


def test_no_callbacks_is_noop() -> None:
    SessionCallbacks().debug("nobody listening")
