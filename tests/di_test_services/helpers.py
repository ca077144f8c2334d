from __future__ import annotations

_EVENTS: list[str] = []


def reset_events() -> list[str]:
    _EVENTS.clear()
    return _EVENTS


def record(event: str) -> None:
    _EVENTS.append(event)


def events() -> list[str]:
    return list(_EVENTS)
