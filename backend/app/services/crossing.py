from __future__ import annotations

from app.schemas import AlarmDirection

_DIRECTION_PHRASES = {
    AlarmDirection.ABOVE: "above",
    AlarmDirection.BELOW: "below",
}


def has_crossed(
    previous_price: float | None,
    new_price: float,
    alarm_price: float,
    direction: AlarmDirection,
) -> bool:
    """Return True when ``new_price`` moved onto the alarm side of ``alarm_price``.

    Edge-triggered: only the observation that moves the price from the far side
    to the alarm side counts, and the alarm price itself is on the alarm side.
    With no previous observation there is no side to cross from, so the first
    price never triggers.
    """
    previous = new_price if previous_price is None else previous_price
    if AlarmDirection(direction) is AlarmDirection.ABOVE:
        return previous < alarm_price and new_price >= alarm_price
    return previous > alarm_price and new_price <= alarm_price


def describe_direction(direction: AlarmDirection) -> str:
    return _DIRECTION_PHRASES[AlarmDirection(direction)]


def compose_alert_message(symbol: str, direction: AlarmDirection, alarm_price: float, price: float) -> str:
    return f"{symbol} moved {describe_direction(direction)} the alarm price {alarm_price:.2f} (last {price:.2f})"
