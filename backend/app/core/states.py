"""Machine state codes reported on the 'mchnst' tag.

Codes are bit-flag-like powers of two; 0 means no batch is loaded.
"""
from __future__ import annotations

STATE_LABELS: dict[int, str] = {
    0: "No batch",
    1: "Stopped",
    2: "Starting",
    4: "Prepared",
    8: "Lack",
    16: "Tailback",
    32: "Lack Branch Line",
    64: "Tailback Branch Line",
    128: "Operating",
    256: "Stopping",
    512: "Aborting",
    1024: "Equipment Failure",
    2048: "External Failure",
    4096: "Emergency Stop",
    8192: "Holding",
    16384: "Held",
    32768: "Idle",
}

STATE_COLORS: dict[int, str] = {
    1: "#FFFF00",
    2: "#CCFFCC",
    4: "#339966",
    8: "#3366FF",
    16: "#800080",
    32: "#666699",
    64: "#FF00FF",
    128: "#00FF00",
    256: "#FFFF99",
    512: "#FFCC99",
    1024: "#FF0000",
    2048: "#FF6600",
    4096: "#FFA000",
    8192: "#A76C29",
    16384: "#800000",
    32768: "#333333",
}

DEFAULT_STATE_COLOR = "#CCCCCC"
OPERATING = 128


def get_state_label(code: int) -> str:
    return STATE_LABELS.get(code, f"Unknown State ({code})")


def get_state_color(code: int) -> str:
    return STATE_COLORS.get(code, DEFAULT_STATE_COLOR)


def state_options() -> list[dict]:
    return [
        {"code": code, "label": label, "color": get_state_color(code)}
        for code, label in STATE_LABELS.items()
    ]


def describe_state_value(value: str | None) -> str:
    """Render a raw tag value as '<label> (<code>)' when it is a state code."""
    if value is None or value == "":
        return "N/A"
    try:
        code = int(value)
    except (TypeError, ValueError):
        return str(value)
    return f"{get_state_label(code)} ({code})"
