# src/application/flow_mode.py

import os

from src.domain.exceptions import FlowDisabledError


# "legacy" keeps only the request/offer flow, "structured" only the booking thread.
BOOKING_FLOW_MODE = os.getenv("BOOKING_FLOW_MODE", "both").strip().lower()

SIMPLE_FLOW = "legacy"
STRUCTURED_FLOW = "structured"

_FLOWS_BY_MODE = {
    "both": {SIMPLE_FLOW, STRUCTURED_FLOW},
    SIMPLE_FLOW: {SIMPLE_FLOW},
    STRUCTURED_FLOW: {STRUCTURED_FLOW},
}


def flow_enabled(flow: str, mode: str | None = None) -> bool:
    mode = (mode or BOOKING_FLOW_MODE).strip().lower()
    if mode not in _FLOWS_BY_MODE:
        raise ValueError(f"Unknown BOOKING_FLOW_MODE: {mode}")
    return flow in _FLOWS_BY_MODE[mode]


def ensure_flow_enabled(flow: str, mode: str | None = None) -> None:
    if not flow_enabled(flow, mode):
        raise FlowDisabledError(f"The {flow} booking flow is disabled")
