from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    reconcile_window_ms: int = 10_000
    delete_for_everyone_window_ms: int = 15 * 60 * 1000
    typing_debounce_ms: int = 1_000
    expiry_sweep_interval_s: float = 1.0
    request_timeout_s: float = 10.0
    max_notices: int = 50
    history_page_size: int = 50

    @property
    def typing_debounce_s(self) -> float:
        return max(self.typing_debounce_ms, 0) / 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_sync_config_from_env() -> SyncConfig:
    defaults = SyncConfig()
    return SyncConfig(
        reconcile_window_ms=_parse_non_negative_int("CONVSYNC_RECONCILE_WINDOW_MS", defaults.reconcile_window_ms),
        delete_for_everyone_window_ms=_parse_non_negative_int(
            "CONVSYNC_DELETE_WINDOW_MS", defaults.delete_for_everyone_window_ms
        ),
        typing_debounce_ms=_parse_non_negative_int("CONVSYNC_TYPING_DEBOUNCE_MS", defaults.typing_debounce_ms),
        expiry_sweep_interval_s=_parse_positive_float(
            "CONVSYNC_EXPIRY_SWEEP_INTERVAL_S", defaults.expiry_sweep_interval_s
        ),
        request_timeout_s=_parse_positive_float("CONVSYNC_REQUEST_TIMEOUT_S", defaults.request_timeout_s),
    )
