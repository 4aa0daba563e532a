from __future__ import annotations

import os
from dataclasses import dataclass

from .presence import TypingConfig

ENV_PREFIX = "CHATSYNC_"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


@dataclass
class ClientConfig:
    """Tunables for one chat session; every field has a working default."""

    api_base_url: str = "http://127.0.0.1:8080"
    socket_url: str = "ws://127.0.0.1:8080/v1/ws"
    request_timeout_s: float = 30.0
    upload_timeout_s: float = 60.0
    reconnect_attempts: int = 5
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 30.0
    ping_interval_s: float = 25.0
    typing_quiet_s: float = 1.0
    remote_typing_timeout_s: float = 5.0
    typing_sweep_interval_s: float = 0.25
    pending_send_timeout_s: float = 30.0
    echo_match_window_ms: int = 10_000
    max_upload_bytes: int = 50 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "ClientConfig":
        defaults = cls()
        return cls(
            api_base_url=os.getenv(ENV_PREFIX + "API_BASE_URL", defaults.api_base_url),
            socket_url=os.getenv(ENV_PREFIX + "SOCKET_URL", defaults.socket_url),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", defaults.request_timeout_s),
            upload_timeout_s=_env_float("UPLOAD_TIMEOUT_S", defaults.upload_timeout_s),
            reconnect_attempts=_env_int("RECONNECT_ATTEMPTS", defaults.reconnect_attempts),
            reconnect_delay_s=_env_float("RECONNECT_DELAY_S", defaults.reconnect_delay_s),
            reconnect_delay_max_s=_env_float("RECONNECT_DELAY_MAX_S", defaults.reconnect_delay_max_s),
            ping_interval_s=_env_float("PING_INTERVAL_S", defaults.ping_interval_s),
            typing_quiet_s=_env_float("TYPING_QUIET_S", defaults.typing_quiet_s),
            remote_typing_timeout_s=_env_float("REMOTE_TYPING_TIMEOUT_S", defaults.remote_typing_timeout_s),
            typing_sweep_interval_s=_env_float("TYPING_SWEEP_INTERVAL_S", defaults.typing_sweep_interval_s),
            pending_send_timeout_s=_env_float("PENDING_SEND_TIMEOUT_S", defaults.pending_send_timeout_s),
            echo_match_window_ms=_env_int("ECHO_MATCH_WINDOW_MS", defaults.echo_match_window_ms),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", defaults.max_upload_bytes),
        )

    def typing_config(self) -> TypingConfig:
        return TypingConfig(
            quiet_period_seconds=self.typing_quiet_s,
            remote_timeout_seconds=self.remote_typing_timeout_s,
            sweeper_interval_seconds=self.typing_sweep_interval_s,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (0-based)."""

        return min(self.reconnect_delay_s * (2**attempt), self.reconnect_delay_max_s)
