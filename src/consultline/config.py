"""Engine configuration loaded from environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Policy constants and endpoints for the session engine."""

    model_config = SettingsConfigDict(
        env_prefix="CONSULTLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Endpoints
    socket_url: str = "http://localhost:3000"
    socketio_path: str = "/socket.io/"
    api_base_url: str = "http://localhost:3000/api"
    access_token: Optional[str] = None

    # Channel
    connect_timeout: float = 10.0
    send_timeout: float = 10.0
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0

    # Billing
    tick_interval: float = 1.0
    minimum_session_minutes: int = 5
    low_balance_warning_seconds: float = 120.0
    exhaustion_margin_seconds: float = 1.0

    # Queue
    hold_window: float = 30.0
    default_session_seconds: float = 600.0
    eta_change_threshold: float = 60.0
    max_queue_size: int = 20

    # Chat timers
    inactivity_warning: float = 270.0
    inactivity_timeout: float = 300.0
    continuation_interval: float = 300.0

    # Ledger settlement
    settlement_retry_delay: float = 2.0
    settlement_max_delay: float = 60.0
    settlement_first_attempt_timeout: float = 3.0

    log_level: str = "INFO"
