from chatsync.config import ClientConfig


def test_defaults_are_usable():
    config = ClientConfig()
    assert config.reconnect_attempts == 5
    assert config.typing_config().quiet_period_seconds == 1.0
    assert config.typing_config().remote_timeout_seconds == 5.0


def test_backoff_doubles_and_caps():
    config = ClientConfig(reconnect_delay_s=1.0, reconnect_delay_max_s=5.0)
    assert [config.backoff_delay(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("CHATSYNC_API_BASE_URL", "https://chat.test")
    monkeypatch.setenv("CHATSYNC_RECONNECT_ATTEMPTS", "2")
    monkeypatch.setenv("CHATSYNC_TYPING_QUIET_S", "0.5")

    config = ClientConfig.from_env()

    assert config.api_base_url == "https://chat.test"
    assert config.reconnect_attempts == 2
    assert config.typing_quiet_s == 0.5


def test_from_env_ignores_invalid_values(monkeypatch):
    monkeypatch.setenv("CHATSYNC_RECONNECT_ATTEMPTS", "lots")
    monkeypatch.setenv("CHATSYNC_REQUEST_TIMEOUT_S", "-3")
    monkeypatch.setenv("CHATSYNC_ECHO_MATCH_WINDOW_MS", " ")

    config = ClientConfig.from_env()

    assert config.reconnect_attempts == 5
    assert config.request_timeout_s == 30.0
    assert config.echo_match_window_ms == 10_000
