"""Simple smoke test to ensure the value types import and behave."""
from gamelink.models import TRANSITIONS, ConnectionMetrics, ConnectionState, LifecycleEvent, is_valid_transition


def test_imports():
    assert str(ConnectionState.RETRYING) == "retrying"
    assert ConnectionState("failed") is ConnectionState.FAILED
    assert LifecycleEvent("timeout") is LifecycleEvent.TIMEOUT
    assert set(TRANSITIONS) == set(ConnectionState)
    assert ConnectionMetrics().to_dict()["attempts"] == []


def test_transition_table():
    assert is_valid_transition(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
    assert is_valid_transition(ConnectionState.CONNECTED, ConnectionState.RETRYING)
    assert is_valid_transition(ConnectionState.FAILED, ConnectionState.CONNECTING)
    assert not is_valid_transition(ConnectionState.DISCONNECTED, ConnectionState.CONNECTED)
    assert not is_valid_transition(ConnectionState.CONNECTED, ConnectionState.FAILED)
    assert not is_valid_transition(ConnectionState.RETRYING, ConnectionState.CONNECTED)


if __name__ == "__main__":
    test_imports()
    test_transition_table()
    print("models import smoke test: OK")
