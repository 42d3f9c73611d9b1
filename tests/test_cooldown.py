import pytest

from hushzone.cooldown import CooldownRegistry


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_arm_and_expire():
    clock = FakeClock()
    registry = CooldownRegistry(10.0, clock=clock)

    entry = registry.arm("alice")
    assert entry.expiry == pytest.approx(110.0)
    assert registry.is_active("alice")
    assert registry.remaining("alice") == pytest.approx(10.0)

    clock.now = 109.9
    assert registry.is_active("alice")

    clock.now = 110.0
    assert not registry.is_active("alice")
    assert registry.remaining("alice") == 0.0
    assert registry.active() == []


def test_clear_removes_entry():
    registry = CooldownRegistry(10.0, clock=FakeClock())
    registry.arm("bob")
    assert registry.clear("bob") is True
    assert registry.clear("bob") is False
    assert not registry.is_active("bob")


def test_rearm_extends_window_and_custom_duration():
    clock = FakeClock()
    registry = CooldownRegistry(5.0, clock=clock)
    registry.arm("carol")
    clock.now = 104.0
    registry.arm("carol", duration_sec=30)
    clock.now = 120.0
    assert registry.is_active("carol")
    assert [entry.speaker_id for entry in registry.active()] == ["carol"]


def test_unknown_speaker_is_not_active():
    registry = CooldownRegistry()
    assert registry.is_active("nobody") is False
