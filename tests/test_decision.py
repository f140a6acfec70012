from iiot_listener.decision import EmitDecision, decide
from iiot_listener.delta_detector import DeltaResult


def _delta(significant, relevant) -> DeltaResult:
    return DeltaResult(
        device_id="esp32_02",
        significant=significant,
        relevant_changed=relevant,
        changed_params=frozenset(),
    )


def test_insignificant_event_is_dropped():
    assert decide(_delta(False, False), has_stored=True) == EmitDecision(publish=False, store=False)


def test_relevant_change_is_published_and_stored():
    assert decide(_delta(True, True), has_stored=True) == EmitDecision(publish=True, store=True)


def test_alert_only_event_is_published_not_stored():
    assert decide(_delta(True, False), has_stored=True) == EmitDecision(publish=True, store=False)


def test_never_stored_device_is_stored():
    assert decide(_delta(True, False), has_stored=False) == EmitDecision(publish=True, store=True)
