from ceremony import integrations


def test_failing_listener_does_not_stop_the_others(caplog):
    received = []

    def broken(name, payload):
        raise RuntimeError("webhook endpoint down")

    def recorder(name, payload):
        received.append((name, payload["envelope_id"]))

    integrations.register(integrations.ENVELOPE_SENT, broken)
    integrations.register(integrations.ENVELOPE_SENT, recorder)
    try:
        assert integrations.emit(integrations.ENVELOPE_SENT, {"envelope_id": 7}) == 1
    finally:
        integrations.unregister(integrations.ENVELOPE_SENT, broken)
        integrations.unregister(integrations.ENVELOPE_SENT, recorder)

    assert received == [("envelopeSent", 7)]
    assert "failed on envelopeSent" in caplog.text


def test_unregistered_listener_hears_nothing():
    received = []

    def listener(name, payload):
        received.append(name)

    integrations.register(integrations.ENVELOPE_VOIDED, listener)
    integrations.unregister(integrations.ENVELOPE_VOIDED, listener)

    assert integrations.emit(integrations.ENVELOPE_VOIDED, {"envelope_id": 1}) == 0
    assert received == []
