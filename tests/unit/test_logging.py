import json
import logging
import uuid

from cocoatrack.core.logging import EVENT_FIELDS, JsonLineFormatter, configure_logging, log_event


def test_json_line_has_stable_schema():
    import_id = uuid.uuid4()
    record = logging.makeLogRecord({
        "name": "cocoatrack.services.import_service",
        "levelname": "INFO",
        "msg": "Import analysé : %d features",
        "args": (3,),
        "event": "import_parsed",
        "import_id": import_id,
        "duration_ms": 42,
    })

    payload = json.loads(JsonLineFormatter().format(record))

    assert payload["message"] == "Import analysé : 3 features"
    assert payload["event"] == "import_parsed"
    assert payload["import_id"] == str(import_id)
    assert payload["duration_ms"] == 42
    assert set(EVENT_FIELDS) <= set(payload)
    assert payload["user_id"] is None


def test_log_event_passes_structured_fields(caplog):
    configure_logging("DEBUG", json_output=True)
    logger = logging.getLogger("cocoatrack.tests")

    with caplog.at_level(logging.WARNING, logger="cocoatrack.tests"):
        log_event(logger, "Parcelle ignorée", level=logging.WARNING, event="parcelle_insert_skipped", feature_index=4)

    record = caplog.records[-1]
    assert record.event == "parcelle_insert_skipped"
    assert record.feature_index == 4
    assert record.levelno == logging.WARNING
