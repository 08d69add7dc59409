import json
import logging

import pytest

from docqa.errors import ValidationFailed
from docqa.logging_config import AUDIT_LOGGER_NAME, JSONLogFormatter, configure_logging


def _record(msg, **extra):
    record = logging.LogRecord("docqa.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_merges_dict_messages_and_extras():
    line = JSONLogFormatter().format(_record({"step": "ingest.ready", "chunks": 3}, req_id="r1"))

    payload = json.loads(line)
    assert payload["step"] == "ingest.ready"
    assert payload["chunks"] == 3
    assert payload["req_id"] == "r1"
    assert payload["logger"] == "docqa.test"
    assert payload["ts"].endswith("Z")


def test_formatter_renders_plain_messages():
    payload = json.loads(JSONLogFormatter().format(_record("hello")))

    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"


@pytest.fixture
def audit_log(tmp_path):
    configure_logging(tmp_path, level="WARNING")
    yield tmp_path / "ingest_audit.log"
    for handler in list(logging.getLogger(AUDIT_LOGGER_NAME).handlers):
        handler.close()
        logging.getLogger(AUDIT_LOGGER_NAME).removeHandler(handler)


def _audit_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.mark.anyio
async def test_ingestion_outcomes_are_audited(audit_log, service):
    outcome = await service.ingestion.ingest("alice", "k1", b"Audit me please.", "text/plain", "a.txt")
    await service.ingestion.delete_document("alice", outcome.document.id)

    entries = [entry for entry in _audit_lines(audit_log) if entry.get("event") == "ingest"]
    assert [entry["outcome"] for entry in entries] == ["ready", "deleted"]
    assert entries[0]["document_id"] == outcome.document.id
    assert entries[0]["owner_id"] == "alice"
    assert entries[0]["key"] == "k1"


@pytest.mark.anyio
async def test_rejected_upload_is_audited(audit_log, service):
    with pytest.raises(ValidationFailed):
        await service.ingestion.ingest("alice", "k1", b"", "text/plain", "empty.txt")

    [entry] = _audit_lines(audit_log)
    assert entry["outcome"] == "rejected"
    assert entry["error"].startswith("validation_failed")
