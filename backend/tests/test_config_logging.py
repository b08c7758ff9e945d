import json
import logging

from ticket_audit.core import config
from ticket_audit.core.logging import JsonFormatter


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ARTIFACTS_PATH", str(tmp_path))
    monkeypatch.setenv("BATCH_CONCURRENCY", "5")
    monkeypatch.setenv("LLM_MAX_RETRIES", "1")
    config.get_settings.cache_clear()
    try:
        settings = config.get_settings()
        assert settings.batch_concurrency == 5
        assert settings.llm_max_retries == 1
        assert settings.corpus_db_path == tmp_path / "rule_corpus.sqlite"
        assert settings.evaluations_db_path == tmp_path / "evaluations.sqlite"
    finally:
        config.get_settings.cache_clear()


def test_settings_defaults(settings):
    assert settings.llm_model == "gpt-5-mini-2025-08-07"
    assert settings.retrieval_min_similarity == 0.40
    assert settings.batch_concurrency == 3
    assert settings.evaluation_max_completion_tokens == 3000


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("ticket_audit.test", logging.INFO, __file__, 1, "Ticket evaluated", None, None)
    record.ticket_id = "T-1"
    record.findings = 2

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Ticket evaluated"
    assert payload["level"] == "INFO"
    assert payload["ticket_id"] == "T-1"
    assert payload["findings"] == 2
