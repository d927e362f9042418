import json
import logging

from perfstat.config import Settings
from perfstat.logging_setup import JsonFormatter


def test_settings_load_overlays_yaml(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "navigation:\n"
        "  max_module_search: 5\n"
        "  special_steps:\n"
        "    - {role: SP, module_id: 4, direction: next, step: 3}\n"
        "autosave:\n"
        "  enabled: false\n"
    )
    loaded = Settings.load(path)

    assert loaded.navigation.max_module_search == 5
    assert loaded.navigation.max_topics_per_module == 30
    assert [(s.role, s.module_id, s.step) for s in loaded.navigation.special_steps] == [("SP", 4, 3)]
    assert loaded.autosave.enabled is False
    assert loaded.engine.matrix_blank_value == "0"


def test_settings_load_empty_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("")

    loaded = Settings.load(path)
    assert loaded.paths.uploads_base_url == "/uploads/performanceDocs/"
    assert loaded.sessions.ttl_seconds == 4 * 3600


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("perfstat.test", logging.WARNING, __file__, 1, "Formula evaluation failed", None, None)
    record.topic_id = 117
    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "Formula evaluation failed"
    assert payload["topic_id"] == 117
