# test_config_logging.py
#
# Tests for the TOML configuration layer and logging setup.
#
# Imports
import logging
import logging.handlers
import sys
#
# Third-Party Imports
import pytest
import toml
from loguru import logger
#
# Local Imports
from bills_app import config as app_config
from bills_app.Logging_Config import configure_logging
#
#######################################################################################################################
#
# --- Config ---

class TestConfig:
    def test_default_file_created(self, isolated_config):
        settings = app_config.load_settings()
        assert isolated_config.exists()
        assert settings["sync"]["bucket"] == "bills-app"
        assert app_config.get_sync_setting("file_workers") == 4

    def test_user_values_merged_over_defaults(self, isolated_config):
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text('[sync]\nfile_workers = 8\n', encoding="utf-8")
        assert app_config.get_sync_setting("file_workers") == 8
        assert app_config.get_sync_setting("remote_list_limit") == 1000

    def test_invalid_toml_falls_back_to_defaults(self, isolated_config):
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("[sync\nbroken", encoding="utf-8")
        assert app_config.get_sync_setting("bucket") == "bills-app"

    def test_save_settings_round_trips_through_file(self, isolated_config):
        app_config.save_settings({"sync": {"bucket": "other-bucket"}})
        on_disk = toml.loads(isolated_config.read_text(encoding="utf-8"))
        assert on_disk["sync"]["bucket"] == "other-bucket"
        assert on_disk["sync"]["file_workers"] == 4
        assert app_config.load_settings(force_reload=True)["sync"]["bucket"] == "other-bucket"

    def test_missing_keys_use_default(self):
        assert app_config.get_cli_setting("nope", "key", "fallback") == "fallback"
        assert app_config.get_sync_setting("unknown", 7) == 7

    def test_deep_merge(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = app_config.deep_merge_dicts(base, {"a": {"c": 20}, "e": 5})
        assert merged == {"a": {"b": 1, "c": 20}, "d": 3, "e": 5}
        assert base["a"]["c"] == 2


# --- Logging ---

@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    logger.remove()
    logger.add(sys.stderr)


class TestLogging:
    def test_configure_twice_keeps_one_of_each_handler(self, restore_logging, tmp_path):
        log_file = tmp_path / "logs" / "bills.log"
        configure_logging(level="DEBUG", log_file=log_file)
        configure_logging(level="DEBUG", log_file=log_file)

        handlers = restore_logging.handlers
        assert sum(1 for h in handlers if type(h) is logging.StreamHandler) == 1
        assert sum(1 for h in handlers if isinstance(h, logging.handlers.RotatingFileHandler)) == 1

    def test_loguru_messages_reach_the_file(self, restore_logging, tmp_path):
        log_file = tmp_path / "bills.log"
        configure_logging(level="INFO", log_file=log_file)

        logger.info("sync run finished")
        for handler in restore_logging.handlers:
            handler.flush()

        assert "sync run finished" in log_file.read_text(encoding="utf-8")

    def test_noisy_loggers_capped(self, restore_logging, tmp_path):
        configure_logging(level="DEBUG", log_file=tmp_path / "bills.log")
        assert logging.getLogger("httpx").level == logging.WARNING

#
# End of test_config_logging.py
#######################################################################################################################
