import json
import logging
from unittest.mock import patch

from prism.config import (
    DEFAULT_KDF_ITERATIONS,
    DEFAULT_TASK_TIMEOUT,
    Settings,
    get_config_dir,
    load_settings,
    load_user_config,
    setup_logging,
)
from prism.orchestrator import RunOrchestrator


class TestLoadUserConfig:
    """config.json loading"""

    def test_missing_file(self, tmp_path):
        """No file means an empty config"""
        assert load_user_config(tmp_path / "config.json") == {}

    def test_invalid_json(self, tmp_path):
        """Broken JSON is ignored"""
        path = tmp_path / "config.json"
        path.write_text("{oops", encoding="utf-8")
        assert load_user_config(path) == {}

    def test_non_object(self, tmp_path):
        """Only a JSON object is accepted"""
        path = tmp_path / "config.json"
        path.write_text("[1, 2]", encoding="utf-8")
        assert load_user_config(path) == {}

    def test_prism_home(self, isolated_home):
        """PRISM_HOME decides the config directory"""
        assert get_config_dir() == isolated_home
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.json").write_text(
            json.dumps({"defaults": {"preset": "code"}}), encoding="utf-8"
        )
        assert load_settings().default_preset == "code"


class TestSettings:
    """Resolved runtime settings"""

    def test_defaults(self):
        """An empty config yields built-in defaults"""
        settings = Settings.from_config({})
        assert settings == Settings()
        assert settings.task_timeout == DEFAULT_TASK_TIMEOUT
        assert settings.kdf_iterations == DEFAULT_KDF_ITERATIONS

    def test_overrides(self):
        """Values from every section are applied"""
        settings = Settings.from_config(
            {
                "defaults": {"temperature": 0.2, "maxTokens": 512, "taskTimeout": 30},
                "vault": {"backend": "KEYRING", "kdfIterations": 200000},
            }
        )
        assert settings.temperature == 0.2
        assert settings.max_tokens == 512
        assert settings.task_timeout == 30.0
        assert settings.vault_backend == "keyring"
        assert settings.kdf_iterations == 200000

    def test_timeout_disabled(self):
        """null or non-positive taskTimeout disables the timeout"""
        assert Settings.from_config({"defaults": {"taskTimeout": None}}).task_timeout is None
        assert Settings.from_config({"defaults": {"taskTimeout": 0}}).task_timeout is None

    def test_bad_values_fall_back(self):
        """Wrong types and unknown backends are ignored"""
        settings = Settings.from_config(
            {
                "defaults": {"temperature": "hot", "maxTokens": True},
                "vault": {"backend": "s3", "kdfIterations": -1},
                "logging": "loud",
            }
        )
        assert settings == Settings()

    def test_orchestrator_from_settings(self):
        """Orchestrator picks up generation settings"""
        settings = Settings(temperature=0.1, max_tokens=99, task_timeout=None)
        orchestrator = RunOrchestrator.from_settings({}, settings, system_prompt="x")
        assert orchestrator.temperature == 0.1
        assert orchestrator.max_tokens == 99
        assert orchestrator.task_timeout is None
        assert orchestrator.system_prompt == "x"


class TestSetupLogging:
    """Logging configuration"""

    @patch("prism.config.logging.FileHandler")
    def test_setup_logging_with_file(self, mock_file_handler, tmp_path):
        """File handler is attached at the configured level"""
        log_file = tmp_path / "prism.log"
        mock_file_handler.return_value = logging.NullHandler()

        setup_logging(log_config={"level": "WARNING", "file": str(log_file)})

        mock_file_handler.assert_called_once_with(str(log_file), encoding="utf-8")
        assert logging.getLogger().level == logging.WARNING

    def test_verbose_overrides_level(self):
        """--verbose always means DEBUG"""
        setup_logging(verbose=True, log_config={"level": "ERROR"})
        assert logging.getLogger().level == logging.DEBUG

    @patch("prism.config.logging.FileHandler", side_effect=OSError("read-only"))
    def test_unwritable_log_file(self, _mock_file_handler, tmp_path, capsys):
        """A log file that cannot be opened falls back to console only"""
        setup_logging(log_config={"file": str(tmp_path / "nope.log")})
        assert "Failed to setup log file" in capsys.readouterr().out
        assert logging.getLogger().level == logging.INFO
