"""Tests for configuration loading."""

import pytest

import config as config_module
from config import Config, ConfigurationError, load_environment, validate_configuration


class TestDefaults:
    def test_memory_backend_by_default(self, clean_env):
        config = Config()
        assert config.store.backend == "memory"
        assert config.supabase.url is None
        assert config.checkout.save_delay_ms == 500
        assert config.checkout.save_delay_seconds == 0.5
        assert config.checkout.min_deposit_ratio == 0.5
        assert config.checkout.default_line_code == "JP"
        assert config.features.enforce_session_code_uniqueness is True

    def test_safe_summary_has_no_key(self, clean_env):
        clean_env.setenv("SUPABASE_KEY", "secret-key")
        summary = Config().get_safe_summary()
        assert "secret-key" not in str(summary)
        assert summary["store_backend"] == "memory"


class TestOverrides:
    def test_checkout_settings(self, clean_env):
        clean_env.setenv("CHECKOUT_SAVE_DELAY_MS", "250")
        clean_env.setenv("MIN_DEPOSIT_RATIO", "0.3")
        clean_env.setenv("ENFORCE_SESSION_CODE_UNIQUENESS", "false")

        config = Config()
        assert config.checkout.save_delay_seconds == 0.25
        assert config.checkout.min_deposit_ratio == 0.3
        assert config.features.enforce_session_code_uniqueness is False

    def test_supabase_requires_credentials(self, clean_env):
        clean_env.setenv("STORE_BACKEND", "supabase")
        with pytest.raises(ConfigurationError):
            Config()

    def test_supabase_url_must_be_https(self, clean_env):
        clean_env.setenv("STORE_BACKEND", "supabase")
        clean_env.setenv("SUPABASE_URL", "http://example.supabase.co")
        clean_env.setenv("SUPABASE_KEY", "key")
        with pytest.raises(ConfigurationError):
            Config()

    @pytest.mark.parametrize("key,value", [
        ("STORE_BACKEND", "sqlite"),
        ("CHECKOUT_SAVE_DELAY_MS", "soon"),
        ("CHECKOUT_SAVE_DELAY_MS", "-1"),
        ("MIN_DEPOSIT_RATIO", "1.5"),
        ("LOG_LEVEL", "LOUD"),
    ])
    def test_invalid_values(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ConfigurationError):
            Config()


class TestDebugMode:
    def test_debug_forces_log_level(self, clean_env):
        clean_env.setenv("DEBUG_MODE", "on")
        clean_env.setenv("LOG_LEVEL", "WARNING")
        assert Config().server.log_level == "DEBUG"


class TestLoadEnvironment:
    def test_file_does_not_override_environment(self, clean_env, tmp_path):
        env_file = tmp_path / "sale.env"
        env_file.write_text("ORDER_NUMBER_PREFIX=LIV\nDEFAULT_LINE_CODE=ZZ\n")
        clean_env.setenv("DEFAULT_LINE_CODE", "RB")

        assert load_environment(str(env_file)) is True

        config = Config()
        assert config.checkout.order_number_prefix == "LIV"
        assert config.checkout.default_line_code == "RB"

    def test_missing_file(self, tmp_path):
        assert load_environment(str(tmp_path / "absent.env")) is False


class TestGlobalConfig:
    def test_singleton(self, clean_env):
        clean_env.setattr(config_module, "_config", None)
        assert config_module.get_config() is config_module.get_config()

    def test_warnings(self, clean_env):
        clean_env.setenv("CHECKOUT_SAVE_DELAY_MS", "0")
        clean_env.setenv("MIN_DEPOSIT_RATIO", "0")

        assert validate_configuration(Config()) == [
            "STORE_BACKEND=memory: orders are lost on restart",
            "CHECKOUT_SAVE_DELAY_MS=0: every checkout keystroke is written",
            "MIN_DEPOSIT_RATIO=0: orders without a deposit show as ready",
        ]

    def test_debug_with_persistent_store_warns(self, clean_env):
        clean_env.setenv("STORE_BACKEND", "supabase")
        clean_env.setenv("SUPABASE_URL", "https://example.supabase.co")
        clean_env.setenv("SUPABASE_KEY", "key")
        clean_env.setenv("DEBUG_MODE", "true")

        assert validate_configuration(Config()) == [
            "DEBUG_MODE with a persistent store: tracebacks are exposed"
        ]
