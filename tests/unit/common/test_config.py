import pytest
from pydantic import ValidationError

from webhook_retry.common.config import (
    DEFAULT_BACKOFF_TABLE,
    ApiConfig,
    BaseConfig,
    DispatcherConfig,
    MetricsConfig,
    SQLStoreConfig,
    StoreType,
)


class TestBaseConfig:

    def test_validate_store_config_sql(self):
        """Test that validate_store_config passes with a SQL config."""
        config = BaseConfig(store_type=StoreType.SQL, sql_config=SQLStoreConfig(url="sqlite://"))
        config.validate_store_config()  # Should not raise an exception

    def test_validate_store_config_memory(self):
        """Test that the memory store needs no extra configuration."""
        config = BaseConfig(store_type=StoreType.MEMORY)
        config.validate_store_config()

    def test_validate_store_config_missing_sql(self):
        """Test that validate_store_config raises when the SQL config is missing."""
        config = BaseConfig(store_type=StoreType.SQL)
        with pytest.raises(ValueError, match="SQL store selected but no SQL configuration provided"):
            config.validate_store_config()

    def test_default_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            BaseConfig(default_max_attempts=0)

    def test_env_variables(self, monkeypatch):
        """Test that environment variables are correctly loaded."""
        monkeypatch.setenv("WEBHOOK_RETRY_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("WEBHOOK_RETRY_STORE_TYPE", "sql")
        monkeypatch.setenv("WEBHOOK_RETRY_SQL_CONFIG__URL", "postgresql://db.example.com/aros")
        monkeypatch.setenv("WEBHOOK_RETRY_DEFAULT_MAX_ATTEMPTS", "3")

        config = BaseConfig()
        assert config.log_level == "DEBUG"
        assert config.store_type == StoreType.SQL
        assert config.sql_config is not None
        assert config.sql_config.url == "postgresql://db.example.com/aros"
        assert config.sql_config.create_tables is True
        assert config.default_max_attempts == 3


class TestMetricsConfig:

    def test_default_values(self):
        config = MetricsConfig()
        assert config.enabled is True
        assert config.host == "127.0.0.1"
        assert config.port == 9090
        assert set(MetricsConfig.model_fields) == {"enabled", "host", "port"}


class TestApiConfig:

    def test_default_values(self):
        config = ApiConfig(store_type=StoreType.MEMORY)
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.default_max_attempts == 5


class TestDispatcherConfig:

    def test_default_values(self):
        config = DispatcherConfig(store_type=StoreType.MEMORY)
        assert config.batch_size == 100
        assert config.timeout == 10
        assert config.claim_ttl == 60
        assert config.backoff_table == DEFAULT_BACKOFF_TABLE
        assert config.headers == {}

    def test_default_backoff_table_is_not_shared(self):
        first = DispatcherConfig(store_type=StoreType.MEMORY)
        first.backoff_table.append(900)
        second = DispatcherConfig(store_type=StoreType.MEMORY)
        assert second.backoff_table == [1.0, 5.0, 15.0, 60.0, 300.0]

    def test_custom_values(self, dispatcher_config):
        assert dispatcher_config.batch_size == 50
        assert dispatcher_config.headers == {"X-Source": "aros"}
        assert dispatcher_config.sql_config.url == "sqlite://"

    @pytest.mark.parametrize("table", [[], [1, -5]])
    def test_invalid_backoff_table(self, table):
        with pytest.raises(ValidationError, match="backoff_table"):
            DispatcherConfig(store_type=StoreType.MEMORY, backoff_table=table)

    def test_claim_ttl_must_exceed_timeout(self):
        with pytest.raises(ValidationError, match="claim_ttl"):
            DispatcherConfig(store_type=StoreType.MEMORY, timeout=30, claim_ttl=30)

    def test_invalid_batch_size(self):
        with pytest.raises(ValidationError):
            DispatcherConfig(store_type=StoreType.MEMORY, batch_size=0)
