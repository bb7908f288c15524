"""
Tests for configuration loading.
"""

import pytest
import yaml

from doc_stage.config import Config
from doc_stage.staging.chunk_manager import DocumentChunkManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("DOC_STAGE_CONFIG_PATH", raising=False)
    monkeypatch.delenv("DOC_STAGE_DATABASE_URL", raising=False)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.mark.unit
class TestConfig:

    def test_defaults_when_file_missing(self, tmp_path):
        config = Config(str(tmp_path / "missing.yaml"), load_env=False)

        assert config.get('staging.table_name') == 'staged_documents'
        assert config.get('staging.chunk_size') == 100
        assert config.get('retry.max_attempts') is None
        assert config.get('database.url').startswith('sqlite:///')

    def test_file_overrides_merge_with_defaults(self, tmp_path):
        path = write_config(tmp_path, {'staging': {'table_name': 'cloudsearch_docs'}})

        config = Config(path, load_env=False)

        assert config.get('staging.table_name') == 'cloudsearch_docs'
        assert config.get('staging.spool_threshold') == 1024 * 1024

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STAGE_DB_HOST", "db.internal")
        path = write_config(tmp_path, {
            'database': {'url': 'postgresql://stage@${STAGE_DB_HOST}/${STAGE_DB_NAME:-staging}'},
        })

        config = Config(path, load_env=False)

        assert config.get('database.url') == 'postgresql://stage@db.internal/staging'

    def test_database_url_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOC_STAGE_DATABASE_URL", "sqlite:///override.db")
        path = write_config(tmp_path, {'database': {'url': 'sqlite:///file.db'}})

        assert Config(path, load_env=False).get('database.url') == 'sqlite:///override.db'

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {'staging': {'chunk_size': 7}})
        monkeypatch.setenv("DOC_STAGE_CONFIG_PATH", path)

        assert Config(load_env=False).get('staging.chunk_size') == 7

    def test_get_missing_key(self, tmp_path):
        config = Config(str(tmp_path / "missing.yaml"), load_env=False)

        assert config.get('nope.nothing', 'fallback') == 'fallback'
        assert config.get('staging.table_name.deeper') is None

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            Config(str(path), load_env=False)

    def test_retry_policy(self, tmp_path):
        path = write_config(tmp_path, {'retry': {'max_attempts': 5, 'max_elapsed': 30}})

        policy = Config(path, load_env=False).get_retry_policy()

        assert policy.max_attempts == 5
        assert policy.max_elapsed == 30.0

    def test_retry_policy_unbounded_by_default(self, tmp_path):
        policy = Config(str(tmp_path / "missing.yaml"), load_env=False).get_retry_policy()

        assert policy.max_attempts is None
        assert policy.max_elapsed is None

    def test_retry_bounds_from_unset_env_are_unbounded(self, tmp_path, monkeypatch):
        """Test that ${VAR} references to unset variables leave the bounds off."""
        monkeypatch.delenv("STAGE_RETRY_MAX", raising=False)
        monkeypatch.delenv("STAGE_RETRY_SECONDS", raising=False)
        path = write_config(tmp_path, {
            'retry': {'max_attempts': '${STAGE_RETRY_MAX}', 'max_elapsed': '${STAGE_RETRY_SECONDS}'},
        })

        policy = Config(path, load_env=False).get_retry_policy()

        assert policy.max_attempts is None
        assert policy.max_elapsed is None

    def test_retry_bounds_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STAGE_RETRY_MAX", "3")
        path = write_config(tmp_path, {'retry': {'max_attempts': '${STAGE_RETRY_MAX}'}})

        assert Config(path, load_env=False).get_retry_policy().max_attempts == 3

    def test_chunk_manager(self, tmp_path):
        path = write_config(tmp_path, {
            'database': {'url': f"sqlite:///{tmp_path / 'stage.db'}"},
            'staging': {'table_name': 'configured_table', 'spool_threshold': 2048, 'chunk_size': 25},
        })

        manager = Config(path, load_env=False).get_chunk_manager()
        try:
            assert isinstance(manager, DocumentChunkManager)
            assert manager.table_name == 'configured_table'
            assert manager.spool_threshold == 2048
            assert manager.chunk_size == 25
            manager.install()
            manager.stage_tombstone("h", "p", "doc1")
            assert manager.count_pending("h", "p") == 1
        finally:
            manager.store.close()
