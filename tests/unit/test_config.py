"""
Unit tests for configuration loading.

Tests cover:
- Shard layout parsing and error paths
- The single machine layout
- YAML layout files
- Environment loading and validation
"""

import pytest

from backend.vault_server.config import (
    ConnectionConfig,
    KafkaConfig,
    PoolConfig,
    PublisherBackend,
    ShardsConfig,
    StorageConfig,
    VaultConfig,
)


def conn(database="registry"):
    return {"database": database, "user": "vault", "server": {"host": "db", "port": 3306}}


class TestConnectionConfig:
    """Tests for ConnectionConfig.from_dict()."""

    def test_parse(self):
        c = ConnectionConfig.from_dict({**conn(), "password": "pw", "options": {"foreign_keys": "ON"}})

        assert c.database == "registry"
        assert c.port == 3306
        assert c.options == {"foreign_keys": "ON"}

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"user": "u", "server": {"host": "h", "port": 1}}, "connection.database"),
            ({"database": "d", "server": {"host": "h", "port": 1}}, "connection.user"),
            ({"database": "d", "user": "u", "server": {"port": 1}}, "connection.server.host"),
            ({"database": "d", "user": "u", "server": {"host": "h"}}, "connection.server.port"),
        ],
    )
    def test_missing_fields(self, data, message):
        with pytest.raises(ValueError, match=message):
            ConnectionConfig.from_dict(data)


class TestShardsConfig:
    """Tests for shard layouts."""

    def test_single_and_double_ranges(self):
        layout = ShardsConfig.from_dict(
            {
                "shard-groups": [
                    {"shards": [{"range": [0], "connection": conn()}]},
                    {
                        "shards": [
                            {"range": [0, 2047], "connection": conn("a")},
                            {"range": [2048, 4095], "connection": conn("b")},
                        ]
                    },
                ]
            }
        )

        registry = layout.groups[0].shards[0]
        second = layout.groups[1].shards[1]
        assert (registry.start, registry.end) == (0, 0)
        assert (second.start, second.end) == (2048, 4095)
        assert second.covers(3000)
        assert not second.covers(100)
        assert len(layout.databases()) == 3

    def test_error_names_the_path(self):
        with pytest.raises(ValueError, match=r"shard-groups\[1\]\.shards\[0\]\.range"):
            ShardsConfig.from_dict(
                {
                    "shard-groups": [
                        {"shards": [{"range": [0], "connection": conn()}]},
                        {"shards": [{"range": [5, 1], "connection": conn("a")}]},
                    ]
                }
            )

    def test_empty_groups(self):
        with pytest.raises(ValueError, match="shard-groups"):
            ShardsConfig.from_dict({"shard-groups": []})

    def test_local_layout(self):
        layout = ShardsConfig.local(2)

        assert len(layout.groups) == 2
        data = layout.groups[1].shards
        assert [(s.start, s.end) for s in data] == [(0, 2047), (2048, 4095)]
        assert [s.connection.database for s in data] == ["shard_1_0", "shard_1_1"]

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "shards.yaml"
        path.write_text(
            "shard-groups:\n"
            "  - shards:\n"
            "      - range: [0]\n"
            "        connection:\n"
            "          database: registry\n"
            "          user: vault\n"
            "          server: {host: db, port: 3306}\n"
        )

        layout = ShardsConfig.from_file(path)

        assert layout.groups[0].shards[0].connection.database == "registry"


class TestVaultConfig:
    """Tests for VaultConfig."""

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ACTIONS_BACKEND", "memory")
        monkeypatch.setenv("VAULT_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("STORE_SESSION_EXTEND_MINUTES", "15")
        monkeypatch.delenv("VAULT_SHARDS_FILE", raising=False)

        config = VaultConfig.from_env()

        assert config.publisher_backend == PublisherBackend.MEMORY
        assert config.storage.data_dir == str(tmp_path)
        assert config.session.store_session_extend_minutes == 15

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("ACTIONS_BACKEND", "carrier-pigeon")
        with pytest.raises(ValueError, match="ACTIONS_BACKEND"):
            VaultConfig.from_env()

    def test_kafka_requires_brokers(self, tmp_path):
        config = VaultConfig(
            publisher_backend=PublisherBackend.KAFKA,
            storage=StorageConfig(data_dir=str(tmp_path)),
            kafka=KafkaConfig(brokers=""),
        )

        with pytest.raises(ValueError, match="KAFKA_BROKERS"):
            config.validate()

    def test_pool_limits(self, tmp_path):
        config = VaultConfig(
            publisher_backend=PublisherBackend.MEMORY,
            storage=StorageConfig(data_dir=str(tmp_path)),
            pool=PoolConfig(max_open=0),
        )
        with pytest.raises(ValueError, match="DB_POOL_MAX_OPEN"):
            config.validate()

    def test_retry_interval(self, tmp_path):
        config = VaultConfig(
            publisher_backend=PublisherBackend.MEMORY,
            storage=StorageConfig(data_dir=str(tmp_path)),
            kafka=KafkaConfig(retry_interval_seconds=0),
        )
        with pytest.raises(ValueError, match="ACTIONS_RETRY_INTERVAL_SECONDS"):
            config.validate()
