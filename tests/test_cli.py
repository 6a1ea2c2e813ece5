import json

import pytest
from typer.testing import CliRunner

from storage_gateway.cli import app
from storage_gateway.security import validate_master_key

runner = CliRunner()


@pytest.fixture
def memory_env(monkeypatch):
    """CLI без PostgreSQL: метаданные и ключи в памяти процесса."""
    monkeypatch.setenv("GATEWAY__METADATA_BACKEND", "memory")
    monkeypatch.setenv("ENCRYPTION__KEY_STORE", "memory")
    monkeypatch.setenv(
        "NODES",
        json.dumps([
            {"id": "minio-1", "type": "MINIO", "endpoint": "http://localhost:9000",
             "access_key": "minioadmin", "secret_key": "minioadmin", "bucket": "files"},
            {"id": "sftp-1", "type": "SFTP", "endpoint": "sftp://localhost:2222", "bucket": "/data"},
        ]),
    )


def test_generate_master_key():
    result = runner.invoke(app, ["generate-master-key"])

    assert result.exit_code == 0
    assert validate_master_key(result.stdout.strip())


def test_init_registers_seed_nodes(memory_env):
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0, f"Команда 'init' провалилась: {result.output}"
    assert "Database tables created successfully" in result.output
    assert "Registered node 'minio-1'" in result.output
    assert "Registered node 'sftp-1'" in result.output
    assert "All services initialized successfully" in result.output


def test_check_without_database(memory_env):
    # в памяти каждый запуск CLI начинает с пустого реестра
    result = runner.invoke(app, ["check"])

    assert result.exit_code == 0
    assert "PostgreSQL connection: disabled" in result.output


def test_nodes_list_renders_table(memory_env):
    result = runner.invoke(app, ["nodes", "list"])

    assert result.exit_code == 0
    assert "Storage nodes" in result.output


def test_set_status_of_unknown_node_fails(memory_env):
    result = runner.invoke(app, ["nodes", "set-status", "ghost", "OFFLINE"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_sweep_sessions(memory_env):
    result = runner.invoke(app, ["sweep-sessions"])

    assert result.exit_code == 0
    assert "Expired 0 upload session(s)" in result.output
