from operata_wallet.config import AppConfig, get_data_dir, load_config, resolve_database_path, save_config


def test_defaults():
    config = AppConfig()
    assert config.queue.name == "scheduled-transactions"
    assert config.queue.concurrency == 5
    assert config.queue.attempts == 6
    assert config.queue.backoff.delay_ms == 10_000
    assert config.notion.api_version == "2022-06-28"


def test_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("OPERATA_ENCRYPTION_KEY", "s3cret")
    path = tmp_path / "config.yaml"
    path.write_text(
        "vault:\n  master_secret: ${OPERATA_ENCRYPTION_KEY}\n"
        "server:\n  webhook_secret: ${UNSET_WEBHOOK_SECRET_FOR_TEST}\n"
        "queue:\n  concurrency: 2\n"
    )
    config = load_config(path)
    assert config.vault.master_secret == "s3cret"
    assert config.server.webhook_secret == "${UNSET_WEBHOOK_SECRET_FOR_TEST}"
    assert config.queue.concurrency == 2


def test_save_and_reload(tmp_path):
    config = AppConfig()
    config.chain.default_chain = "base-sepolia"
    path = get_data_dir(tmp_path) / "config.yaml"
    save_config(config, path)
    assert load_config(path).chain.default_chain == "base-sepolia"
    assert resolve_database_path(config, tmp_path) == tmp_path / "operata.db"
