import main
from feed_client import FeedClient
from store_observer import LoggingObserver


def test_flags_override_defaults(tmp_path):
    args = main.parse_args(["--db", str(tmp_path / "x.db"), "--retention-days", "7",
                            "--no-auto-create", "--quiet-store"])
    assert args.retention_days == 7
    assert args.max_table_size == 10000
    assert args.ws_url == main.WS_URL

    store, repo, client, shell = main.build_components(args)
    assert store.config.storage_path == str(tmp_path / "x.db")
    assert store.config.retention_days == 7
    assert store.config.auto_create_tables is False
    assert store.config.logging_enabled is False
    assert not store.connected
    assert repo.store is store
    assert isinstance(client, FeedClient)
    assert shell.repo is repo
    assert any(isinstance(o, LoggingObserver) for o in store._observers)


def test_ws_url_default_follows_module_setting(monkeypatch):
    monkeypatch.setattr(main, "WS_URL", "ws://elsewhere:9000")
    assert main.parse_args([]).ws_url == "ws://elsewhere:9000"
