import pytest

from dumphedge.config import ConfigError, Secrets, apply_updates, build_config, load_config


def test_defaults_are_valid():
    cfg = build_config({"system": {"dry_run": True}})
    assert cfg.strategy.shares == 20
    assert cfg.strategy.sum_target == 0.95
    assert cfg.strategy.drop_threshold == 0.15
    assert cfg.network.max_reconnects == 5


@pytest.mark.parametrize("section,field,value", [
    ("strategy", "drop_threshold", 0.5),
    ("strategy", "drop_threshold", 0.001),
    ("strategy", "window_minutes", 0),
    ("strategy", "window_minutes", 16),
    ("strategy", "sum_target", 0.4),
    ("strategy", "sum_target", 1.1),
    ("strategy", "shares", 0),
    ("strategy", "shares", 1.5),
    ("network", "ws_url", "ws://insecure"),
    ("network", "api_url", "http://insecure"),
    ("network", "reconnect_delay", 0),
])
def test_out_of_range_values_rejected(section, field, value):
    with pytest.raises(ConfigError):
        build_config({"system": {"dry_run": True}, section: {field: value}})


def test_unknown_keys_rejected():
    with pytest.raises(ConfigError):
        build_config({"strategy": {"move_pct": 0.1}})


def test_live_mode_needs_private_key():
    with pytest.raises(ConfigError):
        build_config({"system": {"dry_run": False}}, secrets=Secrets(_env_file=None, PK=None))
    cfg = build_config({"system": {"dry_run": False}}, secrets=Secrets(_env_file=None, PK="0xabc"))
    assert cfg.secrets.private_key == "0xabc"
    cfg = build_config({"system": {"dry_run": False, "read_only": True}}, secrets=Secrets(_env_file=None, PK=None))
    assert cfg.system.read_only


def test_apply_updates_returns_new_snapshot():
    cfg = build_config({"system": {"dry_run": True}})
    new = apply_updates(cfg, drop_threshold=0.2, window_minutes=5)
    assert new.strategy.drop_threshold == 0.2
    assert new.strategy.window_minutes == 5
    assert cfg.strategy.drop_threshold == 0.15


def test_apply_updates_rejects_invalid_and_unknown():
    cfg = build_config({"system": {"dry_run": True}})
    with pytest.raises(ConfigError):
        apply_updates(cfg, drop_threshold=0.9)
    with pytest.raises(ConfigError):
        apply_updates(cfg, not_a_setting=1)
    assert cfg.strategy.drop_threshold == 0.15


def test_static_tokens_must_be_paired():
    with pytest.raises(ConfigError):
        build_config({"system": {"dry_run": True}, "rounds": {"static_up_token_id": "1"}})
    cfg = build_config({"system": {"dry_run": True},
                        "rounds": {"static_up_token_id": "1", "static_down_token_id": "2"}})
    assert cfg.rounds.has_static_market


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("system:\n  dry_run: true\nstrategy:\n  shares: 50\n  sum_target: 0.9\n")
    cfg = load_config(str(path), secrets=Secrets(_env_file=None))
    assert cfg.strategy.shares == 50
    assert cfg.strategy.sum_target == 0.9


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("strategy: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(bad), secrets=Secrets(_env_file=None))
    listy = tmp_path / "list.yaml"
    listy.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config(str(listy), secrets=Secrets(_env_file=None))
