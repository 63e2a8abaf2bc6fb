import base64

import pytest

from cli import build_parser, generate_keys, main


def _decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def test_generate_keys_lengths():
    keys = generate_keys()
    assert len(_decode(keys["GATEWAY_STATE_KEY"])) == 32
    assert len(_decode(keys["GATEWAY_STATE_IV"])) == 16
    assert generate_keys() != keys


def test_gen_keys_prints_env_lines(capsys):
    assert main(["gen-keys"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [line.split("=", 1)[0] for line in lines] == ["GATEWAY_STATE_KEY", "GATEWAY_STATE_IV"]


def test_serve_with_invalid_config(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    for name in ("GATEWAY_BASE_URL", "GATEWAY_STATE_KEY", "GATEWAY_CONFIG_FILE"):
        monkeypatch.delenv(name, raising=False)
    assert main(["serve"]) == 1
    assert "Invalid configuration" in capsys.readouterr().err


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_serve_config_file_reaches_app_factory(tmp_path, monkeypatch):
    import json

    import uvicorn

    import main as gateway_main
    from config import CONFIG_FILE_ENV
    from conftest import b64

    path = tmp_path / "gateway.json"
    path.write_text(
        json.dumps(
            {
                "base_url": "https://gw.example",
                "state_key": b64(b"k" * 32),
                "state_iv": b64(b"i" * 16),
                "tenant_id": "tenant",
                "application_id": "app",
            }
        )
    )
    monkeypatch.chdir(tmp_path)
    for name in (CONFIG_FILE_ENV, "GATEWAY_BASE_URL", "GATEWAY_STATE_KEY", "GATEWAY_STATE_IV"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(gateway_main, "setup_logging", lambda **kwargs: None)

    built = {}

    def fake_run(target, factory=False, **kwargs):
        assert target == "main:get_app" and factory
        built["app"] = gateway_main.get_app()

    monkeypatch.setattr(uvicorn, "run", fake_run)

    assert main(["serve", "--config", str(path)]) == 0
    assert built["app"].state.gateway.config.base_url == "https://gw.example"
