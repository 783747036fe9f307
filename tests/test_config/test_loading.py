from pathlib import Path

import parley.config as config_module
from parley.config import Config


def test_load_prefers_local_parley_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("provider:\n  default_model: home/model\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "parley.yaml"
    local_cfg.write_text(
        (
            "provider:\n"
            "  default_model: openai/gpt-4o-mini\n"
            "  models:\n"
            "    - id: google/gemini-2.5-flash-image\n"
            "      output_modalities: [image, text]\n"
            "      context_length: 32000\n"
            "planning:\n"
            "  max_rounds: 2\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.provider.default_model == "openai/gpt-4o-mini"
    assert cfg.planning.max_rounds == 2
    caps = cfg.provider.capabilities("google/gemini-2.5-flash-image")
    assert caps.can_output_images
    assert caps.context_length == 32000


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("tutor:\n  enabled: false\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.tutor.enabled is False


def test_missing_file_yields_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    cfg = Config.load(tmp_path / "nope.yaml")

    assert cfg.planning.max_rounds == 3
    assert cfg.planning.max_sources == 5
    assert cfg.tools.web_search.fallback_query_chars == 256
    assert cfg.stream.strip_leading_tool_json is True
    caps = cfg.provider.capabilities("unknown/model")
    assert caps.supports_tools and not caps.can_output_images


def test_env_overrides_nested_settings(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PARLEY_PLANNING__MAX_ROUNDS", "5")

    assert Config().planning.max_rounds == 5


def test_save_round_trips(tmp_path: Path):
    path = tmp_path / "out" / "config.yaml"
    cfg = Config()
    cfg.provider.default_model = "x/y"

    cfg.save(path)

    assert Config.from_yaml(path).provider.default_model == "x/y"


def test_env_wins_over_yaml_and_keeps_other_yaml_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg_path = tmp_path / "parley.yaml"
    cfg_path.write_text(
        "provider:\n  default_model: yaml/model\nplanning:\n  max_rounds: 2\n  max_sources: 4\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PARLEY_PLANNING__MAX_ROUNDS", "5")

    cfg = Config.load()

    assert cfg.planning.max_rounds == 5
    assert cfg.planning.max_sources == 4
    assert cfg.provider.default_model == "yaml/model"
