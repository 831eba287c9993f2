import pathlib

from kalina.fs import load_attachment, read_json, write_json
from kalina.prompts import get_prompt
from kalina.settings import load_settings, section


def test_missing_settings_is_empty(tmp_path):
    assert load_settings(tmp_path) == {}


def test_settings_yaml_is_loaded(tmp_path):
    (tmp_path / "settings.yaml").write_text("api:\n  provider: openai\n  model: gpt-5\nlogging:\n  level: info\n", encoding="utf-8")
    settings = load_settings(tmp_path)
    assert section(settings, "api") == {"provider": "openai", "model": "gpt-5"}
    assert section(settings, "logging")["level"] == "info"
    assert section(settings, "chat") == {}


def test_yml_fallback_and_bad_yaml(tmp_path):
    (tmp_path / "settings.yml").write_text("chat: {default_tool: web}\n", encoding="utf-8")
    assert section(load_settings(tmp_path), "chat") == {"default_tool": "web"}

    (tmp_path / "settings.yaml").write_text("api: [unclosed\n", encoding="utf-8")
    assert section(load_settings(tmp_path), "chat") == {"default_tool": "web"}


def test_non_mapping_settings_are_empty(tmp_path):
    (tmp_path / "settings.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    assert load_settings(tmp_path) == {}


def test_json_helpers(tmp_path):
    path = tmp_path / "nested" / "value.json"
    assert read_json(path, []) == []
    write_json(path, {"a": [1, "ü"]})
    assert read_json(path, None) == {"a": [1, "ü"]}
    assert not path.with_suffix(".tmp").exists()


def test_load_attachment_guesses_mime(tmp_path):
    p = tmp_path / "photo.png"
    p.write_bytes(b"\x89PNG")
    att = load_attachment(pathlib.Path(p))
    assert att == {"base64": "iVBORw==", "mime_type": "image/png", "name": "photo.png"}


def test_prompts_are_packaged():
    assert "{model_name}" not in get_prompt("prompt_persona_system.txt", model_name="Kalina Flash")
    assert "TITLE:" in get_prompt("prompt_title_directive.txt")


def test_every_prompt_resource_loads_from_package():
    from importlib import resources

    names = [p.name for p in resources.files("kalina.resources").iterdir() if p.name.endswith(".txt")]
    assert len(names) == 8
    for name in names:
        assert get_prompt(name).strip()
