from canvasgate.config import Settings
from canvasgate.service.models import ModelCatalog, infer_provider


def test_catalog_filters_by_configured_provider():
    catalog = ModelCatalog(Settings(openai_api_key=None, anthropic_api_key="k"))

    assert [m.id for m in catalog.text_models()] == [
        "claude-sonnet-4-20250514",
        "claude-3-5-haiku-20241022",
    ]
    assert catalog.image_models() == []


def test_openrouter_lists_everything():
    catalog = ModelCatalog(Settings(openai_api_key=None, openrouter_api_key="k"))

    assert len(catalog.text_models()) == 4
    assert len(catalog.image_models()) == 2
    assert all(m.supports_vision for m in catalog.vision_models())


def test_resolve_known_and_inferred():
    catalog = ModelCatalog(Settings(openai_api_key="k"))

    known = catalog.resolve("dall-e-3")
    assert known.kind == "image"
    assert not known.supports_vision

    inferred = catalog.resolve("meta-llama/llama-3.1-70b-instruct")
    assert inferred.provider == "openrouter"
    assert inferred.name == "meta-llama/llama-3.1-70b-instruct"

    assert catalog.resolve(None).id == "gpt-4o-mini"
    assert catalog.resolve("", default="gpt-4o").id == "gpt-4o"


def test_infer_provider():
    assert infer_provider("Claude-Opus") == "anthropic"
    assert infer_provider("o3-mini") == "openai"


def test_as_json_is_sorted():
    payload = ModelCatalog(Settings(openai_api_key="k")).resolve("gpt-4o").as_json()

    assert payload["input_modalities"] == ["image", "text"]
    assert payload["supports_vision"] is True
