# kalina: Small helper to load prompt templates from the kalina.resources package via importlib.resources and optionally format them with dynamic values.

from importlib import resources


def get_prompt(name: str, **kwargs) -> str:
    """
    Load a text prompt from the kalina.resources package.

    If kwargs are provided, apply str.format(**kwargs) to the content so prompts can
    contain placeholders (e.g., {model_name}). If no kwargs are provided, return the
    raw text without attempting formatting to avoid accidental brace handling in
    prompts that show JSON examples.
    """
    data = resources.files("kalina.resources").joinpath(name).read_text(encoding="utf-8")
    if kwargs:
        return data.format(**kwargs)
    return data
