"""Prompt assembly for the page-builder generation endpoints.

Prompts ask for bare HTML fragments styled with the site's CSS framework so
the editor can insert the result directly into a page.
"""

from __future__ import annotations

import re
from typing import Optional

from canvasgate.config import CssFramework, EditMode

_FRAMEWORK_NAMES = {
    CssFramework.TAILWIND.value: "Tailwind CSS classes",
    CssFramework.BOOTSTRAP5.value: "Bootstrap 5 classes",
}

_HTML_FENCE_RE = re.compile(r"```html\n?", re.IGNORECASE)
_FENCE_RE = re.compile(r"```\n?")


def framework_name(framework: Optional[str]) -> str:
    return _FRAMEWORK_NAMES.get((framework or "").strip().lower(), "vanilla CSS with inline styles")


def build_context(mode: Optional[str], current_html: Optional[str]) -> str:
    """Describe what the editor is asking for, based on the edit mode."""
    mode_value = mode.value if isinstance(mode, EditMode) else (mode or "")
    if mode_value == EditMode.ELEMENT.value and current_html and current_html.strip():
        return (
            "You are modifying an existing element. Here is the current HTML:\n"
            f"```html\n{current_html}\n```\n\n"
            "Modify or enhance this element based on the user's request."
        )
    if mode_value == EditMode.PAGE.value:
        return "Generate a complete page section or component that can be inserted into a page."
    return ""


def build_system_prompt(framework: Optional[str], context: str = "") -> str:
    prompt = (
        "You are an expert web designer creating content for a visual page builder.\n"
        f"Generate clean, semantic HTML using {framework_name(framework)}.\n"
        "\n"
        "Guidelines:\n"
        "- Use proper semantic HTML5 elements (section, article, header, nav, etc.)\n"
        "- Include responsive design patterns\n"
        "- Return ONLY the HTML code, no explanations or markdown code blocks\n"
        "- Do not include <html>, <head>, or <body> tags - just the content\n"
        "- Use placeholder images from https://placehold.co/ when images are needed\n"
    )
    if context:
        prompt = f"{prompt}\n{context}\n"
    return prompt


def build_screenshot_prompt(framework: Optional[str], additional_prompt: Optional[str] = None) -> str:
    base = (
        f"Convert this screenshot into clean HTML using {framework_name(framework)}.\n"
        "\n"
        "Requirements:\n"
        "- Create semantic, accessible HTML5 structure\n"
        "- Make it fully responsive\n"
        "- Use placeholder images from https://placehold.co/ for any images\n"
        "- Match the layout, colors, and typography as closely as possible\n"
        "- Return ONLY the HTML code, no explanations or markdown code blocks\n"
        "- Do not include <html>, <head>, or <body> tags - just the content\n"
    )
    if additional_prompt and additional_prompt.strip():
        return f"{base}\n\nAdditional instructions: {additional_prompt.strip()}"
    return base


def extract_html(content: Optional[str]) -> str:
    """Strip markdown code fences a model may wrap its HTML in."""
    html = _HTML_FENCE_RE.sub("", content or "")
    html = _FENCE_RE.sub("", html)
    return html.strip()
